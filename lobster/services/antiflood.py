"""Per-(ip, action) attempt counters with a one-hour window.

Check-then-act is not atomic: two concurrent requests may both pass a check
before either records its action. The limiter shapes rates, it does not lock.
"""

import logging
from datetime import timedelta

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from lobster.models.antiflood import AntifloodEntry
from lobster.services.common import utcnow

logger = logging.getLogger(__name__)

WINDOW = timedelta(hours=1)
RETENTION = timedelta(hours=2)

AUTH_CREATE = ("authCreate", 3)
AUTH_CHECK = ("authCheck", 12)
PWRESET_REQUEST = ("pwresetRequest", 10)
PWRESET_SUBMIT = ("pwresetSubmit", 10)


class AntifloodService:
    def __init__(self, db: Session):
        self.db = db

    def action(self, ip: str, action: str) -> None:
        now = utcnow()
        entry = self.db.scalars(
            select(AntifloodEntry)
            .where(AntifloodEntry.ip == ip)
            .where(AntifloodEntry.action == action)
            .where(AntifloodEntry.time > now - WINDOW)
            .limit(1)
        ).first()
        if entry is None:
            self.db.add(AntifloodEntry(ip=ip, action=action, count=1, time=now))
        else:
            entry.count = AntifloodEntry.count + 1
            entry.time = now
        self.db.flush()

    def check(self, ip: str, action: str, max_count: int) -> bool:
        """True when ``ip`` has made fewer than ``max_count`` attempts in the last hour."""
        bad = self.db.scalar(
            select(func.count(AntifloodEntry.id))
            .where(AntifloodEntry.ip == ip)
            .where(AntifloodEntry.action == action)
            .where(AntifloodEntry.count >= max_count)
            .where(AntifloodEntry.time > utcnow() - WINDOW)
        )
        if bad:
            logger.info("Anti-flood limit reached for %s on %s", ip, action)
        return not bad

    def cleanup(self) -> int:
        result = self.db.execute(delete(AntifloodEntry).where(AntifloodEntry.time < utcnow() - RETENTION))
        return result.rowcount or 0
