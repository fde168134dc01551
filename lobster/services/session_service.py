"""
Web sessions and single-use form tokens.

A session row is looked up by the ``lobsterSession`` cookie. Rows idle for
more than an hour are treated as unknown and a fresh anonymous session is
issued. When an existing anonymous session logs in, the row is flagged and
its identifier is rotated on the following request.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, replace
from datetime import timedelta

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from lobster.models.auth import FormToken, WebSession
from lobster.services.common import SESSION_UID_LENGTH, utcnow

logger = logging.getLogger(__name__)

SESSION_IDLE = timedelta(hours=1)
FORM_TOKEN_TTL = timedelta(hours=1)
_FORM_TOKEN_BYTES = 32


@dataclass
class SessionState:
    uid: str
    user_id: int | None = None
    admin: bool = False
    original_id: int | None = None
    regenerate: bool = False
    is_new: bool = False

    @property
    def is_logged_in(self) -> bool:
        return self.user_id is not None

    @property
    def is_impersonating(self) -> bool:
        return self.original_id is not None

    def login(self, user_id: int, admin: bool) -> None:
        self.user_id = user_id
        self.admin = admin
        self.original_id = None

    def logout(self) -> None:
        self.user_id = None
        self.admin = False
        self.original_id = None


def _new_uid() -> str:
    return secrets.token_hex(SESSION_UID_LENGTH // 2)


class SessionService:
    def __init__(self, db: Session):
        self.db = db

    def load(self, uid: str) -> SessionState | None:
        row = self.db.scalars(
            select(WebSession).where(WebSession.uid == uid).where(WebSession.active_time > utcnow() - SESSION_IDLE)
        ).first()
        if row is None:
            return None
        return SessionState(
            uid=row.uid,
            user_id=row.user_id,
            admin=row.admin,
            original_id=row.original_id,
            regenerate=row.regenerate,
        )

    def create(self) -> SessionState:
        state = SessionState(uid=_new_uid(), is_new=True)
        self.db.add(WebSession(uid=state.uid, active_time=utcnow()))
        self.db.flush()
        return state

    def regenerate(self, state: SessionState) -> SessionState:
        new_uid = _new_uid()
        self.db.execute(update(WebSession).where(WebSession.uid == state.uid).values(uid=new_uid, regenerate=False))
        self.db.flush()
        return replace(state, uid=new_uid, regenerate=False)

    def begin(self, uid: str | None, ip: str = "") -> SessionState:
        """Resolve the session for an incoming request, rotating it when flagged."""
        state = self.load(uid) if uid else None
        if state is None:
            if uid:
                logger.info("Invalid session identifier from %s", ip)
            return self.create()
        if state.regenerate:
            state = self.regenerate(state)
        return state

    def save(self, state: SessionState, was_logged_in: bool) -> None:
        if not was_logged_in and state.is_logged_in and not state.is_new:
            state.regenerate = True
        self.db.execute(
            update(WebSession)
            .where(WebSession.uid == state.uid)
            .values(
                user_id=state.user_id,
                admin=state.admin,
                original_id=state.original_id,
                regenerate=state.regenerate,
                active_time=utcnow(),
            )
        )
        self.db.flush()

    def generate_token(self, session_uid: str) -> str:
        token = secrets.token_hex(_FORM_TOKEN_BYTES)
        self.db.add(FormToken(session_uid=session_uid, token=token, time=utcnow()))
        self.db.flush()
        return token

    def check_token(self, session_uid: str, token: str | None) -> bool:
        """Consume ``token`` if it was issued to ``session_uid``."""
        if not token:
            return False
        row = self.db.scalars(
            select(FormToken)
            .where(FormToken.session_uid == session_uid)
            .where(FormToken.token == token)
            .where(FormToken.time > utcnow() - FORM_TOKEN_TTL)
        ).first()
        if row is None:
            return False
        self.db.execute(delete(FormToken).where(FormToken.token == token))
        self.db.flush()
        return True

    def cleanup(self) -> int:
        now = utcnow()
        tokens = self.db.execute(delete(FormToken).where(FormToken.time < now - FORM_TOKEN_TTL))
        sessions = self.db.execute(delete(WebSession).where(WebSession.active_time < now - SESSION_IDLE))
        return (tokens.rowcount or 0) + (sessions.rowcount or 0)
