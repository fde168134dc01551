import logging
import secrets
import string
from datetime import UTC, datetime

from fastapi import HTTPException

logger = logging.getLogger(__name__)

MIN_USERNAME_LENGTH = 3
MAX_USERNAME_LENGTH = 128
MIN_PASSWORD_LENGTH = 6
MAX_PASSWORD_LENGTH = 512
MAX_VM_NAME_LENGTH = 64
MAX_API_RESTRICTION = 512

SESSION_UID_LENGTH = 64
SESSION_COOKIE_NAME = "lobsterSession"

API_MAX_REQUEST_LENGTH = 32 * 1024

# credit is kept in units of 1/BILLING_PRECISION of the account currency
BILLING_PRECISION = 1_000_000
BILLING_DISPLAY_DECIMALS = 3
MINIMUM_CREDIT = BILLING_PRECISION
BILLING_VM_FREQUENCY = 1  # hours

PWRESET_EXPIRE_MINUTES = 60

GIGABYTE = 1024 * 1024 * 1024

_ALPHANUMERIC = string.ascii_letters + string.digits


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from backends without tz support."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def uid(length: int) -> str:
    return "".join(secrets.choice(_ALPHANUMERIC) for _ in range(length))


def is_printable(value: str) -> bool:
    return all(0x20 <= ord(ch) <= 0x7E for ch in value)


def giga_to_bytes(gigabytes: int | float) -> int:
    return int(gigabytes * GIGABYTE)


def wildcard_match(pattern: str, value: str) -> bool:
    if not pattern:
        return False
    if pattern.endswith("*"):
        return value.startswith(pattern[:-1])
    return pattern == value


def month_bounds(now: datetime) -> tuple[datetime, datetime]:
    start = datetime(now.year, now.month, 1, tzinfo=UTC)
    if now.month == 12:
        end = datetime(now.year + 1, 1, 1, tzinfo=UTC)
    else:
        end = datetime(now.year, now.month + 1, 1, tzinfo=UTC)
    return start, end


def format_credit(amount: int) -> str:
    return f"{amount / BILLING_PRECISION:.{BILLING_DISPLAY_DECIMALS}f}"


def parse_int_id(value: str | int, label: str = "ID") -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=f"Invalid {label}: {value!r}") from exc
