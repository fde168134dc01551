import hashlib
import hmac
import logging
import secrets
from datetime import timedelta

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from lobster.errors import LobsterError
from lobster.models.action_log import ActionLog
from lobster.models.auth import PasswordResetToken
from lobster.models.user import User, UserStatus
from lobster.services import antiflood
from lobster.services import email as email_service
from lobster.services.antiflood import AntifloodService
from lobster.services.common import (
    MAX_PASSWORD_LENGTH,
    MAX_USERNAME_LENGTH,
    MIN_PASSWORD_LENGTH,
    MIN_USERNAME_LENGTH,
    PWRESET_EXPIRE_MINUTES,
    is_printable,
    uid,
    utcnow,
)

logger = logging.getLogger(__name__)

_PBKDF2_ITERATIONS = 8192
_PBKDF2_KEY_LENGTH = 64
_SALT_BYTES = 16


def make_password(password: str) -> str:
    salt = secrets.token_bytes(_SALT_BYTES)
    derived = hashlib.pbkdf2_hmac("sha512", password.encode(), salt, _PBKDF2_ITERATIONS, _PBKDF2_KEY_LENGTH)
    return f"{salt.hex()}:{derived.hex()}"


def check_password(password: str, stored: str) -> bool:
    try:
        salt_hex, hash_hex = stored.split(":", 1)
        salt = bytes.fromhex(salt_hex)
        expected = bytes.fromhex(hash_hex)
    except ValueError:
        return False
    derived = hashlib.pbkdf2_hmac("sha512", password.encode(), salt, _PBKDF2_ITERATIONS, _PBKDF2_KEY_LENGTH)
    return hmac.compare_digest(expected, derived)


def _check_password_length(password: str) -> None:
    if len(password) < MIN_PASSWORD_LENGTH or len(password) > MAX_PASSWORD_LENGTH:
        raise LobsterError("password_length", min=MIN_PASSWORD_LENGTH, max=MAX_PASSWORD_LENGTH)


class AuthService:
    def __init__(self, db: Session):
        self.db = db
        self.antiflood = AntifloodService(db)

    def log_action(self, user_id: int | None, ip: str, name: str, details: str = "") -> None:
        self.db.add(ActionLog(user_id=user_id, ip=ip, name=name, details=details))
        self.db.flush()

    def create(self, ip: str, username: str, password: str, email: str = "") -> User:
        action, limit = antiflood.AUTH_CREATE
        if not self.antiflood.check(ip, action, limit):
            raise LobsterError("try_again_later")

        if len(username) < MIN_USERNAME_LENGTH or len(username) > MAX_USERNAME_LENGTH:
            raise LobsterError("username_length", min=MIN_USERNAME_LENGTH, max=MAX_USERNAME_LENGTH)
        if not is_printable(username):
            raise LobsterError("username_invalid_characters")
        _check_password_length(password)

        email = email.strip()
        if self.db.scalar(select(User.id).where(User.username == username)) is not None:
            raise LobsterError("username_taken")
        if email and self.db.scalar(select(User.id).where(User.email == email)) is not None:
            raise LobsterError("email_taken")

        user = User(username=username, email=email or None, password_hash=make_password(password))
        self.db.add(user)
        self.db.flush()

        self.log_action(user.id, ip, "Registered account")
        self.antiflood.action(ip, action)
        logger.info("Registered account user=%s id=%d (%s)", username, user.id, ip)
        email_service.mail_wrap(
            self.db,
            None,
            "accountCreated",
            {"user_id": user.id, "username": username, "email": email},
        )
        return user

    def login(self, ip: str, username: str, password: str) -> User:
        action, limit = antiflood.AUTH_CHECK
        if len(password) > MAX_PASSWORD_LENGTH:
            raise LobsterError("incorrect_username_or_password")
        if not self.antiflood.check(ip, action, limit):
            raise LobsterError("try_again_later")

        user = self.db.scalars(
            select(User).where(User.username == username).where(User.status != UserStatus.disabled)
        ).first()
        if user is None:
            logger.info("Authentication failure on user=%s: bad username (%s)", username, ip)
            self.antiflood.action(ip, action)
            raise LobsterError("incorrect_username_or_password")
        if not check_password(password, user.password_hash):
            logger.info("Authentication failure on user=%s: bad password (%s)", username, ip)
            self.antiflood.action(ip, action)
            raise LobsterError("incorrect_username_or_password")

        logger.info("Authentication successful for user=%s (%s)", username, ip)
        self.log_action(user.id, ip, "Logged in")
        return user

    def change_password(self, ip: str, user_id: int, old_password: str, new_password: str) -> None:
        action, limit = antiflood.AUTH_CHECK
        _check_password_length(new_password)
        if not self.antiflood.check(ip, action, limit):
            raise LobsterError("try_again_later")

        user = self.db.get(User, user_id)
        if user is None:
            self.antiflood.action(ip, action)
            logger.warning("Error changing password: bad user ID %d (%s)", user_id, ip)
            raise LobsterError("invalid_account")
        if not check_password(old_password, user.password_hash):
            self.antiflood.action(ip, action)
            logger.info("Change password authentication failure for user_id=%d (%s)", user_id, ip)
            raise LobsterError("incorrect_password")

        user.password_hash = make_password(new_password)
        self.db.flush()
        logger.info("Successful password change for user_id=%d (%s)", user_id, ip)
        self.log_action(user_id, ip, "Change password")
        email_service.mail_wrap(self.db, user_id, "authChangePassword")

    def force_change_password(self, user_id: int, password: str) -> None:
        user = self.db.get(User, user_id)
        if user is None:
            raise LobsterError("invalid_account")
        user.password_hash = make_password(password)
        self.db.flush()

    def pwreset_request(self, ip: str, username: str, email: str) -> None:
        action, limit = antiflood.PWRESET_REQUEST
        if not email:
            raise LobsterError("pwreset_email_required")
        if not self.antiflood.check(ip, action, limit):
            raise LobsterError("try_again_later")
        # counted whether or not the request succeeds
        self.antiflood.action(ip, action)

        user = self.db.scalars(select(User).where(User.username == username).where(User.email == email)).first()
        if user is None:
            raise LobsterError("incorrect_username_email")
        outstanding = self.db.scalar(
            select(func.count(PasswordResetToken.id)).where(PasswordResetToken.user_id == user.id)
        )
        if outstanding:
            raise LobsterError("pwreset_outstanding")

        token = uid(32)
        self.db.add(PasswordResetToken(user_id=user.id, token=token))
        self.db.flush()
        email_service.mail_wrap(self.db, user.id, "pwresetRequest", {"token": token, "user_id": user.id})

    def pwreset_submit(self, ip: str, user_id: int, token: str, password: str) -> None:
        action, limit = antiflood.PWRESET_SUBMIT
        if not self.antiflood.check(ip, action, limit):
            raise LobsterError("try_again_later")
        _check_password_length(password)
        self.antiflood.action(ip, action)

        cutoff = utcnow() - timedelta(minutes=PWRESET_EXPIRE_MINUTES)
        row = self.db.scalars(
            select(PasswordResetToken)
            .where(PasswordResetToken.user_id == user_id)
            .where(PasswordResetToken.token == token)
            .where(PasswordResetToken.time > cutoff)
        ).first()
        user = self.db.get(User, user_id)
        if row is None or user is None:
            raise LobsterError("incorrect_token")

        self.db.delete(row)
        user.password_hash = make_password(password)
        self.db.flush()
        logger.info("Successful password reset for user_id=%d (%s)", user_id, ip)
        self.log_action(user_id, ip, "Reset password")
        email_service.mail_wrap(self.db, user_id, "authChangePassword")

    def cleanup_pwreset(self) -> int:
        cutoff = utcnow() - timedelta(minutes=PWRESET_EXPIRE_MINUTES)
        result = self.db.execute(delete(PasswordResetToken).where(PasswordResetToken.time < cutoff))
        return result.rowcount or 0
