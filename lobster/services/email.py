import logging
import os
import smtplib
import time
from email.mime.text import MIMEText
from pathlib import Path

from jinja2 import Environment, FileSystemLoader, select_autoescape
from sqlalchemy.orm import Session

from lobster.config import settings

logger = logging.getLogger(__name__)

_SMTP_MAX_RETRIES = 2
_SMTP_RETRY_DELAY = 1  # seconds

_TEMPLATE_DIR = Path(__file__).resolve().parent.parent / "templates" / "email"

_env = Environment(
    loader=FileSystemLoader(str(_TEMPLATE_DIR)),
    autoescape=select_autoescape(enabled_extensions=(), default=False),
    keep_trailing_newline=True,
)


class MailError(Exception):
    pass


def _env_value(name: str) -> str | None:
    value = os.getenv(name)
    if value is None or value == "":
        return None
    return value


def _env_int(name: str, default: int) -> int:
    raw = _env_value(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _get_smtp_config() -> dict:
    return {
        "host": _env_value("SMTP_HOST"),
        "port": _env_int("SMTP_PORT", 587),
        "username": _env_value("SMTP_USERNAME"),
        "password": _env_value("SMTP_PASSWORD"),
        "use_tls": (_env_value("SMTP_USE_TLS") or "true").lower() in {"1", "true", "yes", "on"},
    }


def _sanitize_header(value: str, field: str) -> str:
    if "\r" in value or "\n" in value:
        raise MailError(f"Invalid header value for {field}")
    return value


def send_email(to_email: str | None, subject: str, body: str, bcc: list[str] | None = None) -> bool:
    config = _get_smtp_config()
    subject = _sanitize_header(subject, "subject")
    recipients = [address for address in [to_email, *(bcc or [])] if address]
    if not recipients:
        return False

    msg = MIMEText(body, "plain")
    msg["Subject"] = subject
    msg["From"] = _sanitize_header(settings.from_email, "from_email")
    if to_email:
        msg["To"] = _sanitize_header(to_email, "to_email")

    if not config["host"]:
        logger.info("SMTP disabled, dropping email [%s] to %s", subject, ", ".join(recipients))
        return False

    last_err: Exception | None = None
    for attempt in range(_SMTP_MAX_RETRIES + 1):
        server = None
        try:
            server = smtplib.SMTP(config["host"], config["port"])
            if config["use_tls"]:
                server.starttls()
            if config["username"] and config["password"]:
                server.login(config["username"], config["password"])
            server.sendmail(settings.from_email, recipients, msg.as_string())
            logger.info("Sending email [%s] to [%s]", subject, to_email or "")
            return True
        except smtplib.SMTPAuthenticationError as exc:
            raise MailError(f"SMTP authentication failed: {exc}") from exc
        except (OSError, smtplib.SMTPException) as exc:
            last_err = exc
            if attempt < _SMTP_MAX_RETRIES:
                logger.warning(
                    "SMTP attempt %d/%d to %s failed: %s",
                    attempt + 1,
                    _SMTP_MAX_RETRIES + 1,
                    to_email,
                    exc,
                )
                time.sleep(_SMTP_RETRY_DELAY * (attempt + 1))
        finally:
            if server is not None:
                try:
                    server.quit()
                except (OSError, smtplib.SMTPException):
                    pass

    raise MailError(f"failed to send email after {_SMTP_MAX_RETRIES + 1} attempts: {last_err}")


def render(template: str, context: dict) -> tuple[str, str]:
    """Render ``<template>.txt`` and split it into subject and body."""
    output = _env.get_template(f"{template}.txt").render(**context)
    subject, sep, body = output.partition("\n\n")
    if not sep:
        raise MailError("template output does not include subject/body separator")
    return subject.strip(), body


def mail(db: Session | None, user_id: int | None, template: str, params: dict | None = None, cc_admin: bool = False) -> bool:
    """Send a templated email to a user, or to the admin when ``user_id`` is None.

    Users that never received credit (status ``new``) only get mail through the
    admin copy.
    """
    from lobster.models.user import User, UserStatus

    to_address: str | None = settings.admin_email
    username = "N/A"
    if user_id is not None and db is not None:
        user = db.get(User, user_id)
        if user is None:
            raise MailError("user does not exist")
        to_address = user.email if user.status != UserStatus.new else None
        username = user.username
        if not to_address and not cc_admin:
            return False

    subject, body = render(
        template,
        {
            "user_id": user_id,
            "username": username,
            "email": to_address or "",
            "url_base": settings.url_base,
            "currency": settings.currency,
            "params": params or {},
        },
    )
    bcc = [settings.admin_email] if cc_admin else None
    return send_email(to_address, subject, body, bcc=bcc)


def mail_wrap(db: Session | None, user_id: int | None, template: str, params: dict | None = None, cc_admin: bool = False) -> None:
    try:
        mail(db, user_id, template, params, cc_admin)
    except Exception as exc:
        report_error(exc, "failed to send email", f"user_id={user_id}, template={template}, params={params}")


def report_error(exc: BaseException | None, description: str, detail: str = "") -> None:
    """Log an error and mail it to the admin. Mail failures are only logged."""
    if exc is None:
        return
    if detail:
        logger.error("%s: error: %s (%s)", description, exc, detail)
    else:
        logger.error("%s: error: %s", description, exc)
    try:
        mail(None, None, "error", {"error": str(exc), "description": description, "detail": detail})
    except Exception as suberr:
        logger.error("report_error: failed to report: %s", suberr)
