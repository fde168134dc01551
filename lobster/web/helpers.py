"""
Shared web helpers: client address, post-redirect-get messages, and view context.
"""

from __future__ import annotations

import logging
from urllib.parse import urlencode

from fastapi import Request
from fastapi.responses import RedirectResponse

from lobster.config import settings
from lobster.services.common import format_credit

logger = logging.getLogger(__name__)


def client_ip(request: Request) -> str:
    """Remote address, taken from the configured proxy header when one is set."""
    if settings.proxy_header:
        forwarded = request.headers.get(settings.proxy_header, "")
        if forwarded:
            return forwarded.split(",")[0].strip()
    if request.client is None:
        return ""
    return request.client.host


def redirect(path: str) -> RedirectResponse:
    return RedirectResponse(url=path, status_code=303)


def redirect_message(path: str, message: str, kind: str = "danger") -> RedirectResponse:
    separator = "&" if "?" in path else "?"
    return redirect(f"{path}{separator}{urlencode({'message': message, 'type': kind})}")


def redirect_success(path: str, message: str) -> RedirectResponse:
    return redirect_message(path, message, "success")


def frame(request: Request) -> dict:
    """Flash message carried in the query string by :func:`redirect_message`."""
    return {
        "message": request.query_params.get("message", ""),
        "type": request.query_params.get("type", ""),
    }


def ctx(request: Request, title: str, token: str | None = None, **extra) -> dict:
    """Build the standard JSON view model for a page."""
    data = {
        "title": title,
        "frame": frame(request),
        "currency": settings.currency,
        **extra,
    }
    if token is not None:
        data["token"] = token
    return data


def credit_display(amount: int) -> str:
    return format_credit(amount)
