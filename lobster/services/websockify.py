"""
Token table for the websocket VNC proxy.

Drivers that expose a raw VNC endpoint register it here and hand the user a
noVNC URL carrying the token; the ``/websockify`` route resolves the token
back to the ``host:port`` target.
"""

from __future__ import annotations

import logging
import secrets
import string
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from lobster.config import settings

logger = logging.getLogger(__name__)

TOKEN_LENGTH = 32
TOKEN_TTL_SECONDS = 3600
_TOKEN_ALPHABET = string.ascii_lowercase + string.digits


@dataclass
class _Target:
    ipport: str
    created: float


class TokenTable:
    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._tokens: dict[str, _Target] = {}
        self._lock = threading.Lock()

    def _purge(self, now: float) -> None:
        expired = [token for token, target in self._tokens.items() if now - target.created > TOKEN_TTL_SECONDS]
        for token in expired:
            del self._tokens[token]

    def register(self, ipport: str) -> str:
        token = "".join(secrets.choice(_TOKEN_ALPHABET) for _ in range(TOKEN_LENGTH))
        with self._lock:
            now = self._clock()
            self._purge(now)
            self._tokens[token] = _Target(ipport=ipport, created=now)
        return token

    def lookup(self, token: str | None) -> str | None:
        if not token:
            return None
        with self._lock:
            target = self._tokens.get(token)
            if target is None:
                return None
            if self._clock() - target.created > TOKEN_TTL_SECONDS:
                del self._tokens[token]
                return None
            return target.ipport

    def __len__(self) -> int:
        return len(self._tokens)


token_table = TokenTable()


def handle_websockify(ipport: str, password: str) -> str:
    """Register ``ipport`` and return the noVNC URL the user should open."""
    token = token_table.register(ipport)
    logger.debug("Registered websockify token for %s", ipport)
    return settings.novnc_url.replace("TOKEN", token, 1).replace("PASSWORD", password, 1)
