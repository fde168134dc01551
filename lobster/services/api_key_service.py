"""API keys and verification of signed API requests.

A request carries ``Authorization: lobster <api_id>:<partial_key>:<nonce>:<sig>``
where ``sig`` is the hex HMAC-SHA512 of ``<path>|<nonce>|<body>`` under the full
key and ``partial_key`` is the first half of that key. Nonces must strictly
increase per key.
"""

import hashlib
import hmac
import ipaddress
import json
import logging

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from lobster.errors import LobsterError
from lobster.metrics import API_AUTH_FAILURES
from lobster.models.auth import ApiKey
from lobster.models.user import User, UserStatus
from lobster.services.common import MAX_API_RESTRICTION, uid, wildcard_match

logger = logging.getLogger(__name__)

API_ID_LENGTH = 16
API_KEY_LENGTH = 128
PARTIAL_KEY_LENGTH = 64
SIGNATURE_BYTES = 64
# nonces are stored in a signed 64-bit column
MAX_NONCE = 2**63 - 1


class ApiAuthError(LobsterError):
    status_code = 401

    def __init__(self, message: str, reason: str = "authentication_failure"):
        API_AUTH_FAILURES.labels(reason=reason).inc()
        super().__init__("api_auth_failed", message)


def parse_networks(value: str) -> list[ipaddress.IPv4Network | ipaddress.IPv6Network]:
    networks = []
    for part in value.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            networks.append(ipaddress.ip_network(part, strict=False))
        except ValueError as exc:
            raise LobsterError("invalid_restriction", detail=f'failed to parse "{part}" as IP/CIDR') from exc
    return networks


def match_networks(value: str, ip: str) -> bool:
    try:
        address = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return any(address in network for network in parse_networks(value))


def parse_action_restrictions(value: str) -> list[dict]:
    try:
        rules = json.loads(value)
    except ValueError as exc:
        raise LobsterError("invalid_restriction", detail=str(exc)) from exc
    if not isinstance(rules, list) or not all(isinstance(rule, dict) for rule in rules):
        raise LobsterError("invalid_restriction", detail="expected a list of {method, path} objects")
    return rules


def action_allowed(rules: list[dict], method: str, path: str) -> bool:
    for rule in rules:
        rule_method = str(rule.get("method", ""))
        if (rule_method == "*" or rule_method == method) and wildcard_match(str(rule.get("path", "")), path):
            return True
    return False


class ApiKeyService:
    def __init__(self, db: Session):
        self.db = db

    def create(self, user_id: int, label: str, restrict_action: str = "", restrict_ip: str = "") -> ApiKey:
        if len(restrict_action) > MAX_API_RESTRICTION:
            raise LobsterError("restriction_too_long", max=MAX_API_RESTRICTION)
        if restrict_action:
            parse_action_restrictions(restrict_action)
        if len(restrict_ip) > MAX_API_RESTRICTION:
            raise LobsterError("restriction_too_long", max=MAX_API_RESTRICTION)
        if restrict_ip:
            parse_networks(restrict_ip)

        key = ApiKey(
            user_id=user_id,
            label=label,
            api_id=uid(API_ID_LENGTH),
            api_key=uid(API_KEY_LENGTH),
            restrict_action=restrict_action or None,
            restrict_ip=restrict_ip or None,
        )
        self.db.add(key)
        self.db.flush()
        logger.info("Created API key %s for user %d", key.api_id, user_id)
        return key

    def list(self, user_id: int) -> list[ApiKey]:
        return list(self.db.scalars(select(ApiKey).where(ApiKey.user_id == user_id).order_by(ApiKey.id)).all())

    def get(self, user_id: int, key_id: int) -> ApiKey | None:
        return self.db.scalars(select(ApiKey).where(ApiKey.user_id == user_id).where(ApiKey.id == key_id)).first()

    def delete(self, user_id: int, key_id: int) -> None:
        key = self.get(user_id, key_id)
        if key is None:
            raise LobsterError("invalid_id")
        self.db.delete(key)
        self.db.flush()

    def check(self, path: str, method: str, authorization: str, body: bytes, ip: str) -> int:
        """Verify a signed request and return the owning user id."""
        parts = authorization.split(":")
        if len(parts) != 4:
            raise ApiAuthError(
                f"bad authorization: expected 4 colon-delimited parts, found {len(parts)}", "invalid_authorization"
            )
        api_id, partial_key, raw_nonce, raw_signature = parts
        if not raw_nonce.isdigit() or not raw_nonce.isascii():
            raise ApiAuthError("invalid authorization", "invalid_authorization")
        nonce = int(raw_nonce)
        if nonce > MAX_NONCE:
            raise ApiAuthError("invalid authorization", "invalid_authorization")
        try:
            signature = bytes.fromhex(raw_signature)
        except ValueError:
            raise ApiAuthError("invalid authorization", "invalid_authorization") from None
        if len(api_id) != API_ID_LENGTH or len(partial_key) != PARTIAL_KEY_LENGTH or len(signature) != SIGNATURE_BYTES:
            raise ApiAuthError("invalid authorization", "invalid_authorization")

        key = self.db.scalars(
            select(ApiKey)
            .join(User, User.id == ApiKey.user_id)
            .where(ApiKey.api_id == api_id)
            .where(ApiKey.nonce < nonce)
            .where(User.status != UserStatus.disabled)
        ).first()
        if key is None:
            raise ApiAuthError("authentication failure")

        message = f"{path}|{nonce}|".encode() + body
        expected = hmac.new(key.api_key.encode(), message, hashlib.sha512).digest()
        partial_good = hmac.compare_digest(key.api_key[:PARTIAL_KEY_LENGTH].encode(), partial_key.encode())
        signature_good = hmac.compare_digest(signature, expected)
        if not (partial_good and signature_good):
            logger.info("API signature check failed for %s (%s)", api_id, ip)
            raise ApiAuthError("authentication failure")

        if key.restrict_action:
            if not action_allowed(parse_action_restrictions(key.restrict_action), method, path):
                raise ApiAuthError("failed action restriction", "action_restriction")
        if key.restrict_ip and not match_networks(key.restrict_ip, ip):
            raise ApiAuthError("failed IP restriction", "ip_restriction")

        result = self.db.execute(
            update(ApiKey)
            .where(ApiKey.id == key.id)
            .where(ApiKey.nonce < nonce)
            .values(nonce=nonce)
            .execution_options(synchronize_session=False)
        )
        if not result.rowcount:
            # a concurrent request with a higher or equal nonce won
            raise ApiAuthError("authentication failure")
        self.db.refresh(key)
        return key.user_id
