"""
Credential issuance and rotation.

Handshake tokens are stateless HMAC-signed blobs checked without a lookup.
Session and rotating tokens are stateful, single-use and stepped: consuming
one removes it from the store, rotating mints a successor at ``step + 1``.
"""

from __future__ import annotations

import json
import logging
import time
from typing import TYPE_CHECKING, Any, Callable

from shadowgate.common.crypto import CryptoUtils
from shadowgate.common.exceptions import Expired, InvalidCredential
from shadowgate.common.models import RotatingToken

if TYPE_CHECKING:
    from shadowgate.common.config import Config
    from shadowgate.common.interfaces import IStore

ROTATING_TOKENS = "rotating_tokens"
MIN_TOKEN_TTL = 15
MAX_TOKEN_TTL = 30
# Unconsumed tokens stay stored this long past expiry so late use reports "expired"
EXPIRY_GRACE = 60


class TokenIssuer:
    """Issues, consumes and rotates protocol credentials."""

    def __init__(
        self, config: Config, store: IStore, clock: Callable[[], float] = time.time
    ) -> None:
        self.config = config
        self.store = store
        self.clock = clock
        self.logger = logging.getLogger(__name__)

    # Handshake tokens

    def _sign(self, data: str) -> str:
        signature = CryptoUtils.hmac_sign(data, self.config.HANDSHAKE_SECRET)
        return CryptoUtils.b64url_encode(bytes.fromhex(signature))

    def issue_handshake_token(
        self, script_id: str, hwid_hash: str | None, ip: str
    ) -> str:
        iat = int(self.clock())
        payload = {
            "sid": script_id,
            "hwid": (hwid_hash or "unknown")[:16],
            "ip": ip[:32],
            "iat": iat,
            "exp": iat + self.config.HANDSHAKE_TOKEN_TTL,
        }
        payload_b64 = CryptoUtils.b64url_encode(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        return f"{payload_b64}.{self._sign(payload_b64)}"

    def verify_handshake_token(
        self, token: str, script_id: str | None = None
    ) -> dict[str, Any]:
        """Check signature and expiry; returns the decoded payload."""
        payload_b64, sep, signature = token.partition(".")
        if not sep or not payload_b64 or not signature:
            msg = "Invalid handshake token"
            raise InvalidCredential(msg)
        if not CryptoUtils.timing_safe_equal(self._sign(payload_b64), signature):
            self.logger.warning("Handshake token signature mismatch")
            msg = "Invalid handshake token"
            raise InvalidCredential(msg)
        try:
            payload = json.loads(CryptoUtils.b64url_decode(payload_b64))
        except ValueError as err:
            msg = "Invalid handshake token"
            raise InvalidCredential(msg) from err
        if payload.get("exp", 0) < self.clock():
            msg = "Handshake token expired"
            raise Expired(msg)
        if script_id is not None and payload.get("sid") != script_id:
            msg = "Invalid handshake token"
            raise InvalidCredential(msg)
        return payload

    # Stateful tokens

    def _store_token(self, record: RotatingToken, ttl: int) -> None:
        self.store.put(ROTATING_TOKENS, record.token, record.model_dump(), ttl + EXPIRY_GRACE)

    def issue_rotating_token(  # noqa: PLR0913
        self,
        script_id: str,
        ip: str,
        hwid_hash: str | None = None,
        key_id: str | None = None,
        step: int = 0,
        max_step: int | None = None,
        ttl: int | None = None,
    ) -> RotatingToken:
        ttl = min(max(ttl or self.config.ROTATING_TOKEN_TTL, MIN_TOKEN_TTL), MAX_TOKEN_TTL)
        record = RotatingToken(
            token=CryptoUtils.generate_token(self.config.SESSION_TOKEN_LENGTH),
            script_id=script_id,
            hwid_hash=hwid_hash,
            ip=ip,
            step=step,
            max_step=max_step or self.config.ROTATING_TOKEN_MAX_STEP,
            expires_at=self.clock() + ttl,
            key_id=key_id,
        )
        self._store_token(record, ttl)
        return record

    def issue_session_token(
        self,
        script_id: str,
        ip: str,
        hwid_hash: str | None = None,
        key_id: str | None = None,
    ) -> RotatingToken:
        """Step-0 token handed out by the handshake."""
        return self.issue_rotating_token(
            script_id,
            ip,
            hwid_hash=hwid_hash,
            key_id=key_id,
            ttl=self.config.SESSION_TOKEN_TTL,
        )

    def peek(self, token: str) -> RotatingToken | None:
        data = self.store.get(ROTATING_TOKENS, token)
        return RotatingToken.model_validate(data) if data else None

    def consume(self, token: str, script_id: str | None = None) -> RotatingToken:
        """Single use: the token is gone from the store once this returns."""
        data = self.store.pop(ROTATING_TOKENS, token)
        if data is None:
            self.logger.warning("Unknown or reused token presented")
            msg = "Invalid token"
            raise InvalidCredential(msg)
        record = RotatingToken.model_validate(data)
        if not record.is_valid:
            msg = "Invalid token"
            raise InvalidCredential(msg)
        if record.expires_at < self.clock():
            msg = "Token expired"
            raise Expired(msg)
        if script_id is not None and record.script_id != script_id:
            self.logger.warning(
                "Token bound to %s presented for %s", record.script_id, script_id
            )
            msg = "Invalid token"
            raise InvalidCredential(msg)
        if record.step > record.max_step:
            msg = "Token step limit exceeded"
            raise InvalidCredential(msg)
        return record

    def rotate(self, token: str, script_id: str | None = None) -> RotatingToken:
        old = self.consume(token, script_id)
        if old.step + 1 > old.max_step:
            msg = "Token step limit exceeded"
            raise InvalidCredential(msg)
        return self.issue_rotating_token(
            old.script_id,
            old.ip,
            hwid_hash=old.hwid_hash,
            key_id=old.key_id,
            step=old.step + 1,
            max_step=old.max_step,
        )
