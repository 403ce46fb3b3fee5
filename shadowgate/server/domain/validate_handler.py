"""
Validation request handler.

Runs the credential gates in a fixed order (executor, blacklist, handshake
token, tracepath, rotating token, nonce and request hash), then the key
lifecycle and the decision engine, and finally encodes the payload for the
requested delivery mode.
"""

from __future__ import annotations

import hashlib
import logging
import time
from typing import TYPE_CHECKING, Any, Callable

from shadowgate.common.crypto import CryptoUtils
from shadowgate.common.exceptions import Banned, InvalidCredential, ValidationError
from shadowgate.common.models import DeliverySession
from shadowgate.server.binary_stream import BinaryStream
from shadowgate.server.chunk_encryption import ChunkCipher
from shadowgate.server.delivery.payload import (
    apply_watermark,
    derivation_salt,
    derive_delivery_key,
    xor_encode,
)
from shadowgate.server.request_meta import require_executor

if TYPE_CHECKING:
    from shadowgate.common.config import Config
    from shadowgate.common.interfaces import ISideTasks
    from shadowgate.common.models import (
        LicenseKey,
        RequestMeta,
        ScriptRecord,
        ValidateRequest,
    )
    from shadowgate.server.domain.key_policy import KeyPolicy
    from shadowgate.server.guard import SecurityGuard
    from shadowgate.server.persistence import DataPersistence
    from shadowgate.server.security_engine import SecurityEngine
    from shadowgate.server.tokens import TokenIssuer
    from shadowgate.server.tracepath import TracepathMachine

DELIVERY_HEADER = "x-delivery-mode"


class ValidateHandler:
    """Validates a key and returns the encoded payload."""

    def __init__(  # noqa: PLR0913
        self,
        config: Config,
        persistence: DataPersistence,
        guard: SecurityGuard,
        tokens: TokenIssuer,
        tracepath: TracepathMachine,
        key_policy: KeyPolicy,
        engine: SecurityEngine,
        side_tasks: ISideTasks,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.persistence = persistence
        self.guard = guard
        self.tokens = tokens
        self.tracepath = tracepath
        self.key_policy = key_policy
        self.engine = engine
        self.side_tasks = side_tasks
        self.clock = clock
        self.chunk_cipher = ChunkCipher(
            chunk_size=config.CHUNK_SIZE, iterations=config.PBKDF2_ITERATIONS, clock=clock
        )
        self.logger = logging.getLogger(__name__)

    def handle_validate(
        self,
        req: ValidateRequest,
        meta: RequestMeta,
        delivery_header: str | None = None,
    ) -> dict[str, Any]:
        executor = require_executor(meta)
        hwid_hash = (
            CryptoUtils.hash_identifier(req.hwid, self.config.STATIC_SALT)
            if req.hwid
            else None
        )
        self.guard.ensure_not_blacklisted(meta.ip, hwid_hash)

        self._check_credentials(req, hwid_hash)
        self._check_replay(req, meta)

        script = self._load_script(req.script_id)
        key = self._check_key(req, meta, script, hwid_hash)
        key = self.key_policy.record_use(key)
        self._analyze(req, meta, key, script, hwid_hash)

        response = self._deliver(req, key, script, delivery_header)
        session = self._register_session(key, script, hwid_hash, meta, executor)
        response["session_token"] = session.session_token
        self._dispatch_side_tasks(req, meta, key, script, executor)

        self.logger.info(
            "Key %s validated for script %s (%s)",
            key.key_id,
            script.script_id,
            response["delivery_mode"],
        )
        return response

    # Credential gates

    def _check_credentials(self, req: ValidateRequest, hwid_hash: str | None) -> None:
        if req.handshake_token:
            self.tokens.verify_handshake_token(req.handshake_token, req.script_id)

        if req.session_id:
            if not req.rotating_token:
                msg = "Missing rotating token"
                raise InvalidCredential(msg)
            self.tracepath.advance(req.session_id, "validate")

        if req.rotating_token:
            token = self.tokens.consume(req.rotating_token, req.script_id)
            if token.hwid_hash and hwid_hash and token.hwid_hash != hwid_hash:
                self.logger.warning("Rotating token presented from a different HWID")
                msg = "Invalid token"
                raise InvalidCredential(msg)

    def _check_replay(self, req: ValidateRequest, meta: RequestMeta) -> None:
        if req.nonce is not None:
            if len(req.nonce) != self.config.NONCE_LENGTH:
                msg = "Invalid nonce"
                raise ValidationError(msg, 400)
            self.guard.consume_nonce(req.nonce, {"ip": meta.ip, "script_id": req.script_id})
        if req.request_hash:
            self.guard.consume_request_hash(req.request_hash)

    # Key lifecycle

    def _load_script(self, script_id: str) -> ScriptRecord:
        script = self.persistence.get_script(script_id)
        if script is None:
            msg = "Script not found"
            raise ValidationError(msg, 404)
        return script

    def _check_key(
        self,
        req: ValidateRequest,
        meta: RequestMeta,
        script: ScriptRecord,
        hwid_hash: str | None,
    ) -> LicenseKey:
        key = self.key_policy.load(script.script_id, req.key, meta)
        key = self.key_policy.ensure_not_banned(key)
        key = self.key_policy.ensure_active(key)
        if script.flags.hwid_lock:
            key = self.key_policy.bind_hwid(key, hwid_hash)
        return key

    def _analyze(
        self,
        req: ValidateRequest,
        meta: RequestMeta,
        key: LicenseKey,
        script: ScriptRecord,
        hwid_hash: str | None,
    ) -> None:
        decision = self.engine.analyze(
            meta,
            key=key,
            script_id=script.script_id,
            hwid_hash=hwid_hash,
            reported_threats=req.detected_threats,
            reported_executor=req.executor,
            max_warnings=script.flags.max_warnings,
        )
        if decision.should_ban or decision.action == "already_banned":
            raise Banned("Banned", reason=", ".join(decision.reasons) or None)
        if decision.action == "warning":
            refreshed = self.persistence.get_key_by_id(key.key_id)
            if refreshed is not None and refreshed.is_banned:
                raise Banned("Banned", reason=refreshed.ban_reason)

    # Delivery

    def _deliver(
        self,
        req: ValidateRequest,
        key: LicenseKey,
        script: ScriptRecord,
        delivery_header: str | None,
    ) -> dict[str, Any]:
        now = self.clock()
        now_ms = int(now * 1000)
        hwid = req.hwid or ""
        content = apply_watermark(script.content, key.key_id, now_ms)
        salt = derivation_salt(key.key_id, hwid, now_ms, self.config.STATIC_SALT)
        derived_key = derive_delivery_key(salt, hwid, req.session_key or "", now_ms)

        response: dict[str, Any] = {
            "valid": True,
            "code": "KEY_VALID",
            "salt": salt,
            "timestamp": now_ms,
            "script_name": script.name,
            "expires_at": key.expires_at,
            "seconds_left": self.key_policy.seconds_left(key, int(now)),
            "discord_id": key.discord_id,
        }
        mode = req.delivery_mode or delivery_header or "xor"
        if mode == "binary":
            stream, checksum = BinaryStream.encode(
                content, derived_key, salt, self.config.CHUNK_SIZE
            )
            response.update(
                binary_stream=stream, binary_checksum=checksum, delivery_mode="binary"
            )
        elif mode == "chunked":
            payload = self.chunk_cipher.split(content, derived_key)
            response.update(chunks=payload.model_dump(), delivery_mode="chunked")
        else:
            response.update(script=xor_encode(content, derived_key), delivery_mode="xor")

        if script.response_secret and req.nonce:
            response["signature"] = hashlib.sha1(  # noqa: S324
                f"{req.nonce}{script.response_secret}KEY_VALID".encode()
            ).hexdigest()
        return response

    def _register_session(
        self,
        key: LicenseKey,
        script: ScriptRecord,
        hwid_hash: str | None,
        meta: RequestMeta,
        executor: str,
    ) -> DeliverySession:
        now = int(self.clock())
        session = DeliverySession(
            session_token=CryptoUtils.generate_token(self.config.SESSION_TOKEN_LENGTH),
            key_id=key.key_id,
            script_id=script.script_id,
            hwid_hash=hwid_hash,
            ip=meta.ip,
            executor=executor,
            last_heartbeat=now,
            created_at=now,
        )
        self.persistence.save_delivery_session(session, self.config.DELIVERY_SESSION_TTL)
        return session

    def _dispatch_side_tasks(
        self,
        req: ValidateRequest,
        meta: RequestMeta,
        key: LicenseKey,
        script: ScriptRecord,
        executor: str,
    ) -> None:
        def record_country(country: str | None) -> None:
            if country:
                self.persistence.log_event(
                    "execution_geo", "info", key_id=key.key_id, country=country
                )

        self.side_tasks.lookup_country(meta.ip, record_country)
        if script.webhook_url:
            self.side_tasks.send_webhook(
                script.webhook_url,
                {
                    "event": "execution",
                    "script": script.name,
                    "key_id": key.key_id,
                    "executor": executor,
                    "username": req.username,
                    "executions": key.execution_count,
                },
            )
