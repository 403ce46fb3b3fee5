"""Handshake request handler.
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Any, Callable

from shadowgate.common.crypto import CryptoUtils
from shadowgate.common.exceptions import RateLimitError, ValidationError
from shadowgate.server.request_meta import require_executor

if TYPE_CHECKING:
    from shadowgate.common.config import Config
    from shadowgate.common.models import (
        HandshakeRequest,
        LicenseKey,
        RequestMeta,
        ScriptRecord,
    )
    from shadowgate.server.domain.key_policy import KeyPolicy
    from shadowgate.server.guard import SecurityGuard
    from shadowgate.server.persistence import DataPersistence
    from shadowgate.server.tokens import TokenIssuer
    from shadowgate.server.tracepath import TracepathMachine


class HandshakeHandler:
    """Checks a key and hands out the credentials for the tracepath."""

    def __init__(  # noqa: PLR0913
        self,
        config: Config,
        persistence: DataPersistence,
        guard: SecurityGuard,
        tokens: TokenIssuer,
        tracepath: TracepathMachine,
        key_policy: KeyPolicy,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.persistence = persistence
        self.guard = guard
        self.tokens = tokens
        self.tracepath = tracepath
        self.key_policy = key_policy
        self.clock = clock
        self.logger = logging.getLogger(__name__)

    def handle_handshake(self, req: HandshakeRequest, meta: RequestMeta) -> dict[str, Any]:
        executor = require_executor(meta)
        hwid_hash = (
            CryptoUtils.hash_identifier(req.hwid, self.config.STATIC_SALT)
            if req.hwid
            else None
        )
        self.guard.ensure_not_blacklisted(meta.ip, hwid_hash)
        self._check_rate_limit(meta)

        script = self._load_script(req.script_id)
        key = self._check_key(req, meta, script, hwid_hash)

        session = self.tokens.issue_session_token(
            script.script_id, meta.ip, hwid_hash=hwid_hash, key_id=key.key_id
        )
        handshake_token = self.tokens.issue_handshake_token(
            script.script_id, hwid_hash, meta.ip
        )
        trace = self.tracepath.start(script.script_id, meta.ip, hwid_hash)
        key = self.key_policy.record_use(key)

        self.logger.info(
            "Handshake for key %s on script %s via %s", key.key_id, script.script_id, executor
        )
        return {
            "success": True,
            "token": session.token,
            "script_token": CryptoUtils.generate_token(self.config.SCRIPT_TOKEN_LENGTH),
            "handshake_token": handshake_token,
            "tracepath_session": trace.session_id,
            "salt": CryptoUtils.generate_salt(),
            "script_name": script.name,
            "expires_at": key.expires_at,
            "discord_id": key.discord_id,
            "executor": executor,
            "token_expires": int(session.expires_at),
        }

    def _check_rate_limit(self, meta: RequestMeta) -> None:
        limit, window = self.config.HANDSHAKE_RATE_LIMIT
        if not self.guard.check_rate_limit(f"handshake:{meta.ip}", limit, window).allowed:
            raise RateLimitError

    def _load_script(self, script_id: str) -> ScriptRecord:
        script = self.persistence.get_script(script_id)
        if script is None:
            msg = "Invalid script"
            raise ValidationError(msg, 404)
        return script

    def _check_key(
        self,
        req: HandshakeRequest,
        meta: RequestMeta,
        script: ScriptRecord,
        hwid_hash: str | None,
    ) -> LicenseKey:
        key = self.key_policy.load(script.script_id, req.key, meta)
        key = self.key_policy.ensure_not_banned(key, "Key banned")
        key = self.key_policy.ensure_active(
            key, activate=False, message="Key expired", status_code=403
        )
        if script.flags.hwid_lock:
            key = self.key_policy.bind_hwid(key, hwid_hash, status_code=403)
        return key
