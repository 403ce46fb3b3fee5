"""
Tracepath step handlers: version, info, endpoints and flags.

Each step advances the caller's session by exactly one position. The flags
step mints the rotating token that the validation call must present.
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Any, Callable

from shadowgate.common.crypto import CryptoUtils
from shadowgate.common.exceptions import ValidationError
from shadowgate.server.request_meta import require_executor

if TYPE_CHECKING:
    from shadowgate.common.config import Config
    from shadowgate.common.models import RequestMeta, ScriptRecord, TracepathSession
    from shadowgate.server.guard import SecurityGuard
    from shadowgate.server.persistence import DataPersistence
    from shadowgate.server.tokens import TokenIssuer
    from shadowgate.server.tracepath import TracepathMachine


class TracepathHandler:
    """Serves the ordered handshake steps."""

    def __init__(  # noqa: PLR0913
        self,
        config: Config,
        persistence: DataPersistence,
        guard: SecurityGuard,
        tokens: TokenIssuer,
        tracepath: TracepathMachine,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.persistence = persistence
        self.guard = guard
        self.tokens = tokens
        self.tracepath = tracepath
        self.clock = clock
        self.logger = logging.getLogger(__name__)

    def _hash_hwid(self, hwid: str | None) -> str | None:
        return CryptoUtils.hash_identifier(hwid, self.config.STATIC_SALT) if hwid else None

    def _enter(self, meta: RequestMeta, hwid: str | None = None) -> str | None:
        require_executor(meta)
        hwid_hash = self._hash_hwid(hwid)
        self.guard.ensure_not_blacklisted(meta.ip, hwid_hash)
        return hwid_hash

    @staticmethod
    def _require_session_id(session_id: str | None) -> str:
        if not session_id:
            msg = "Missing session_id"
            raise ValidationError(msg, 400)
        return session_id

    def _script_for(self, session: TracepathSession) -> ScriptRecord:
        script = self.persistence.get_script(session.script_id)
        if script is None:
            msg = "Invalid script"
            raise ValidationError(msg, 404)
        return script

    def version(
        self, script_id: str | None, session_id: str | None, meta: RequestMeta
    ) -> dict[str, Any]:
        """Step 1. Reuses the handshake's session or opens a fresh one."""
        self._enter(meta)
        if not script_id:
            msg = "Missing script_id"
            raise ValidationError(msg, 400)
        if not session_id:
            session_id = self.tracepath.start(script_id, meta.ip).session_id
        session = self.tracepath.advance(session_id, "version")
        return {
            "success": True,
            "version": self.config.PROTOCOL_VERSION,
            "api_version": self.config.API_VERSION,
            "session_id": session.session_id,
            "server_time": int(self.clock()),
            "next_step": self.tracepath.next_step("version"),
        }

    def info(
        self, session_id: str | None, hwid: str | None, meta: RequestMeta
    ) -> dict[str, Any]:
        hwid_hash = self._enter(meta, hwid)
        session_id = self._require_session_id(session_id)
        updates = {"hwid_hash": hwid_hash} if hwid_hash else {}
        session = self.tracepath.advance(session_id, "info", **updates)
        script = self._script_for(session)
        flags = script.flags
        return {
            "success": True,
            "script_name": script.name,
            "features": {
                "heartbeat": True,
                "binary_delivery": True,
                "chunked_delivery": True,
                "secure_core": flags.secure_core,
                "anti_tamper": flags.anti_tamper,
            },
            "next_step": self.tracepath.next_step("info"),
        }

    def endpoints(self, session_id: str | None, meta: RequestMeta) -> dict[str, Any]:
        self._enter(meta)
        session_id = self._require_session_id(session_id)
        self.tracepath.advance(session_id, "endpoints")
        base = self.config.BASE_URL.rstrip("/")
        return {
            "success": True,
            "endpoints": {
                "version": f"{base}/auth/version",
                "info": f"{base}/auth/info",
                "endpoints": f"{base}/auth/endpoints",
                "flags": f"{base}/auth/flags",
                "validate": f"{base}/validate",
                "heartbeat": f"{base}/heartbeat",
            },
            "next_step": self.tracepath.next_step("endpoints"),
        }

    def flags(
        self, session_id: str | None, hwid: str | None, meta: RequestMeta
    ) -> dict[str, Any]:
        hwid_hash = self._enter(meta, hwid)
        session_id = self._require_session_id(session_id)
        session = self.tracepath.advance(session_id, "flags")
        script = self._script_for(session)
        token = self.tokens.issue_rotating_token(
            session.script_id,
            meta.ip,
            hwid_hash=hwid_hash or session.hwid_hash,
            step=1,
            max_step=self.config.FLAGS_TOKEN_MAX_STEP,
            ttl=self.config.ROTATING_TOKEN_TTL,
        )
        return {
            "success": True,
            "rotating_token": token.token,
            "token_ttl": self.config.ROTATING_TOKEN_TTL,
            "flags": script.flags.model_dump(),
            "next_step": self.tracepath.next_step("flags"),
        }
