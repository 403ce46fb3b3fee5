"""Heartbeat request handler.

The server alone decides whether a live session keeps running; the response
carries its directive (alive, kicked, banned, expired or a warning).
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Any, Callable

from shadowgate.common.exceptions import InvalidCredential, RateLimitError
from shadowgate.common.models import DeliverySession

if TYPE_CHECKING:
    from shadowgate.common.config import Config
    from shadowgate.common.models import HeartbeatRequest, LicenseKey, RequestMeta
    from shadowgate.server.guard import SecurityGuard
    from shadowgate.server.persistence import DataPersistence
    from shadowgate.server.security_engine import SecurityEngine


class HeartbeatHandler:
    """Handles register, ping, validate and kill for delivery sessions."""

    def __init__(  # noqa: PLR0913
        self,
        config: Config,
        persistence: DataPersistence,
        guard: SecurityGuard,
        engine: SecurityEngine,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.persistence = persistence
        self.guard = guard
        self.engine = engine
        self.clock = clock
        self.logger = logging.getLogger(__name__)

    def handle_heartbeat(
        self, req: HeartbeatRequest, session_token: str | None, meta: RequestMeta
    ) -> dict[str, Any]:
        limit, window = self.config.HEARTBEAT_RATE_LIMIT
        if not self.guard.check_rate_limit(f"heartbeat:{meta.ip}", limit, window).allowed:
            raise RateLimitError
        session = self._load_session(session_token)

        if req.action == "register":
            return self._register(session, meta)
        if req.action == "validate":
            return self._validate(session)
        if req.action == "kill":
            return self._kill(session)
        return self._ping(session, req, meta)

    def _load_session(self, session_token: str | None) -> DeliverySession:
        session = (
            self.persistence.get_delivery_session(session_token) if session_token else None
        )
        if session is None:
            msg = "Invalid session"
            raise InvalidCredential(msg)
        return session

    def _set_status(self, session: DeliverySession, **changes: Any) -> DeliverySession:
        updated = session.model_copy(update=changes)
        self.persistence.save_delivery_session(updated, self.config.DELIVERY_SESSION_TTL)
        return updated

    def _key_for(self, session: DeliverySession) -> LicenseKey | None:
        return self.persistence.get_key_by_id(session.key_id)

    def _register(self, session: DeliverySession, meta: RequestMeta) -> dict[str, Any]:
        blocked, entry = self.guard.is_blacklisted(meta.ip, session.hwid_hash)
        if blocked:
            self._set_status(session, status="banned")
            return {"success": False, "banned": True, "reason": entry.reason if entry else None}
        self._set_status(session, last_heartbeat=int(self.clock()))
        return {
            "success": True,
            "session_token": session.session_token,
            "ttl": self.config.HEARTBEAT_INTERVAL_MS // 1000,
        }

    def _ping(
        self, session: DeliverySession, req: HeartbeatRequest, meta: RequestMeta
    ) -> dict[str, Any]:
        blocked, entry = self.guard.is_blacklisted(meta.ip, session.hwid_hash)
        if blocked:
            self._set_status(session, status="banned")
            return {"alive": False, "banned": True, "reason": entry.reason if entry else None}
        if session.status == "kicked":
            return {"alive": False, "kicked": True}
        if session.status != "active":
            return {"alive": False, "status": session.status}

        key = self._key_for(session)
        if key is None or key.is_banned:
            self._set_status(session, status="banned")
            return {
                "alive": False,
                "banned": True,
                "reason": key.ban_reason if key else "Key removed",
            }
        now = int(self.clock())
        if key.expires_at is not None and key.expires_at < now:
            self._set_status(session, status="disconnected")
            return {"alive": False, "expired": True}

        if req.detected_threats:
            directive = self._handle_threats(session, key, req, meta)
            if directive is not None:
                return directive

        self._set_status(session, last_heartbeat=now)
        return {"alive": True, "nextHeartbeat": self.config.HEARTBEAT_INTERVAL_MS}

    def _handle_threats(
        self,
        session: DeliverySession,
        key: LicenseKey,
        req: HeartbeatRequest,
        meta: RequestMeta,
    ) -> dict[str, Any] | None:
        script = self.persistence.get_script(session.script_id)
        flags = script.flags if script else None
        max_warnings = flags.max_warnings if flags else self.config.DEFAULT_MAX_WARNINGS
        tool = req.detected_threats[0]

        decision = self.engine.analyze(
            meta,
            key=key,
            script_id=session.script_id,
            hwid_hash=session.hwid_hash,
            reported_threats=req.detected_threats,
            reported_executor=req.executor,
            max_warnings=max_warnings,
        )
        if decision.should_ban or decision.action == "already_banned":
            self._set_status(session, status="banned")
            return {"alive": False, "banned": True, "reason": "security ban"}

        # Reported threats alone only feed the score; analyze already
        # counted the warning when its own decision called for one.
        if decision.action != "warning" or flags is None or not flags.spy_warnings:
            return None
        key = self.persistence.get_key_by_id(key.key_id) or key
        if key.is_banned:
            self._set_status(session, status="banned")
            return {"alive": False, "banned": True, "reason": key.ban_reason}

        self._set_status(
            session, warnings=session.warnings + 1, last_heartbeat=int(self.clock())
        )
        return {
            "alive": True,
            "show_warning": True,
            "warning_tool": tool,
            "warning_count": key.warning_count,
            "max_warnings": max_warnings,
            "nextHeartbeat": self.config.HEARTBEAT_INTERVAL_MS,
        }

    def _validate(self, session: DeliverySession) -> dict[str, Any]:
        key = self._key_for(session)
        now = int(self.clock())
        valid = (
            session.status == "active"
            and key is not None
            and not key.is_banned
            and (key.expires_at is None or key.expires_at >= now)
        )
        return {"valid": valid, "status": session.status}

    def _kill(self, session: DeliverySession) -> dict[str, Any]:
        self._set_status(session, status="disconnected")
        self.logger.info("Session for key %s closed by client", session.key_id)
        return {"success": True}
