"""
Admin request handler for key and blacklist management.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import TYPE_CHECKING, Any, Callable

from shadowgate.common.crypto import CryptoUtils
from shadowgate.common.exceptions import ValidationError
from shadowgate.common.models import LicenseKey

if TYPE_CHECKING:
    from shadowgate.common.config import Config
    from shadowgate.common.models import (
        AdminRequest,
        BlacklistRequest,
        CreateKeyRequest,
        KeyActionRequest,
        SessionActionRequest,
    )
    from shadowgate.server.guard import SecurityGuard
    from shadowgate.server.persistence import DataPersistence


class AdminHandler:
    """Handles password-protected key, session and blacklist actions."""

    def __init__(
        self,
        config: Config,
        persistence: DataPersistence,
        guard: SecurityGuard,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.persistence = persistence
        self.guard = guard
        self.clock = clock
        self.logger = logging.getLogger(__name__)

    def _authorize(self, req: AdminRequest) -> None:
        password = self.config.ADMIN_PASSWORD
        if not password or not CryptoUtils.timing_safe_equal(req.password, password):
            self.logger.warning("Rejected admin request with a bad password")
            msg = "Invalid admin password"
            raise ValidationError(msg)

    def _load_key(self, script_id: str, key_value: str) -> LicenseKey:
        key = self.persistence.get_key(script_id, key_value)
        if key is None:
            msg = "Key not found"
            raise ValidationError(msg, 404)
        return key

    def create_key(self, req: CreateKeyRequest) -> dict[str, Any]:
        self._authorize(req)
        if self.persistence.get_script(req.script_id) is None:
            msg = "Script not found"
            raise ValidationError(msg, 404)
        key_value = req.key_value or CryptoUtils.generate_token(32)
        if self.persistence.get_key(req.script_id, key_value) is not None:
            msg = "Key already exists"
            raise ValidationError(msg, 409)
        key = LicenseKey(
            key_id=str(uuid.uuid4()),
            key_value=key_value,
            script_id=req.script_id,
            expires_at=req.expires_at,
            key_days=req.key_days,
            discord_id=req.discord_id,
            created_at=int(self.clock()),
        )
        self.persistence.save_key(key)
        self.logger.info("Created key %s for script %s", key.key_id, req.script_id)
        return {"success": True, "key_id": key.key_id, "key": key_value}

    def reset_hwid(self, req: KeyActionRequest) -> dict[str, Any]:
        self._authorize(req)
        key = self._load_key(req.script_id, req.key)
        if key.is_banned:
            msg = "User is banned"
            raise ValidationError(msg)
        now = int(self.clock())
        if (
            not req.force
            and key.last_reset is not None
            and now - key.last_reset < self.config.HWID_RESET_COOLDOWN
        ):
            remaining = self.config.HWID_RESET_COOLDOWN - (now - key.last_reset)
            msg = f"HWID reset on cooldown ({remaining // 3600}h remaining)"
            raise ValidationError(msg, 429)

        def reset(record: LicenseKey) -> None:
            record.hwid = None
            record.last_reset = now
            record.hwid_reset_count += 1

        updated = self.persistence.update_key(key, reset)
        self.persistence.log_event("hwid_reset", "info", key_id=key.key_id, forced=req.force)
        return {"success": True, "hwid_reset_count": updated.hwid_reset_count}

    def ban_key(self, req: KeyActionRequest) -> dict[str, Any]:
        self._authorize(req)
        key = self._load_key(req.script_id, req.key)
        ban_expire = int(self.clock()) + req.duration if req.duration else None
        reason = req.reason or "Banned by admin"

        def ban(record: LicenseKey) -> None:
            record.is_banned = True
            record.ban_reason = reason
            record.ban_expire = ban_expire

        self.persistence.update_key(key, ban)
        for session in self.persistence.delivery_sessions_for_key(key.key_id):
            if session.status == "active":
                self.persistence.save_delivery_session(
                    session.model_copy(update={"status": "banned"}),
                    self.config.DELIVERY_SESSION_TTL,
                )
        self.persistence.log_event("key_banned", "warning", key_id=key.key_id, reason=reason)
        self.logger.info("Banned key %s: %s", key.key_id, reason)
        return {"success": True, "ban_expire": ban_expire}

    def unban_key(self, req: KeyActionRequest) -> dict[str, Any]:
        self._authorize(req)
        key = self._load_key(req.script_id, req.key)

        def unban(record: LicenseKey) -> None:
            record.is_banned = False
            record.ban_reason = None
            record.ban_expire = None
            record.warning_count = 0

        self.persistence.update_key(key, unban)
        self.logger.info("Unbanned key %s", key.key_id)
        return {"success": True}

    def kick_session(self, req: SessionActionRequest) -> dict[str, Any]:
        self._authorize(req)
        session = self.persistence.get_delivery_session(req.session_token)
        if session is None:
            msg = "Session not found"
            raise ValidationError(msg, 404)
        self.persistence.save_delivery_session(
            session.model_copy(update={"status": "kicked"}),
            self.config.DELIVERY_SESSION_TTL,
        )
        self.logger.info("Kicked session for key %s", session.key_id)
        return {"success": True}

    def add_blacklist(self, req: BlacklistRequest) -> dict[str, Any]:
        self._authorize(req)
        ttl = None if req.permanent else (req.ttl or -1)
        entry = self.guard.add_to_blacklist(req.identifier, req.reason, ttl)
        return {"success": True, "entry": entry.model_dump()}

    def remove_blacklist(self, req: BlacklistRequest) -> dict[str, Any]:
        self._authorize(req)
        return {"success": self.guard.remove_from_blacklist(req.identifier)}
