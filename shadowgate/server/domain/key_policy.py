"""
License key lifecycle checks shared by the handshake and validation paths.
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Callable

from shadowgate.common.exceptions import Banned, Expired, InvalidCredential

if TYPE_CHECKING:
    from shadowgate.common.config import Config
    from shadowgate.common.models import LicenseKey, RequestMeta
    from shadowgate.server.persistence import DataPersistence

DAY_SECONDS = 86400


class KeyPolicy:
    """Loads keys and enforces ban, expiry and HWID binding rules."""

    def __init__(
        self,
        config: Config,
        persistence: DataPersistence,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.persistence = persistence
        self.clock = clock
        self.logger = logging.getLogger(__name__)

    def load(self, script_id: str, key_value: str, meta: RequestMeta) -> LicenseKey:
        key = self.persistence.get_key(script_id, key_value)
        if key is None:
            self.logger.warning("Invalid key for script %s from %s", script_id, meta.ip)
            self.persistence.log_event(
                "invalid_key", "warning", ip=meta.ip, script_id=script_id
            )
            raise InvalidCredential
        return key

    def ensure_not_banned(self, key: LicenseKey, message: str = "Banned") -> LicenseKey:
        """Lift a ban whose expiry has passed, otherwise reject a banned key."""
        if not key.is_banned:
            return key
        now = int(self.clock())
        if key.ban_expire is not None and key.ban_expire <= now:

            def lift(record: LicenseKey) -> None:
                record.is_banned = False
                record.ban_reason = None
                record.ban_expire = None

            self.logger.info("Ban on key %s expired, lifting", key.key_id)
            return self.persistence.update_key(key, lift)
        raise Banned(message, reason=key.ban_reason, expires_at=key.ban_expire)

    def ensure_active(
        self,
        key: LicenseKey,
        *,
        activate: bool = True,
        message: str = "Expired",
        status_code: int = 401,
    ) -> LicenseKey:
        """Start a key_days key on first use and reject keys past expiry."""
        now = int(self.clock())
        if activate and key.key_days and key.activated_at is None:
            days = key.key_days

            def start(record: LicenseKey) -> None:
                if record.activated_at is None:
                    record.activated_at = now
                    record.expires_at = now + days * DAY_SECONDS

            key = self.persistence.update_key(key, start)
            self.logger.info("Activated key %s for %s days", key.key_id, days)
        if key.expires_at is not None and key.expires_at < now:
            raise Expired(message, status_code)
        return key

    def bind_hwid(
        self, key: LicenseKey, hwid_hash: str | None, status_code: int = 401
    ) -> LicenseKey:
        """Lock the key to hwid_hash, allowing a limited number of rebinds."""
        if hwid_hash is None or key.hwid == hwid_hash:
            return key
        if key.hwid is not None and key.hwid_reset_count >= self.config.MAX_HWID_RESETS:
            self.logger.warning("HWID mismatch for key %s", key.key_id)
            msg = "HWID mismatch"
            raise InvalidCredential(msg, status_code)

        def rebind(record: LicenseKey) -> None:
            if record.hwid is not None:
                record.hwid_reset_count += 1
            record.hwid = hwid_hash

        return self.persistence.update_key(key, rebind)

    def record_use(self, key: LicenseKey) -> LicenseKey:
        now = int(self.clock())

        def bump(record: LicenseKey) -> None:
            record.execution_count += 1
            record.used_at = now

        return self.persistence.update_key(key, bump)

    @staticmethod
    def seconds_left(key: LicenseKey, now: int) -> int | None:
        return None if key.expires_at is None else max(key.expires_at - now, 0)
