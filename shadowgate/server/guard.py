"""
Replay and rate-limit guard.

Rate-limit counters, nonces, request hashes and blacklist entries are kept
in the injected store, which is authoritative. Positive blacklist hits are
also cached in-process for the lifetime of the ban.
"""

from __future__ import annotations

import logging
import random
import threading
import time
from typing import TYPE_CHECKING, Any, Callable

from shadowgate.common.exceptions import Banned, ReplayDetected
from shadowgate.common.models import BlacklistEntry, RateLimitResult, RateLimitState

if TYPE_CHECKING:
    from shadowgate.common.config import Config
    from shadowgate.common.interfaces import IStore

RATE_LIMITS = "rate_limits"
NONCES = "nonces"
REQUEST_HASHES = "request_hashes"
BLACKLIST = "blacklist"


def hwid_identifier(hwid_hash: str) -> str:
    return f"hwid:{hwid_hash}"


class SecurityGuard:
    """Rate limiting, single-use nonces and the IP/HWID blacklist."""

    def __init__(
        self,
        config: Config,
        store: IStore,
        clock: Callable[[], float] = time.time,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.config = config
        self.store = store
        self.clock = clock
        self.rng = rng
        self.logger = logging.getLogger(__name__)
        self._blacklist_cache: dict[str, BlacklistEntry] = {}
        self._cache_lock = threading.Lock()

    # Rate limiting

    def check_rate_limit(
        self, identifier: str, max_requests: int, window_seconds: int
    ) -> RateLimitResult:
        """Fixed-window counter; a breach blocks the identifier for 2x window."""
        now = self.clock()
        outcome: dict[str, Any] = {}

        def apply(current: dict[str, Any] | None) -> dict[str, Any]:
            if current is None:
                state = RateLimitState(identifier=identifier, count=1, window_start=now)
                outcome["result"] = RateLimitResult(
                    allowed=True, remaining=max_requests - 1, reset_at=now + window_seconds
                )
                return state.model_dump()

            state = RateLimitState.model_validate(current)
            if now - state.window_start >= window_seconds:
                state = RateLimitState(identifier=identifier, count=1, window_start=now)
                outcome["result"] = RateLimitResult(
                    allowed=True, remaining=max_requests - 1, reset_at=now + window_seconds
                )
            elif state.count >= max_requests:
                if state.blocked_until is None or state.blocked_until <= now:
                    state.blocked_until = now + window_seconds * 2
                outcome["result"] = RateLimitResult(
                    allowed=False, remaining=0, reset_at=state.blocked_until, blocked=True
                )
            else:
                state.count += 1
                outcome["result"] = RateLimitResult(
                    allowed=True,
                    remaining=max_requests - state.count,
                    reset_at=state.window_start + window_seconds,
                )
            return state.model_dump()

        self.store.update(RATE_LIMITS, identifier, apply, ttl=window_seconds * 3)
        result: RateLimitResult = outcome["result"]
        if not result.allowed:
            self.logger.warning("Rate limit exceeded for %s", identifier)
        return result

    # Nonces and request hashes

    def _maybe_sweep(self, namespace: str) -> None:
        if self.rng() < self.config.CLEANUP_PROBABILITY:
            removed = self.store.sweep(namespace)
            self.logger.debug("Swept %s expired entries from %s", removed, namespace)

    def is_nonce_used(self, nonce: str) -> bool:
        return self.store.get(NONCES, nonce) is not None

    def mark_nonce_used(self, nonce: str, context: dict[str, Any] | None = None) -> bool:
        """Record nonce. Returns False when it had already been used."""
        inserted = self.store.insert_unique(
            NONCES,
            nonce,
            {"used_at": self.clock(), **(context or {})},
            self.config.NONCE_TTL,
        )
        self._maybe_sweep(NONCES)
        return inserted

    def consume_nonce(self, nonce: str, context: dict[str, Any] | None = None) -> None:
        if not self.mark_nonce_used(nonce, context):
            self.logger.warning("Nonce replay detected: %s", nonce)
            raise ReplayDetected

    def is_request_hash_used(self, request_hash: str) -> bool:
        return self.store.get(REQUEST_HASHES, request_hash) is not None

    def mark_request_hash_used(self, request_hash: str) -> bool:
        inserted = self.store.insert_unique(
            REQUEST_HASHES,
            request_hash,
            {"used_at": self.clock()},
            self.config.REQUEST_HASH_TTL,
        )
        self._maybe_sweep(REQUEST_HASHES)
        return inserted

    def consume_request_hash(self, request_hash: str) -> None:
        if not self.mark_request_hash_used(request_hash):
            self.logger.warning("Request hash replay detected: %s", request_hash)
            raise ReplayDetected

    # Blacklist

    def _cached_entry(self, identifier: str) -> BlacklistEntry | None:
        with self._cache_lock:
            entry = self._blacklist_cache.get(identifier)
            if entry is None:
                return None
            if entry.expires_at is not None and entry.expires_at <= self.clock():
                del self._blacklist_cache[identifier]
                return None
            return entry

    def _lookup(self, identifier: str) -> BlacklistEntry | None:
        entry = self._cached_entry(identifier)
        if entry is not None:
            return entry
        data = self.store.get(BLACKLIST, identifier)
        if data is None:
            return None
        entry = BlacklistEntry.model_validate(data)
        with self._cache_lock:
            self._blacklist_cache[identifier] = entry
        return entry

    def is_blacklisted(
        self, ip: str, hwid_hash: str | None = None
    ) -> tuple[bool, BlacklistEntry | None]:
        identifiers = [ip]
        if hwid_hash:
            identifiers.append(hwid_identifier(hwid_hash))
        for identifier in identifiers:
            entry = self._lookup(identifier)
            if entry is not None:
                return True, entry
        return False, None

    def ensure_not_blacklisted(self, ip: str, hwid_hash: str | None = None) -> None:
        blocked, entry = self.is_blacklisted(ip, hwid_hash)
        if blocked and entry is not None:
            self.logger.warning(
                "Blocked blacklisted client %s (%s)", entry.identifier, entry.reason
            )
            raise Banned(reason=entry.reason, expires_at=entry.expires_at)

    def add_to_blacklist(
        self,
        identifier: str,
        reason: str | None = None,
        ttl: int | None = -1,
    ) -> BlacklistEntry:
        """Ban identifier. ttl of -1 means the default, None means permanent."""
        if ttl == -1:
            ttl = self.config.BLACKLIST_DEFAULT_TTL
        now = int(self.clock())
        entry = BlacklistEntry(
            identifier=identifier,
            reason=reason or self.config.BLACKLIST_DEFAULT_REASON,
            banned_at=now,
            expires_at=now + ttl if ttl is not None else None,
        )
        self.store.put(BLACKLIST, identifier, entry.model_dump(), ttl)
        with self._cache_lock:
            self._blacklist_cache[identifier] = entry
            if len(self._blacklist_cache) > self.config.CACHE_SWEEP_THRESHOLD:
                self._sweep_cache()
        self.logger.info("Blacklisted %s: %s", identifier, entry.reason)
        return entry

    def remove_from_blacklist(self, identifier: str) -> bool:
        with self._cache_lock:
            self._blacklist_cache.pop(identifier, None)
        removed = self.store.delete(BLACKLIST, identifier)
        if removed:
            self.logger.info("Removed %s from blacklist", identifier)
        return removed

    def _sweep_cache(self) -> None:
        now = self.clock()
        expired = [
            k
            for k, e in self._blacklist_cache.items()
            if e.expires_at is not None and e.expires_at <= now
        ]
        for k in expired:
            del self._blacklist_cache[k]
