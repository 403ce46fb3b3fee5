"""
Data persistence utilities.

``InMemoryStore`` and ``JsonFileStore`` implement the ``IStore`` protocol.
``DataPersistence`` layers typed accessors for the records the protocol owns
on top of any store.
"""

from __future__ import annotations

import copy
import fcntl
import json
import logging
import os
import threading
import time
import uuid
from contextlib import contextmanager
from pathlib import Path  # noqa: TC003
from typing import TYPE_CHECKING, Any, Callable, Iterator

from shadowgate.common.exceptions import UpstreamUnavailable
from shadowgate.common.models import DeliverySession, LicenseKey, ScriptRecord

if TYPE_CHECKING:
    from shadowgate.common.interfaces import IStore

SCRIPTS = "scripts"
KEYS = "keys"
KEY_IDS = "key_ids"
BUILDS = "builds"
REPORTS = "security_reports"
EVENTS = "security_events"
DELIVERY_SESSIONS = "delivery_sessions"

EVENT_TTL = 7 * 24 * 3600

logger = logging.getLogger(__name__)


class InMemoryStore:
    """Process-local store; entries disappear once their TTL passes."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self.clock = clock
        self._data: dict[str, dict[str, tuple[dict[str, Any], float | None]]] = {}
        self._lock = threading.RLock()

    @contextmanager
    def _access(self, write: bool = False) -> Iterator[None]:  # noqa: ARG002, FBT001, FBT002
        """Guard one store call. Subclasses sync with shared state here."""
        with self._lock:
            yield

    def _live(self, namespace: str, key: str) -> dict[str, Any] | None:
        entry = self._data.get(namespace, {}).get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self.clock():
            del self._data[namespace][key]
            return None
        return value

    def _expiry(self, ttl: float | None) -> float | None:
        return None if ttl is None else self.clock() + ttl

    def _changed(self) -> None:
        """Hook for subclasses that mirror state elsewhere."""

    def get(self, namespace: str, key: str) -> dict[str, Any] | None:
        with self._access():
            value = self._live(namespace, key)
            return copy.deepcopy(value) if value is not None else None

    def put(
        self,
        namespace: str,
        key: str,
        value: dict[str, Any],
        ttl: float | None = None,
    ) -> None:
        with self._access(write=True):
            self._data.setdefault(namespace, {})[key] = (
                copy.deepcopy(value),
                self._expiry(ttl),
            )
            self._changed()

    def insert_unique(
        self,
        namespace: str,
        key: str,
        value: dict[str, Any],
        ttl: float | None = None,
    ) -> bool:
        with self._access(write=True):
            if self._live(namespace, key) is not None:
                return False
            self._data.setdefault(namespace, {})[key] = (
                copy.deepcopy(value),
                self._expiry(ttl),
            )
            self._changed()
            return True

    def pop(self, namespace: str, key: str) -> dict[str, Any] | None:
        with self._access(write=True):
            value = self._live(namespace, key)
            if value is None:
                return None
            del self._data[namespace][key]
            self._changed()
            return value

    def update(
        self,
        namespace: str,
        key: str,
        mutator: Callable[[dict[str, Any] | None], dict[str, Any]],
        ttl: float | None = None,
    ) -> dict[str, Any]:
        """Atomic read-modify-write. If mutator raises nothing is written."""
        with self._access(write=True):
            current = self._live(namespace, key)
            expires_at = self._data.get(namespace, {}).get(key, ({}, None))[1]
            new_value = mutator(copy.deepcopy(current) if current is not None else None)
            if ttl is not None or current is None:
                expires_at = self._expiry(ttl)
            self._data.setdefault(namespace, {})[key] = (
                copy.deepcopy(new_value),
                expires_at,
            )
            self._changed()
            return new_value

    def delete(self, namespace: str, key: str) -> bool:
        with self._access(write=True):
            existed = self._live(namespace, key) is not None
            if existed:
                del self._data[namespace][key]
                self._changed()
            return existed

    def values(self, namespace: str) -> list[dict[str, Any]]:
        with self._access():
            keys = list(self._data.get(namespace, {}).keys())
            live = [self._live(namespace, k) for k in keys]
            return [copy.deepcopy(v) for v in live if v is not None]

    def sweep(self, namespace: str | None = None) -> int:
        """Drop expired entries. Returns how many were removed."""
        with self._access(write=True):
            now = self.clock()
            namespaces = [namespace] if namespace else list(self._data.keys())
            removed = 0
            for ns in namespaces:
                entries = self._data.get(ns, {})
                expired = [
                    k for k, (_, exp) in entries.items() if exp is not None and exp <= now
                ]
                for k in expired:
                    del entries[k]
                removed += len(expired)
            if removed:
                self._changed()
            return removed


class JsonFileStore(InMemoryStore):
    """InMemoryStore shared through a JSON file.

    Writes take an exclusive ``flock`` on a sidecar lock file, reload the
    file, apply the change and replace the file atomically. Reads reload
    only when the file changed since it was last seen, so several processes
    (the server and CLI commands) can share one store.
    """

    def __init__(self, file_path: Path, clock: Callable[[], float] = time.time) -> None:
        super().__init__(clock)
        self.file_path = file_path
        self.lock_path = file_path.with_name(file_path.name + ".lock")
        self._seen: tuple[int, int, int] | None = None
        self._dirty = False
        self._refresh()

    def _stat(self) -> tuple[int, int, int] | None:
        try:
            st = self.file_path.stat()
        except FileNotFoundError:
            return None
        return st.st_ino, st.st_mtime_ns, st.st_size

    def _refresh(self, force: bool = False) -> None:  # noqa: FBT001, FBT002
        seen = self._stat()
        if not force and seen == self._seen:
            return
        self._data = self._load(self.file_path)
        self._seen = seen

    @staticmethod
    def _load(
        file_path: Path,
    ) -> dict[str, dict[str, tuple[dict[str, Any], float | None]]]:
        try:
            with file_path.open() as f:
                raw = json.load(f)
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError:
            logger.warning("Store file %s is corrupt, starting empty", file_path)
            return {}
        return {
            ns: {k: (entry["value"], entry["expires_at"]) for k, entry in items.items()}
            for ns, items in raw.items()
        }

    @contextmanager
    def _access(self, write: bool = False) -> Iterator[None]:  # noqa: FBT001, FBT002
        with self._lock:
            if not write:
                self._refresh()
                yield
                return
            try:
                self.file_path.parent.mkdir(parents=True, exist_ok=True)
                lock_file = self.lock_path.open("a")
            except OSError as e:
                msg = "Persistent store unavailable"
                raise UpstreamUnavailable(msg) from e
            with lock_file:
                fcntl.flock(lock_file, fcntl.LOCK_EX)
                self._refresh(force=True)
                snapshot = copy.deepcopy(self._data)
                self._dirty = False
                try:
                    yield
                    if self._dirty:
                        self._write()
                except BaseException:
                    self._data = snapshot
                    raise
                finally:
                    self._dirty = False

    def _changed(self) -> None:
        self._dirty = True

    def _write(self) -> None:
        payload = {
            ns: {
                k: {"value": value, "expires_at": expires_at}
                for k, (value, expires_at) in items.items()
            }
            for ns, items in self._data.items()
        }
        tmp_path = self.file_path.with_suffix(".tmp")
        try:
            with tmp_path.open("w") as f:
                json.dump(payload, f)
            os.replace(tmp_path, self.file_path)
        except OSError as e:
            msg = "Persistent store write failed"
            raise UpstreamUnavailable(msg) from e
        self._seen = self._stat()


class DataPersistence:
    """Typed access to keys, scripts, builds, sessions and security reports."""

    def __init__(self, store: IStore, clock: Callable[[], float] = time.time) -> None:
        self.store = store
        self.clock = clock

    # Scripts

    def get_script(self, script_id: str) -> ScriptRecord | None:
        data = self.store.get(SCRIPTS, script_id)
        return ScriptRecord.model_validate(data) if data else None

    def save_script(self, script: ScriptRecord) -> None:
        self.store.put(SCRIPTS, script.script_id, script.model_dump())

    # License keys

    @staticmethod
    def _key_ref(script_id: str, key_value: str) -> str:
        return f"{script_id}:{key_value}"

    def get_key(self, script_id: str, key_value: str) -> LicenseKey | None:
        data = self.store.get(KEYS, self._key_ref(script_id, key_value))
        return LicenseKey.model_validate(data) if data else None

    def get_key_by_id(self, key_id: str) -> LicenseKey | None:
        ref = self.store.get(KEY_IDS, key_id)
        if not ref:
            return None
        return self.get_key(ref["script_id"], ref["key_value"])

    def save_key(self, key: LicenseKey) -> None:
        self.store.put(KEYS, self._key_ref(key.script_id, key.key_value), key.model_dump())
        self.store.put(
            KEY_IDS, key.key_id, {"script_id": key.script_id, "key_value": key.key_value}
        )

    def update_key(
        self, key: LicenseKey, mutator: Callable[[LicenseKey], None]
    ) -> LicenseKey:
        """Apply mutator to the stored copy of key atomically."""

        def apply(current: dict[str, Any] | None) -> dict[str, Any]:
            record = LicenseKey.model_validate(current) if current else key
            mutator(record)
            return record.model_dump()

        data = self.store.update(KEYS, self._key_ref(key.script_id, key.key_value), apply)
        return LicenseKey.model_validate(data)

    # Pipeline builds

    def get_build(self, script_id: str, layer: int, version: str) -> str | None:
        data = self.store.get(BUILDS, f"{script_id}:{layer}:{version}")
        return data["content"] if data else None

    def save_build(self, script_id: str, layer: int, version: str, content: str) -> None:
        self.store.put(
            BUILDS,
            f"{script_id}:{layer}:{version}",
            {"content": content, "built_at": int(self.clock())},
        )

    # Delivery sessions

    def get_delivery_session(self, session_token: str) -> DeliverySession | None:
        data = self.store.get(DELIVERY_SESSIONS, session_token)
        return DeliverySession.model_validate(data) if data else None

    def save_delivery_session(
        self, session: DeliverySession, ttl: float | None = None
    ) -> None:
        self.store.put(DELIVERY_SESSIONS, session.session_token, session.model_dump(), ttl)

    def delivery_sessions_for_key(self, key_id: str) -> list[DeliverySession]:
        return [
            DeliverySession.model_validate(v)
            for v in self.store.values(DELIVERY_SESSIONS)
            if v["key_id"] == key_id
        ]

    # Security reports and events

    def record_report(
        self,
        ip: str,
        key_id: str | None,
        script_id: str | None,
        threats: list[str] | None = None,
        ttl: float = 3600,
    ) -> None:
        self.store.put(
            REPORTS,
            uuid.uuid4().hex,
            {
                "ip": ip,
                "key_id": key_id,
                "script_id": script_id,
                "threats": threats or [],
                "created_at": self.clock(),
            },
            ttl,
        )

    def count_reports_for_ip(self, ip: str, since: float) -> int:
        return sum(
            1
            for r in self.store.values(REPORTS)
            if r["ip"] == ip and r["created_at"] >= since
        )

    def distinct_ips_for_key(self, key_id: str, since: float) -> int:
        return len(
            {
                r["ip"]
                for r in self.store.values(REPORTS)
                if r["key_id"] == key_id and r["created_at"] >= since
            }
        )

    def log_event(self, event_type: str, severity: str, **details: Any) -> None:
        self.store.put(
            EVENTS,
            uuid.uuid4().hex,
            {
                "event_type": event_type,
                "severity": severity,
                "details": details,
                "created_at": int(self.clock()),
            },
            EVENT_TTL,
        )

    def events(self, event_type: str | None = None) -> list[dict[str, Any]]:
        return [
            e
            for e in self.store.values(EVENTS)
            if event_type is None or e["event_type"] == event_type
        ]
