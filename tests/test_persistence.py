import json
import os
from pathlib import Path

import pytest

from shadowgate.common.exceptions import UpstreamUnavailable
from shadowgate.common.models import DeliverySession, LicenseKey, ScriptRecord
from shadowgate.server.persistence import DataPersistence, InMemoryStore, JsonFileStore
from tests.conftest import FakeClock


def test_in_memory_store_ttl(clock: FakeClock) -> None:
    store = InMemoryStore(clock)
    store.put("ns", "a", {"v": 1}, ttl=10)
    store.put("ns", "b", {"v": 2})
    assert store.get("ns", "a") == {"v": 1}
    clock.advance(10)
    assert store.get("ns", "a") is None
    assert store.get("ns", "b") == {"v": 2}


def test_get_returns_a_copy(clock: FakeClock) -> None:
    store = InMemoryStore(clock)
    store.put("ns", "a", {"items": [1]})
    value = store.get("ns", "a")
    assert value is not None
    value["items"].append(2)
    assert store.get("ns", "a") == {"items": [1]}


def test_insert_unique_and_pop(clock: FakeClock) -> None:
    store = InMemoryStore(clock)
    assert store.insert_unique("ns", "n", {"x": 1}, ttl=5)
    assert not store.insert_unique("ns", "n", {"x": 2}, ttl=5)
    clock.advance(5)
    assert store.insert_unique("ns", "n", {"x": 3}, ttl=5)
    assert store.pop("ns", "n") == {"x": 3}
    assert store.pop("ns", "n") is None


def test_update_is_atomic_on_failure(clock: FakeClock) -> None:
    store = InMemoryStore(clock)
    store.put("ns", "k", {"count": 1})

    def broken(current: dict | None) -> dict:
        msg = "nope"
        raise ValueError(msg)

    with pytest.raises(ValueError, match="nope"):
        store.update("ns", "k", broken)
    assert store.get("ns", "k") == {"count": 1}

    result = store.update("ns", "k", lambda cur: {"count": (cur or {})["count"] + 1})
    assert result == {"count": 2}


def test_update_keeps_existing_expiry(clock: FakeClock) -> None:
    store = InMemoryStore(clock)
    store.put("ns", "k", {"count": 1}, ttl=10)
    clock.advance(6)
    store.update("ns", "k", lambda cur: {"count": 2})
    clock.advance(5)
    assert store.get("ns", "k") is None


def test_sweep_and_values(clock: FakeClock) -> None:
    store = InMemoryStore(clock)
    store.put("ns", "a", {"v": 1}, ttl=1)
    store.put("ns", "b", {"v": 2}, ttl=100)
    clock.advance(2)
    assert store.sweep("ns") == 1
    assert store.values("ns") == [{"v": 2}]
    assert store.delete("ns", "b")
    assert not store.delete("ns", "b")


def test_json_file_store_persists(tmp_path: Path, clock: FakeClock) -> None:
    path = tmp_path / "data" / "store.json"
    store = JsonFileStore(path, clock)
    store.put("ns", "a", {"v": 1})
    store.put("ns", "b", {"v": 2}, ttl=30)
    assert json.loads(path.read_text())["ns"]["a"]["value"] == {"v": 1}

    reloaded = JsonFileStore(path, clock)
    assert reloaded.get("ns", "a") == {"v": 1}
    clock.advance(31)
    assert reloaded.get("ns", "b") is None


def test_json_file_store_ignores_corrupt_file(tmp_path: Path, clock: FakeClock) -> None:
    path = tmp_path / "store.json"
    path.write_text("{not json")
    store = JsonFileStore(path, clock)
    assert store.values("ns") == []


def test_key_accessors(persistence: DataPersistence) -> None:
    key = LicenseKey(key_id="k1", key_value="VALUE", script_id="s1")
    persistence.save_key(key)
    assert persistence.get_key("s1", "VALUE") == key
    assert persistence.get_key("s2", "VALUE") is None
    assert persistence.get_key_by_id("k1") == key

    def bump(record: LicenseKey) -> None:
        record.execution_count += 1

    updated = persistence.update_key(key, bump)
    assert updated.execution_count == 1
    assert persistence.get_key_by_id("k1").execution_count == 1  # type: ignore[union-attr]


def test_script_build_and_session_accessors(persistence: DataPersistence) -> None:
    persistence.save_script(ScriptRecord(script_id="s1", name="S", content="x"))
    assert persistence.get_script("s1").name == "S"  # type: ignore[union-attr]
    assert persistence.get_build("s1", 2, "v1") is None
    persistence.save_build("s1", 2, "v1", "layer text")
    assert persistence.get_build("s1", 2, "v1") == "layer text"

    session = DeliverySession(
        session_token="tok",
        key_id="k1",
        script_id="s1",
        ip="1.2.3.4",
        last_heartbeat=0,
        created_at=0,
    )
    persistence.save_delivery_session(session, ttl=60)
    assert persistence.get_delivery_session("tok") == session
    assert persistence.delivery_sessions_for_key("k1") == [session]


def test_reports_and_events(persistence: DataPersistence, clock: FakeClock) -> None:
    persistence.record_report("1.1.1.1", "k1", "s1", ["spy"])
    persistence.record_report("2.2.2.2", "k1", "s1")
    persistence.record_report("1.1.1.1", "k2", "s1")
    since = clock() - 60
    assert persistence.count_reports_for_ip("1.1.1.1", since) == 2  # noqa: PLR2004
    assert persistence.distinct_ips_for_key("k1", since) == 2  # noqa: PLR2004

    persistence.log_event("server_ban", "critical", ip="1.1.1.1")
    persistence.log_event("warning", "warning", key_id="k1")
    assert len(persistence.events()) == 2  # noqa: PLR2004
    assert persistence.events("server_ban")[0]["details"] == {"ip": "1.1.1.1"}


def test_json_file_store_shares_writes_between_instances(
    tmp_path: Path, clock: FakeClock
) -> None:
    path = tmp_path / "store.json"
    server = JsonFileStore(path, clock)
    cli = JsonFileStore(path, clock)
    assert server.values("keys") == []

    cli.put("keys", "script-1:NEW", {"key": "NEW"})
    server.put("blacklist", "203.0.113.7", {"reason": "abuse"})
    assert server.get("keys", "script-1:NEW") == {"key": "NEW"}
    assert cli.get("blacklist", "203.0.113.7") == {"reason": "abuse"}

    fresh = JsonFileStore(path, clock)
    assert fresh.get("keys", "script-1:NEW") == {"key": "NEW"}
    assert fresh.get("blacklist", "203.0.113.7") == {"reason": "abuse"}


def test_json_file_store_write_failure_keeps_memory_in_sync(
    tmp_path: Path, clock: FakeClock, monkeypatch: pytest.MonkeyPatch
) -> None:
    path = tmp_path / "store.json"
    store = JsonFileStore(path, clock)
    store.put("ns", "a", {"v": 1})

    def fail_replace(src: object, dst: object) -> None:
        msg = "disk full"
        raise OSError(msg)

    monkeypatch.setattr(os, "replace", fail_replace)
    with pytest.raises(UpstreamUnavailable):
        store.put("ns", "b", {"v": 2})
    with pytest.raises(UpstreamUnavailable):
        store.update("ns", "a", lambda cur: {"v": 3})
    assert store.get("ns", "b") is None
    assert store.get("ns", "a") == {"v": 1}

    monkeypatch.undo()
    assert JsonFileStore(path, clock).values("ns") == [{"v": 1}]
