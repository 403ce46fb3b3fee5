from typing import Any

import pytest

from shadowgate.common.config import Config
from shadowgate.common.exceptions import UpstreamUnavailable
from shadowgate.common.models import LicenseKey, RequestMeta
from shadowgate.server.guard import SecurityGuard
from shadowgate.server.persistence import DataPersistence, InMemoryStore
from shadowgate.server.security_engine import SecurityEngine
from tests.conftest import FakeClock


@pytest.fixture
def guard(config: Config, store: InMemoryStore, clock: FakeClock) -> SecurityGuard:
    return SecurityGuard(config, store, clock)


@pytest.fixture
def engine(
    config: Config,
    persistence: DataPersistence,
    guard: SecurityGuard,
    clock: FakeClock,
) -> SecurityEngine:
    return SecurityEngine(config, persistence, guard, clock)


@pytest.fixture
def key(persistence: DataPersistence) -> LicenseKey:
    key = LicenseKey(key_id="k1", key_value="VALUE", script_id="s1")
    persistence.save_key(key)
    return key


def _meta(ip: str = "198.51.100.1", executor: str | None = "Delta") -> RequestMeta:
    return RequestMeta(ip=ip, executor=executor)


def test_score_thresholds(engine: SecurityEngine) -> None:
    assert engine.score(0, 1, []) == (0, "none", [])
    assert engine.score(21, 1, [])[0] == 10  # noqa: PLR2004
    assert engine.score(51, 1, [])[0] == 25  # noqa: PLR2004
    assert engine.score(101, 1, [])[:2] == (50, "high")
    assert engine.score(0, 4, [])[0] == 15  # noqa: PLR2004
    assert engine.score(0, 6, [])[:2] == (30, "medium")
    assert engine.score(0, 1, [], executor_mismatch=True)[0] == 10  # noqa: PLR2004


def test_client_reports_alone_do_not_score(engine: SecurityEngine) -> None:
    score, _, reasons = engine.score(5, 1, ["HttpSpy", "Dex"])
    assert score == 0
    assert "corroborated_client_report" not in reasons
    score, level, reasons = engine.score(11, 1, ["HttpSpy"])
    assert score == 20  # noqa: PLR2004
    assert level == "high"
    assert "corroborated_client_report" in reasons


def test_quiet_client_gets_no_action(engine: SecurityEngine, key: LicenseKey) -> None:
    decision = engine.analyze(_meta(), key=key, script_id="s1", reported_threats=["spy"])
    assert decision.action == "none"
    assert not decision.should_ban


def test_high_volume_leads_to_ban(
    engine: SecurityEngine,
    key: LicenseKey,
    persistence: DataPersistence,
    guard: SecurityGuard,
) -> None:
    for _ in range(101):
        persistence.record_report("198.51.100.1", "k1", "s1")
    decision = engine.analyze(
        _meta(), key=key, hwid_hash="abc", reported_threats=["spy"]
    )
    assert decision.action == "perm_ban"
    assert decision.score == 70  # noqa: PLR2004
    blocked, entry = guard.is_blacklisted("198.51.100.1")
    assert blocked
    assert entry is not None
    assert entry.reason == "server_analysis:score=70"
    assert entry.expires_at is None
    assert guard.is_blacklisted("10.0.0.1", "abc")[0]
    assert persistence.events("server_ban")

    again = engine.analyze(_meta(), key=key)
    assert again.action == "already_banned"


def test_temp_ban_uses_temp_ttl(
    engine: SecurityEngine,
    key: LicenseKey,
    persistence: DataPersistence,
    guard: SecurityGuard,
    clock: FakeClock,
) -> None:
    for _ in range(101):
        persistence.record_report("198.51.100.2", "k1", "s1")
    decision = engine.analyze(_meta("198.51.100.2"), key=key)
    assert decision.action == "temp_ban"
    _, entry = guard.is_blacklisted("198.51.100.2")
    assert entry is not None
    assert entry.expires_at == int(clock()) + 6 * 3600


def test_warning_decision_bumps_key(
    engine: SecurityEngine, key: LicenseKey, persistence: DataPersistence
) -> None:
    for index in range(6):
        persistence.record_report(f"198.51.100.{10 + index}", "k1", "s1")
    decision = engine.analyze(_meta("198.51.100.30"), key=key)
    assert decision.action == "warning"
    assert persistence.get_key_by_id("k1").warning_count == 1  # type: ignore[union-attr]


def test_three_warnings_ban_the_key(
    engine: SecurityEngine, key: LicenseKey, persistence: DataPersistence
) -> None:
    for index in range(6):
        persistence.record_report(f"198.51.100.{10 + index}", "k1", "s1")
    for attempt in range(3):
        decision = engine.analyze(_meta(f"198.51.100.{40 + attempt}"), key=key, max_warnings=3)
        assert decision.action == "warning"
        current = persistence.get_key_by_id("k1")
        assert current is not None
        assert current.is_banned is (attempt == 2)  # noqa: PLR2004
    assert current.ban_reason == "Exceeded max warnings (3/3)"
    assert len(persistence.events("warning")) == 3  # noqa: PLR2004


def test_register_warning_directly(
    engine: SecurityEngine, key: LicenseKey, persistence: DataPersistence
) -> None:
    updated = engine.register_warning(key, 2, detail="HttpSpy")
    assert updated.warning_count == 1
    assert not updated.is_banned
    updated = engine.register_warning(updated, 2)
    assert updated.is_banned
    assert updated.ban_reason == "Exceeded max warnings (2/2)"
    assert persistence.get_key_by_id("k1").is_banned  # type: ignore[union-attr]


def test_executor_mismatch_is_a_signal(engine: SecurityEngine) -> None:
    meta = _meta(executor="Delta")
    assert SecurityEngine._executor_mismatch(meta, "Wave")  # noqa: SLF001
    assert not SecurityEngine._executor_mismatch(meta, "delta")  # noqa: SLF001
    assert not SecurityEngine._executor_mismatch(_meta(executor="ShadowAuth"), "Wave")  # noqa: SLF001


def test_store_failure_fails_open(
    engine: SecurityEngine, key: LicenseKey, monkeypatch: pytest.MonkeyPatch
) -> None:
    def unavailable(*_args: Any) -> int:
        raise UpstreamUnavailable

    monkeypatch.setattr(engine.persistence, "count_reports_for_ip", unavailable)
    decision = engine.analyze(_meta(), key=key)
    assert decision.action == "none"
    assert decision.reasons == ["analysis_unavailable"]
