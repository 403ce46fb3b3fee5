from __future__ import annotations

from typing import Any, Callable

import pytest
from fastapi.testclient import TestClient

from shadowgate.common.config import Config
from shadowgate.common.models import LicenseKey, ScriptFlags, ScriptRecord
from shadowgate.server.core import ProtocolServer
from shadowgate.server.persistence import DataPersistence, InMemoryStore

START_TIME = 1_700_000_000.0
SCRIPT_ID = "script-1"
KEY_VALUE = "KEY-ALPHA"
EXECUTOR_HEADERS = {
    "x-shadow-sig": "ShadowAuth-Loader-v2",
    "x-real-ip": "203.0.113.7",
}


class FakeClock:
    """Controllable replacement for time.time."""

    def __init__(self, now: float = START_TIME) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSideTasks:
    """Side-task dispatcher that records calls instead of making them."""

    def __init__(self) -> None:
        self.lookups: list[str] = []
        self.webhooks: list[tuple[str, dict[str, Any]]] = []

    def submit(self, name: str, func: Callable[..., Any], *args: Any) -> None:
        func(*args)

    def lookup_country(self, ip: str, callback: Callable[[str | None], None]) -> None:
        self.lookups.append(ip)
        callback("NL")

    def send_webhook(self, url: str, payload: dict[str, Any]) -> None:
        self.webhooks.append((url, payload))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config(tmp_path: Any) -> Config:
    config = Config()
    config.HANDSHAKE_SECRET = "test-handshake-secret"
    config.ADMIN_PASSWORD = "admin-pass"
    config.GEOLOCATION_ENABLED = False
    config.DATA_DIR = tmp_path
    config.PBKDF2_ITERATIONS = 1000
    config.BASE_URL = "http://testserver"
    return config


@pytest.fixture
def store(clock: FakeClock) -> InMemoryStore:
    return InMemoryStore(clock)


@pytest.fixture
def persistence(store: InMemoryStore, clock: FakeClock) -> DataPersistence:
    return DataPersistence(store, clock)


@pytest.fixture
def side_tasks() -> RecordingSideTasks:
    return RecordingSideTasks()


@pytest.fixture
def server(
    config: Config,
    store: InMemoryStore,
    side_tasks: RecordingSideTasks,
    clock: FakeClock,
) -> ProtocolServer:
    server = ProtocolServer(config=config, store=store, side_tasks=side_tasks, clock=clock)
    persistence = server.service.persistence
    persistence.save_script(
        ScriptRecord(
            script_id=SCRIPT_ID,
            name="Demo Script",
            content='print("hello from the payload")',
            flags=ScriptFlags(max_warnings=3),
            webhook_url="https://hooks.example.com/exec",
            response_secret="response-secret",
        )
    )
    persistence.save_key(
        LicenseKey(
            key_id="key-1",
            key_value=KEY_VALUE,
            script_id=SCRIPT_ID,
            created_at=int(START_TIME),
        )
    )
    return server


@pytest.fixture
def client(server: ProtocolServer) -> TestClient:
    return TestClient(server.app)
