from typing import Any

import pytest

from shadowgate.common.config import Config
from shadowgate.common.exceptions import ValidationError
from shadowgate.common.models import ScriptRecord
from shadowgate.server.delivery.pipeline import (
    IMMUTABLE_CACHE_CONTROL,
    LayerPipeline,
)
from shadowgate.server.delivery.templates import SESSION_SALT_PLACEHOLDER, LayerTemplates
from shadowgate.server.persistence import BUILDS, DataPersistence, InMemoryStore
from tests.conftest import FakeClock


class CountingTemplates(LayerTemplates):
    def __init__(self) -> None:
        super().__init__(filler_size=1024)
        self.calls: list[int] = []

    def generate(self, params: dict[str, Any]) -> str:
        self.calls.append(params["layer"])
        return super().generate(params)


@pytest.fixture
def generator() -> CountingTemplates:
    return CountingTemplates()


@pytest.fixture
def pipeline(
    config: Config,
    persistence: DataPersistence,
    generator: CountingTemplates,
    clock: FakeClock,
) -> LayerPipeline:
    return LayerPipeline(config, persistence, generator, clock)


@pytest.fixture
def script() -> ScriptRecord:
    return ScriptRecord(script_id="abc-123", name="Demo", content="print(1)")


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        (None, 1),
        ("", 1),
        ("3", 3),
        ("init", 2),
        ("CORE", 4),
        ("superflow", 6),
        ("bytecode", 6),
        ("kick", 7),
        ("prebuild", "prebuild"),
    ],
)
def test_resolve_layer(value: str | None, expected: int | str) -> None:
    assert LayerPipeline.resolve_layer(value) == expected


@pytest.mark.parametrize("value", ["0", "8", "-1", "core2", "layer"])
def test_resolve_layer_rejects_unknown(value: str) -> None:
    with pytest.raises(ValidationError, match="Invalid layer") as exc_info:
        LayerPipeline.resolve_layer(value)
    assert exc_info.value.status_code == 400  # noqa: PLR2004


def test_version_defaults_to_content_hash(script: ScriptRecord) -> None:
    version = LayerPipeline.version_for(script)
    assert len(version) == 32  # noqa: PLR2004
    assert LayerPipeline.version_for(script, "v9") == "v9"


def test_bootstrap_is_generated_every_time(
    pipeline: LayerPipeline, generator: CountingTemplates, script: ScriptRecord
) -> None:
    first = pipeline.get_layer(script, 1)
    pipeline.get_layer(script, 1)
    assert generator.calls == [1, 1]
    assert first.headers["Cache-Control"] == "no-store"
    assert "/loader/abc-123" in first.content


def test_built_layer_served_from_memory_then_store(
    pipeline: LayerPipeline,
    generator: CountingTemplates,
    script: ScriptRecord,
    clock: FakeClock,
) -> None:
    first = pipeline.get_layer(script, 3, version="v1")
    second = pipeline.get_layer(script, 3, version="v1")
    assert first.headers["X-Build"] == "miss"
    assert second.headers["X-Build"] == "mem"
    assert first.content == second.content
    assert first.headers["Cache-Control"] == IMMUTABLE_CACHE_CONTROL
    assert "Cache-Control" not in second.headers

    clock.advance(301)
    third = pipeline.get_layer(script, 3, version="v1")
    assert third.headers["X-Build"] == "hit"
    assert third.content == first.content
    assert third.headers["Cache-Control"] == IMMUTABLE_CACHE_CONTROL
    assert third.headers["X-Version"] == "v1"
    assert pipeline.get_layer(script, 3, version="v1").headers["X-Build"] == "mem"
    assert generator.calls == [3]


def test_memory_cache_covers_missing_build(
    pipeline: LayerPipeline,
    generator: CountingTemplates,
    store: InMemoryStore,
    script: ScriptRecord,
) -> None:
    pipeline.get_layer(script, 2, version="v1")
    store.delete(BUILDS, "abc-123:2:v1")
    response = pipeline.get_layer(script, 2, version="v1")
    assert response.headers["X-Build"] == "mem"
    assert "Cache-Control" not in response.headers
    assert generator.calls == [2]


def test_salted_layers_get_a_session_salt(
    pipeline: LayerPipeline, script: ScriptRecord
) -> None:
    first = pipeline.get_layer(script, 4)
    second = pipeline.get_layer(script, 4)
    assert first.session_salt
    assert first.session_salt != second.session_salt
    assert SESSION_SALT_PLACEHOLDER not in first.content
    assert first.session_salt in first.content
    assert first.headers["X-Session-Salt"] == first.session_salt
    assert first.headers["Cache-Control"] == "no-store"

    fixed = pipeline.get_layer(script, 5, session_salt="feedface")
    assert fixed.session_salt == "feedface"
    assert "feedface" in fixed.content


def test_filler_layer_is_cached(
    pipeline: LayerPipeline,
    generator: CountingTemplates,
    script: ScriptRecord,
    clock: FakeClock,
) -> None:
    first = pipeline.get_layer(script, 6)
    second = pipeline.get_layer(script, 6)
    assert first.headers["X-Layer"] == "6-superflow"
    assert first.content == second.content
    assert generator.calls == [6]
    clock.advance(601)
    pipeline.get_layer(script, 6)
    assert generator.calls == [6, 6]


def test_kick_layer(pipeline: LayerPipeline, script: ScriptRecord) -> None:
    response = pipeline.get_layer(script, 7)
    assert "Kick" in response.content
    assert response.headers["X-Layer"] == "7"


def test_prebuild_persists_built_layers(
    pipeline: LayerPipeline,
    persistence: DataPersistence,
    script: ScriptRecord,
) -> None:
    assert pipeline.prebuild(script, "v2") == [2, 3, 4, 5]
    for layer in (2, 3, 4, 5):
        assert persistence.get_build("abc-123", layer, "v2") is not None
    assert pipeline.get_layer(script, 3, version="v2").headers["X-Build"] == "mem"
