"""
Layered loader pipeline.

Layer 1 is a bootstrap generated per request. Layers 2 to 5 are generated
once per script version, kept in a short-lived memory cache and persisted as
builds. Layer 6 is a large filler blob and layer 7 the kick handler.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import TYPE_CHECKING, Callable, NamedTuple

from shadowgate.common.crypto import CryptoUtils
from shadowgate.common.exceptions import ValidationError
from shadowgate.server.delivery.templates import SESSION_SALT_PLACEHOLDER

if TYPE_CHECKING:
    from shadowgate.common.config import Config
    from shadowgate.common.interfaces import ILayerGenerator
    from shadowgate.common.models import ScriptRecord
    from shadowgate.server.persistence import DataPersistence

BOOTSTRAP_LAYER = 1
BUILT_LAYERS = (2, 3, 4, 5)
SALTED_LAYERS = (4, 5)
FILLER_LAYER = 6
KICK_LAYER = 7
PREBUILD = "prebuild"

LAYER_ALIASES = {
    "init": 2,
    "core": 4,
    "superflow": FILLER_LAYER,
    "bytecode": FILLER_LAYER,
    "kick": KICK_LAYER,
}

IMMUTABLE_CACHE_CONTROL = "public, max-age=31536000, immutable"
VERSION_LENGTH = 32


class LayerResponse(NamedTuple):
    content: str
    headers: dict[str, str]
    session_salt: str | None = None


class LayerPipeline:
    """Serves loader layers from memory, persisted builds or fresh generation."""

    def __init__(
        self,
        config: Config,
        persistence: DataPersistence,
        generator: ILayerGenerator,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.persistence = persistence
        self.generator = generator
        self.clock = clock
        self.logger = logging.getLogger(__name__)
        self._memory: dict[str, tuple[str, float]] = {}
        self._lock = threading.Lock()

    @staticmethod
    def resolve_layer(value: str | None) -> int | str:
        """Map a ``layer`` query value to a layer number or ``"prebuild"``."""
        if value is None or value == "":
            return BOOTSTRAP_LAYER
        value = value.lower()
        if value == PREBUILD:
            return PREBUILD
        if value in LAYER_ALIASES:
            return LAYER_ALIASES[value]
        if value.isdigit() and BOOTSTRAP_LAYER <= int(value) <= KICK_LAYER:
            return int(value)
        msg = "Invalid layer"
        raise ValidationError(msg, 400)

    @staticmethod
    def version_for(script: ScriptRecord, requested: str | None = None) -> str:
        if requested:
            return requested
        return CryptoUtils.sha256_hex(script.content)[:VERSION_LENGTH]

    # Memory cache

    def _cache_get(self, cache_key: str) -> str | None:
        with self._lock:
            entry = self._memory.get(cache_key)
            if entry is None:
                return None
            content, expires_at = entry
            if expires_at <= self.clock():
                del self._memory[cache_key]
                return None
            return content

    def _cache_put(self, cache_key: str, content: str, ttl: int) -> None:
        with self._lock:
            self._memory[cache_key] = (content, self.clock() + ttl)
            if len(self._memory) > self.config.CACHE_SWEEP_THRESHOLD:
                now = self.clock()
                for k in [k for k, (_, exp) in self._memory.items() if exp <= now]:
                    del self._memory[k]

    # Layers

    def _params(self, script: ScriptRecord, layer: int, version: str) -> dict[str, object]:
        return {
            "layer": layer,
            "script_id": script.script_id,
            "script_name": script.name,
            "base_url": self.config.BASE_URL,
            "version": version,
        }

    def _build(self, script: ScriptRecord, layer: int, version: str) -> tuple[str, str]:
        """Content for a built layer and where it came from."""
        cache_key = f"{script.script_id}:{layer}:{version}"
        cached = self._cache_get(cache_key)
        if cached is not None:
            return cached, "mem"

        persisted = self.persistence.get_build(script.script_id, layer, version)
        if persisted is not None:
            self._cache_put(cache_key, persisted, self.config.LAYER_CACHE_TTL)
            return persisted, "hit"

        content = self.generator.generate(self._params(script, layer, version))
        self._cache_put(cache_key, content, self.config.LAYER_CACHE_TTL)
        self.persistence.save_build(script.script_id, layer, version, content)
        self.logger.info(
            "Built layer %s for script %s (version %s)", layer, script.script_id, version
        )
        return content, "miss"

    def _filler(self, script: ScriptRecord, version: str) -> str:
        cache_key = f"filler:{script.script_id}"
        cached = self._cache_get(cache_key)
        if cached is not None:
            return cached
        content = self.generator.generate(self._params(script, FILLER_LAYER, version))
        self._cache_put(cache_key, content, self.config.FILLER_CACHE_TTL)
        return content

    def get_layer(
        self,
        script: ScriptRecord,
        layer: int,
        version: str | None = None,
        session_salt: str | None = None,
    ) -> LayerResponse:
        version = self.version_for(script, version)
        headers = {"X-Layer": str(layer), "X-Version": version}

        if layer == BOOTSTRAP_LAYER:
            content = self.generator.generate(self._params(script, layer, version))
            headers["Cache-Control"] = "no-store"
            return LayerResponse(content, headers)

        if layer == FILLER_LAYER:
            headers["X-Layer"] = "6-superflow"
            headers["Cache-Control"] = f"public, max-age={self.config.FILLER_CACHE_TTL}"
            return LayerResponse(self._filler(script, version), headers)

        if layer == KICK_LAYER:
            content = self.generator.generate(self._params(script, layer, version))
            return LayerResponse(content, headers)

        content, status = self._build(script, layer, version)
        headers["X-Build"] = status
        if status != "mem":
            headers["Cache-Control"] = IMMUTABLE_CACHE_CONTROL

        if layer in SALTED_LAYERS:
            session_salt = session_salt or CryptoUtils.generate_salt(16)
            content = content.replace(SESSION_SALT_PLACEHOLDER, session_salt)
            headers["Cache-Control"] = "no-store"
            headers["X-Session-Salt"] = session_salt
            return LayerResponse(content, headers, session_salt)
        return LayerResponse(content, headers)

    def prebuild(self, script: ScriptRecord, version: str | None = None) -> list[int]:
        """Generate and persist layers 2 to 5 ahead of the first client."""
        version = self.version_for(script, version)
        for layer in BUILT_LAYERS:
            self._build(script, layer, version)
        return list(BUILT_LAYERS)
