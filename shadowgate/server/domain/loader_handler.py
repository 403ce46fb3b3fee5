"""Loader request handler.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from shadowgate.common.crypto import CryptoUtils
from shadowgate.common.exceptions import RateLimitError, ValidationError
from shadowgate.server.binary_stream import BinaryStream
from shadowgate.server.delivery.pipeline import PREBUILD, LayerResponse
from shadowgate.server.request_meta import require_executor

if TYPE_CHECKING:
    from shadowgate.common.config import Config
    from shadowgate.common.models import RequestMeta
    from shadowgate.server.delivery.pipeline import LayerPipeline
    from shadowgate.server.guard import SecurityGuard
    from shadowgate.server.persistence import DataPersistence


class LoaderHandler:
    """Serves loader layers to recognised executors."""

    def __init__(
        self,
        config: Config,
        persistence: DataPersistence,
        guard: SecurityGuard,
        pipeline: LayerPipeline,
    ):
        self.config = config
        self.persistence = persistence
        self.guard = guard
        self.pipeline = pipeline
        self.logger = logging.getLogger(__name__)

    def handle_loader(  # noqa: PLR0913
        self,
        script_id: str,
        layer: str | None,
        version: str | None,
        wrap: str | None,
        meta: RequestMeta,
    ) -> LayerResponse:
        self.guard.ensure_not_blacklisted(meta.ip)
        limit, window = self.config.LOADER_RATE_LIMIT
        if not self.guard.check_rate_limit(f"loader:{meta.ip}", limit, window).allowed:
            raise RateLimitError
        require_executor(meta)

        script = self.persistence.get_script(script_id)
        if script is None:
            msg = "Script not found"
            raise ValidationError(msg, 404)

        resolved = self.pipeline.resolve_layer(layer)
        if resolved == PREBUILD:
            layers = self.pipeline.prebuild(script, version)
            self.logger.info("Prebuilt layers %s for script %s", layers, script_id)
            return LayerResponse("ok", {"X-Build": "prebuild"})

        session_salt = CryptoUtils.generate_salt(16) if wrap == "binary" else None
        response = self.pipeline.get_layer(script, int(resolved), version, session_salt)
        if wrap != "binary":
            return response

        salt = response.session_salt or session_salt or ""
        stream, checksum = BinaryStream.encode(
            response.content, salt, script.script_id, self.config.CHUNK_SIZE
        )
        headers = {
            **response.headers,
            "X-Session-Salt": salt,
            "X-Checksum": str(checksum),
            "Cache-Control": "no-store",
        }
        return LayerResponse(stream, headers, salt)
