"""
Protocol server assembled on FastAPI.
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable

from fastapi import FastAPI

from shadowgate.common import Configurable, setup_logger
from shadowgate.common.config import Config
from shadowgate.server.delivery.templates import LayerTemplates
from shadowgate.server.persistence import JsonFileStore
from shadowgate.server.routes import ProtocolRoutes
from shadowgate.server.services import ProtocolService
from shadowgate.server.side_tasks import SideTaskDispatcher

if TYPE_CHECKING:
    from shadowgate.common.interfaces import ILayerGenerator, ISideTasks, IStore

DEFAULT_SECRET = "change-me-handshake-secret"  # noqa: S105
STORE_FILE = "store.json"

OVERRIDABLE = [
    "handshake_secret",
    "static_salt",
    "admin_password",
    "server_host",
    "server_port",
    "base_url",
    "data_dir",
    "log_level",
    "geolocation_enabled",
]


class ProtocolServer(Configurable):
    """Builds the components and exposes the FastAPI ``app``."""

    def __init__(  # noqa: PLR0913
        self,
        config: Config | None = None,
        store: IStore | None = None,
        side_tasks: ISideTasks | None = None,
        generator: ILayerGenerator | None = None,
        clock: Callable[[], float] = time.time,
        **overrides: Any,
    ):
        self.config = config or Config()
        self.apply_overrides(overrides, self.config, OVERRIDABLE)
        self.data_dir = Path(self.data_dir)
        self.config.DATA_DIR = self.data_dir

        self.logger = logging.getLogger("shadowgate")
        setup_logger(self.logger, self.log_level)
        if self.handshake_secret == DEFAULT_SECRET:
            self.logger.warning(
                "Using the default handshake secret; set SHADOWGATE_HANDSHAKE_SECRET"
            )

        self.store = store or JsonFileStore(self.data_dir / STORE_FILE, clock)
        self._owned_side_tasks: SideTaskDispatcher | None = None
        if side_tasks is None:
            side_tasks = self._owned_side_tasks = SideTaskDispatcher(
                timeout=self.config.SIDE_TASK_TIMEOUT,
                max_workers=self.config.SIDE_TASK_WORKERS,
                geolocation_url=self.config.GEOLOCATION_URL,
                geolocation_enabled=self.geolocation_enabled,
            )
        self.side_tasks = side_tasks
        self.service = ProtocolService(
            config=self.config,
            store=self.store,
            side_tasks=side_tasks,
            generator=generator or LayerTemplates(self.config.FILLER_SIZE),
            clock=clock,
        )

        self.app = FastAPI(title="shadowgate", lifespan=self._lifespan)
        self.routes = ProtocolRoutes(self.service, self.config)
        self.routes.setup_routes(self.app)

        self.logger.info(
            "Server configured for http://%s:%s", self.server_host, self.server_port
        )
        if not self.admin_password:
            self.logger.info("Admin routes disabled; SHADOWGATE_ADMIN_PASSWORD not set")

    @asynccontextmanager
    async def _lifespan(self, _app: FastAPI) -> AsyncIterator[None]:
        yield
        if self._owned_side_tasks is not None:
            self._owned_side_tasks.shutdown()
