"""Business logic services for the delivery server.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Any, Callable

from shadowgate.server.delivery.pipeline import LayerPipeline
from shadowgate.server.domain.admin_handler import AdminHandler
from shadowgate.server.domain.handshake_handler import HandshakeHandler
from shadowgate.server.domain.heartbeat_handler import HeartbeatHandler
from shadowgate.server.domain.key_policy import KeyPolicy
from shadowgate.server.domain.loader_handler import LoaderHandler
from shadowgate.server.domain.socket_handler import SocketHandler
from shadowgate.server.domain.tracepath_handler import TracepathHandler
from shadowgate.server.domain.validate_handler import ValidateHandler
from shadowgate.server.guard import SecurityGuard
from shadowgate.server.packets import ConnectionLimiter
from shadowgate.server.persistence import DataPersistence
from shadowgate.server.security_engine import SecurityEngine
from shadowgate.server.tokens import TokenIssuer
from shadowgate.server.tracepath import TracepathMachine

if TYPE_CHECKING:
    from fastapi import WebSocket

    from shadowgate.common.config import Config
    from shadowgate.common.interfaces import ILayerGenerator, ISideTasks, IStore
    from shadowgate.common.models import (
        BlacklistRequest,
        CreateKeyRequest,
        HandshakeRequest,
        HeartbeatRequest,
        KeyActionRequest,
        RequestMeta,
        SessionActionRequest,
        ValidateRequest,
    )
    from shadowgate.server.delivery.pipeline import LayerResponse


class ProtocolService:
    """Wires the protocol components and exposes one method per endpoint."""

    def __init__(  # noqa: PLR0913
        self,
        config: Config,
        store: IStore,
        side_tasks: ISideTasks,
        generator: ILayerGenerator,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.store = store
        self.side_tasks = side_tasks
        self.clock = clock

        self.persistence = DataPersistence(store, clock)
        self.guard = SecurityGuard(config, store, clock)
        self.tokens = TokenIssuer(config, store, clock)
        self.tracepath = TracepathMachine(config, store, clock)
        self.key_policy = KeyPolicy(config, self.persistence, clock)
        self.engine = SecurityEngine(config, self.persistence, self.guard, clock)
        self.pipeline = LayerPipeline(config, self.persistence, generator, clock)
        max_messages, window = config.PACKET_RATE_LIMIT
        self.limiter = ConnectionLimiter(
            max_messages, window, config.DUPLICATE_CONNECTION_COOLDOWN, clock
        )

        # Initialize handlers
        self.handshake_handler = HandshakeHandler(
            config=config,
            persistence=self.persistence,
            guard=self.guard,
            tokens=self.tokens,
            tracepath=self.tracepath,
            key_policy=self.key_policy,
            clock=clock,
        )
        self.tracepath_handler = TracepathHandler(
            config=config,
            persistence=self.persistence,
            guard=self.guard,
            tokens=self.tokens,
            tracepath=self.tracepath,
            clock=clock,
        )
        self.validate_handler = ValidateHandler(
            config=config,
            persistence=self.persistence,
            guard=self.guard,
            tokens=self.tokens,
            tracepath=self.tracepath,
            key_policy=self.key_policy,
            engine=self.engine,
            side_tasks=side_tasks,
            clock=clock,
        )
        self.heartbeat_handler = HeartbeatHandler(
            config=config,
            persistence=self.persistence,
            guard=self.guard,
            engine=self.engine,
            clock=clock,
        )
        self.loader_handler = LoaderHandler(
            config=config,
            persistence=self.persistence,
            guard=self.guard,
            pipeline=self.pipeline,
        )
        self.socket_handler = SocketHandler(
            config=config,
            persistence=self.persistence,
            guard=self.guard,
            engine=self.engine,
            limiter=self.limiter,
            clock=clock,
        )
        self.admin_handler = AdminHandler(
            config=config,
            persistence=self.persistence,
            guard=self.guard,
            clock=clock,
        )

    def health(self) -> dict[str, Any]:
        """Health check endpoint."""
        return {"status": "ok", "timestamp": int(self.clock())}

    def handshake(self, req: HandshakeRequest, meta: RequestMeta) -> dict[str, Any]:
        return self.handshake_handler.handle_handshake(req, meta)

    def version(
        self, script_id: str | None, session_id: str | None, meta: RequestMeta
    ) -> dict[str, Any]:
        return self.tracepath_handler.version(script_id, session_id, meta)

    def info(
        self, session_id: str | None, hwid: str | None, meta: RequestMeta
    ) -> dict[str, Any]:
        return self.tracepath_handler.info(session_id, hwid, meta)

    def endpoints(self, session_id: str | None, meta: RequestMeta) -> dict[str, Any]:
        return self.tracepath_handler.endpoints(session_id, meta)

    def flags(
        self, session_id: str | None, hwid: str | None, meta: RequestMeta
    ) -> dict[str, Any]:
        return self.tracepath_handler.flags(session_id, hwid, meta)

    def validate(
        self, req: ValidateRequest, meta: RequestMeta, delivery_header: str | None
    ) -> dict[str, Any]:
        return self.validate_handler.handle_validate(req, meta, delivery_header)

    def heartbeat(
        self, req: HeartbeatRequest, session_token: str | None, meta: RequestMeta
    ) -> dict[str, Any]:
        return self.heartbeat_handler.handle_heartbeat(req, session_token, meta)

    def loader(  # noqa: PLR0913
        self,
        script_id: str,
        layer: str | None,
        version: str | None,
        wrap: str | None,
        meta: RequestMeta,
    ) -> LayerResponse:
        return self.loader_handler.handle_loader(script_id, layer, version, wrap, meta)

    async def socket(self, websocket: WebSocket, script_id: str) -> None:
        await self.socket_handler.handle_connection(websocket, script_id)

    # Admin actions

    def create_key(self, req: CreateKeyRequest) -> dict[str, Any]:
        return self.admin_handler.create_key(req)

    def reset_hwid(self, req: KeyActionRequest) -> dict[str, Any]:
        return self.admin_handler.reset_hwid(req)

    def ban_key(self, req: KeyActionRequest) -> dict[str, Any]:
        return self.admin_handler.ban_key(req)

    def unban_key(self, req: KeyActionRequest) -> dict[str, Any]:
        return self.admin_handler.unban_key(req)

    def kick_session(self, req: SessionActionRequest) -> dict[str, Any]:
        return self.admin_handler.kick_session(req)

    def add_blacklist(self, req: BlacklistRequest) -> dict[str, Any]:
        return self.admin_handler.add_blacklist(req)

    def remove_blacklist(self, req: BlacklistRequest) -> dict[str, Any]:
        return self.admin_handler.remove_blacklist(req)
