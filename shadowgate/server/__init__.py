"""
Entry point for the delivery server.
"""

from __future__ import annotations

import uvicorn

from shadowgate.common.config import Config

from .core import ProtocolServer


def start_server(config: Config | None = None) -> None:
    """Start the delivery server."""
    if config is None:
        config = Config()
    server = ProtocolServer(config=config)
    uvicorn.run(
        server.app,
        host=server.server_host,
        port=server.server_port,
        log_level=server.log_level,
    )
