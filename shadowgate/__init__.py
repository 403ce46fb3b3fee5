# Shadowgate protected delivery engine

from shadowgate.server.core import ProtocolServer

__all__ = ["ProtocolServer"]
