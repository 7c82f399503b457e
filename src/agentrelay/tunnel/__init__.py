from __future__ import annotations

from .client import TunnelClient
from .connection import TunnelConnection
from .server import TunnelServer

__all__ = ["TunnelClient", "TunnelConnection", "TunnelServer"]
