from __future__ import annotations

import asyncio
import itertools
import logging
from pathlib import Path
from typing import Union

from ..errors import TunnelUnavailable
from ..kernel.protocol import DEFAULT_MAX_LINE_BYTES
from .connection import TunnelConnection

logger = logging.getLogger(__name__)

_IDS = itertools.count(1)


class TunnelClient:
    """Connects to a TunnelServer socket (observer or nested producer)."""

    @staticmethod
    async def connect(
        socket_path: Union[str, Path],
        *,
        max_line_bytes: int = DEFAULT_MAX_LINE_BYTES,
        timeout: float = 2.0,
    ) -> TunnelConnection:
        path = str(socket_path or "").strip()
        if not path:
            raise TunnelUnavailable("no tunnel socket path")
        try:
            reader, writer = await asyncio.wait_for(asyncio.open_unix_connection(path), timeout=timeout)
        except (OSError, asyncio.TimeoutError) as e:
            raise TunnelUnavailable(f"cannot connect to tunnel {path}: {e}", details={"path": path}) from e
        conn = TunnelConnection(reader, writer, conn_id=f"client-{next(_IDS)}", max_line_bytes=max_line_bytes)
        conn.start()
        logger.debug("connected to tunnel %s", path, extra={"conn_id": conn.conn_id})
        return conn
