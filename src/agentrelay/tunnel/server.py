from __future__ import annotations

import asyncio
import itertools
import logging
import os
import socket
import stat
from pathlib import Path
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel

from ..contracts.v1.message import UserInput
from ..errors import TunnelUnavailable
from ..kernel.protocol import DEFAULT_MAX_LINE_BYTES, encode
from .connection import TunnelConnection

logger = logging.getLogger(__name__)

MessageHandler = Callable[[BaseModel, TunnelConnection], None]


def _is_socket_alive(sock_path: Path) -> bool:
    try:
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as s:
            s.settimeout(0.2)
            s.connect(str(sock_path))
            return True
    except Exception:
        return False


def _remove_stale_socket(sock_path: Path) -> None:
    """Unlink a leftover socket nobody listens on; never touch regular files."""
    try:
        st = sock_path.lstat()
    except FileNotFoundError:
        return
    except OSError:
        return
    if not stat.S_ISSOCK(st.st_mode):
        return
    if _is_socket_alive(sock_path):
        return
    try:
        sock_path.unlink()
    except OSError:
        pass


class TunnelServer:
    """Unix-socket broadcast hub for one process tree.

    Many connections, one inbound handler. Broadcast writes into each
    connection's own queue, so a slow or dead observer only loses itself.
    """

    def __init__(
        self,
        *,
        on_message: Optional[MessageHandler] = None,
        max_line_bytes: int = DEFAULT_MAX_LINE_BYTES,
        max_queue: int = 4096,
    ):
        self._on_message = on_message
        self._max_line_bytes = int(max_line_bytes)
        self._max_queue = int(max_queue)
        self._server: Optional[asyncio.AbstractServer] = None
        self._socket_path: Optional[Path] = None
        self._connections: Dict[str, TunnelConnection] = {}
        self._ids = itertools.count(1)

    @property
    def socket_path(self) -> str:
        return str(self._socket_path) if self._socket_path is not None else ""

    @property
    def running(self) -> bool:
        return self._server is not None

    def set_handler(self, handler: Optional[MessageHandler]) -> None:
        self._on_message = handler

    def connections(self) -> List[TunnelConnection]:
        return list(self._connections.values())

    async def start(self, socket_path: Path) -> None:
        """Bind and listen; any failure surfaces as TunnelUnavailable."""
        if self._server is not None:
            raise TunnelUnavailable("tunnel server already started")
        p = Path(socket_path)
        try:
            p.parent.mkdir(parents=True, exist_ok=True)
            _remove_stale_socket(p)
            if os.path.lexists(p):
                # Live socket or a regular file; leave it to its owner.
                raise TunnelUnavailable(f"tunnel socket path in use: {p}", details={"path": str(p)})
            self._server = await asyncio.start_unix_server(self._on_client, path=str(p))
        except (OSError, ValueError) as e:
            raise TunnelUnavailable(f"cannot bind tunnel socket {p}: {e}", details={"path": str(p)}) from e
        self._socket_path = p
        try:
            os.chmod(p, 0o600)
        except OSError:
            pass
        logger.debug("tunnel listening on %s", p)

    async def _on_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        conn = TunnelConnection(
            reader,
            writer,
            conn_id=f"c{next(self._ids)}",
            max_line_bytes=self._max_line_bytes,
            max_queue=self._max_queue,
        )
        self._connections[conn.conn_id] = conn
        conn.on_close(self._drop)
        conn.start()
        logger.debug("tunnel client connected", extra={"conn_id": conn.conn_id})
        try:
            async for msg in conn.messages():
                handler = self._on_message
                if handler is None:
                    continue
                try:
                    handler(msg, conn)
                except Exception:
                    logger.warning("tunnel handler failed", extra={"conn_id": conn.conn_id}, exc_info=True)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.info("tunnel connection error", extra={"conn_id": conn.conn_id}, exc_info=True)
        finally:
            conn.abort("eof")
            self._drop(conn)

    def _drop(self, conn: TunnelConnection) -> None:
        if self._connections.pop(conn.conn_id, None) is not None:
            logger.debug("tunnel client dropped (%s)", conn.close_reason, extra={"conn_id": conn.conn_id})

    def broadcast(self, message: BaseModel, *, exclude: Optional[str] = None) -> int:
        """Queue `message` on every live connection; returns how many accepted it."""
        try:
            data = encode(message)
        except Exception:
            logger.warning("dropping unencodable broadcast", exc_info=True)
            return 0
        sent = 0
        # Snapshot: a drop during the loop cannot disturb iteration.
        for conn in list(self._connections.values()):
            if exclude is not None and conn.conn_id == exclude:
                continue
            if conn.send_bytes(data):
                sent += 1
        return sent

    def send_user_input(self, content: str, *, origin: str = "", exclude: Optional[str] = None) -> int:
        """Fan typed input out to every connected agent (nested subagents pick it up)."""
        return self.broadcast(UserInput(content=content, origin=origin), exclude=exclude)

    async def close(self, timeout: float = 2.0) -> None:
        server = self._server
        self._server = None
        if server is not None:
            server.close()
        conns = list(self._connections.values())
        if conns:
            await asyncio.gather(*(c.close(timeout) for c in conns), return_exceptions=True)
        self._connections.clear()
        if server is not None:
            try:
                await asyncio.wait_for(server.wait_closed(), timeout=timeout)
            except (asyncio.TimeoutError, Exception):
                pass
        p = self._socket_path
        if p is not None:
            try:
                p.unlink()
            except FileNotFoundError:
                pass
            except OSError:
                logger.debug("could not remove tunnel socket %s", p)
