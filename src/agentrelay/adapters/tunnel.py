from __future__ import annotations

import asyncio
import logging
from typing import Optional

from ..contracts.v1.message import Message, PromptResponse, UserInput
from ..kernel.protocol import DEFAULT_MAX_LINE_BYTES
from ..tunnel.client import TunnelClient
from ..tunnel.connection import TunnelConnection
from .base import LoggerAdapter

logger = logging.getLogger(__name__)


class TunnelAdapter(LoggerAdapter):
    """Forwards everything into a parent process's tunnel.

    Used by any process started with OUTPUT_SOCKET_PATH set: its output joins
    the parent's broadcast instead of opening a nested tunnel. UserInput and
    PromptResponse frames coming back from the parent go to the input handler.
    """

    kind = "tunnel"

    def __init__(self, conn: TunnelConnection):
        super().__init__()
        self._conn = conn
        self._connected = not conn.closed
        self._reader_task: Optional["asyncio.Task[None]"] = None
        conn.on_close(lambda _c: self._mark_disconnected())

    @classmethod
    async def connect(cls, socket_path: str, *, max_line_bytes: int = DEFAULT_MAX_LINE_BYTES) -> "TunnelAdapter":
        """Raises TunnelUnavailable when the parent socket cannot be reached."""
        conn = await TunnelClient.connect(socket_path, max_line_bytes=max_line_bytes)
        return cls(conn)

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def supports_remote_input(self) -> bool:
        return True

    def _mark_disconnected(self) -> None:
        if not self._connected:
            return
        self._connected = False
        logger.info("tunnel to parent closed", extra={"conn_id": self._conn.conn_id})

    def _emit(self, message: Message) -> None:
        if not self._connected:
            return
        if not self._conn.send(message):
            self._mark_disconnected()

    async def start(self) -> None:
        if self._reader_task is None:
            self._reader_task = asyncio.create_task(self._read_loop(), name="tunnel-adapter-reader")

    async def _read_loop(self) -> None:
        try:
            async for msg in self._conn.messages():
                if isinstance(msg, (UserInput, PromptResponse)):
                    self._dispatch_input(msg, self.send)
                # Sibling output broadcast by the parent is not ours to render.
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.info("tunnel adapter reader stopped", exc_info=True)
        finally:
            self._mark_disconnected()

    async def close(self, timeout: float = 2.0) -> None:
        await self._conn.close(timeout)
        self._mark_disconnected()
        task = self._reader_task
        self._reader_task = None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
