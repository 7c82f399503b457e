from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Callable, List, Optional

from pydantic import BaseModel

from ..kernel.protocol import DEFAULT_MAX_LINE_BYTES, FrameReader, encode

logger = logging.getLogger(__name__)


class TunnelConnection:
    """One framed NDJSON stream over a Unix socket (either end).

    Outbound frames go through a bounded queue drained by a writer task, so
    `send` never blocks and per-connection emission order is kept. A consumer
    that falls `max_queue` frames behind is dropped.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        *,
        conn_id: str,
        max_line_bytes: int = DEFAULT_MAX_LINE_BYTES,
        max_queue: int = 4096,
    ):
        self.conn_id = conn_id
        self._reader = reader
        self._writer = writer
        self._max_line_bytes = int(max_line_bytes)
        self._q: "asyncio.Queue[Optional[bytes]]" = asyncio.Queue(maxsize=max(1, int(max_queue)))
        self._writer_task: Optional["asyncio.Task[None]"] = None
        self._closed = False
        self._close_reason = ""
        self._on_close: List[Callable[["TunnelConnection"], None]] = []

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def close_reason(self) -> str:
        return self._close_reason

    def on_close(self, fn: Callable[["TunnelConnection"], None]) -> None:
        self._on_close.append(fn)

    def start(self) -> None:
        if self._writer_task is None:
            self._writer_task = asyncio.create_task(self._pump_out(), name=f"tunnel-writer-{self.conn_id}")

    def send(self, message: BaseModel) -> bool:
        try:
            data = encode(message)
        except Exception:
            logger.warning("dropping unencodable message", extra={"conn_id": self.conn_id}, exc_info=True)
            return False
        return self.send_bytes(data)

    def send_bytes(self, data: bytes) -> bool:
        if self._closed:
            return False
        self.start()
        try:
            self._q.put_nowait(data)
        except asyncio.QueueFull:
            logger.warning("dropping slow tunnel connection", extra={"conn_id": self.conn_id})
            self.abort("slow consumer")
            return False
        return True

    async def _pump_out(self) -> None:
        while True:
            data = await self._q.get()
            if data is None:
                return
            try:
                self._writer.write(data)
                await self._writer.drain()
            except Exception as e:
                logger.info("tunnel write failed: %s", e, extra={"conn_id": self.conn_id})
                self.abort(f"write failed: {e}")
                return

    async def messages(self) -> AsyncIterator[BaseModel]:
        """Decoded inbound messages until EOF; malformed frames are logged and skipped."""
        frames = FrameReader(max_line_bytes=self._max_line_bytes)
        while not self._closed:
            try:
                chunk = await self._reader.read(65536)
            except (ConnectionError, OSError) as e:
                logger.info("tunnel read failed: %s", e, extra={"conn_id": self.conn_id})
                break
            results = frames.feed(chunk) if chunk else frames.finish()
            for res in results:
                if res.ok:
                    yield res.message  # type: ignore[misc]
                else:
                    logger.info("dropping frame: %s", res.error, extra={"conn_id": self.conn_id})
            if not chunk:
                break

    async def flush(self, timeout: float = 2.0) -> None:
        """Wait (bounded) until queued frames are written."""
        task = self._writer_task
        if task is None or task.done():
            return
        try:
            self._q.put_nowait(None)
        except asyncio.QueueFull:
            return
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        except (asyncio.TimeoutError, Exception):
            pass

    async def close(self, timeout: float = 2.0) -> None:
        if self._closed:
            return
        await self.flush(timeout)
        self.abort("closed")
        try:
            await asyncio.wait_for(self._writer.wait_closed(), timeout=timeout)
        except (asyncio.TimeoutError, Exception):
            pass

    def abort(self, reason: str) -> None:
        if self._closed:
            return
        self._closed = True
        self._close_reason = reason
        task = self._writer_task
        if task is not None and not task.done() and task is not _current_task():
            task.cancel()
        try:
            self._writer.close()
        except Exception:
            pass
        for fn in list(self._on_close):
            try:
                fn(self)
            except Exception:
                logger.debug("on_close callback failed", exc_info=True)


def _current_task() -> Optional["asyncio.Task[object]"]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None
