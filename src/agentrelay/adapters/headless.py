"""WebSocket client that mirrors a run to a GUI.

The GUI is the WebSocket listener; this process connects to it, replays what
the GUI missed, streams live output, and accepts user_input/prompt_response
frames back.
"""
from __future__ import annotations

import asyncio
import collections
import logging
from typing import Any, Deque, Dict, Optional, Tuple

import websockets

from ..contracts.v1.headless import OutputEnvelope, ReplayEnd, ReplayStart, SessionInfo
from ..contracts.v1.message import LogLine, Message, PromptResponse, UserInput
from ..kernel.protocol import DEFAULT_MAX_LINE_BYTES, decode, encode_text
from .base import LoggerAdapter
from .terminal import TerminalAdapter

logger = logging.getLogger(__name__)

INBOUND_MODELS: Dict[str, Any] = {"user_input": UserInput, "prompt_response": PromptResponse}


class HeadlessAdapter(LoggerAdapter):
    kind = "headless"

    def __init__(
        self,
        url: str,
        session: SessionInfo,
        *,
        wrapped: Optional[LoggerAdapter] = None,
        max_buffer_bytes: int = 10 * 1024 * 1024,
        reconnect_interval_s: float = 5.0,
        max_frame_bytes: int = DEFAULT_MAX_LINE_BYTES,
    ):
        super().__init__()
        self._url = url
        self._session = session
        self._wrapped = wrapped or TerminalAdapter()
        self._max_buffer_bytes = int(max_buffer_bytes)
        self._reconnect_interval_s = float(reconnect_interval_s)
        self._max_frame_bytes = int(max_frame_bytes)
        self._history: Deque[Tuple[str, int]] = collections.deque()
        self._history_bytes = 0
        self._seq = 0
        self._live: Optional["asyncio.Queue[str]"] = None
        self._task: Optional["asyncio.Task[None]"] = None
        self._closing = False
        self._connected = False
        self._warned = False

    @property
    def url(self) -> str:
        return self._url

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def supports_remote_input(self) -> bool:
        return True

    @property
    def history_size(self) -> int:
        return len(self._history)

    def _emit(self, message: Message) -> None:
        self._wrapped.send(message)
        env = OutputEnvelope(seq=self._seq, message=message.model_dump(mode="json"))
        self._seq += 1
        text = encode_text(env)
        self._remember(text)
        live = self._live
        if live is not None:
            live.put_nowait(text)

    def _remember(self, text: str) -> None:
        size = len(text.encode("utf-8"))
        self._history.append((text, size))
        self._history_bytes += size
        # Oldest first out; always keep the newest entry.
        while self._history_bytes > self._max_buffer_bytes and len(self._history) > 1:
            _, dropped = self._history.popleft()
            self._history_bytes -= dropped

    async def start(self) -> None:
        if self._task is None:
            self._closing = False
            self._task = asyncio.create_task(self._run(), name="headless-adapter")

    async def _run(self) -> None:
        while not self._closing:
            try:
                async with websockets.connect(
                    self._url,
                    max_size=self._max_frame_bytes,
                    open_timeout=5,
                ) as ws:
                    await self._serve(ws)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.info("headless connection to %s failed: %s", self._url, e)
                if not self._warned:
                    self._warned = True
                    self._wrapped.send(
                        LogLine(level="warn", args=[f"GUI not reachable at {self._url}; continuing with terminal output only"])
                    )
            finally:
                self._connected = False
                self._live = None
            if self._closing:
                return
            await asyncio.sleep(self._reconnect_interval_s)

    async def _serve(self, ws: Any) -> None:
        # Snapshot + live queue swap happen without an await in between, so
        # nothing is both replayed and streamed, and nothing is lost.
        snapshot = [t for t, _ in self._history]
        live: "asyncio.Queue[str]" = asyncio.Queue()
        self._live = live

        await ws.send(encode_text(self._session))
        await ws.send(encode_text(ReplayStart()))
        for text in snapshot:
            await ws.send(text)
        await ws.send(encode_text(ReplayEnd()))
        self._connected = True
        if self._warned:
            self._warned = False
            logger.info("headless connection to %s established", self._url)

        recv_task = asyncio.create_task(self._pump_in(ws))
        send_task = asyncio.create_task(self._pump_out(ws, live))
        done, pending = await asyncio.wait({recv_task, send_task}, return_when=asyncio.FIRST_COMPLETED)
        for t in pending:
            t.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        for t in done:
            exc = t.exception()
            if exc is not None:
                raise exc

    async def _pump_out(self, ws: Any, live: "asyncio.Queue[str]") -> None:
        while True:
            text = await live.get()
            try:
                await ws.send(text)
            finally:
                live.task_done()

    async def _pump_in(self, ws: Any) -> None:
        async for raw in ws:
            if isinstance(raw, (bytes, bytearray)):
                raw = bytes(raw).decode("utf-8", errors="replace")
            res = decode(raw, max_bytes=self._max_frame_bytes, models=INBOUND_MODELS)
            if not res.ok:
                logger.info("dropping GUI frame: %s", res.error)
                continue
            self._dispatch_input(res.message, self.send)  # type: ignore[arg-type]

    async def close(self, timeout: float = 2.0) -> None:
        self._closing = True
        live = self._live
        if live is not None and self._connected:
            try:
                await asyncio.wait_for(live.join(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.info("headless drain timed out with %d messages pending", live.qsize())
        task = self._task
        self._task = None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        self._connected = False
        await self._wrapped.close(timeout)
