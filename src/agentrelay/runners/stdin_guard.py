"""Single gatekeeper for a child process's stdin.

Every write and every close of the stream goes through one StdinGuard; no
other code path touches the underlying writer. `closed` is the guard's own
flag, never inferred from the OS stream.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional, Union

from ..errors import StdinClosed

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WriteResult:
    error: Optional[StdinClosed] = None

    @property
    def ok(self) -> bool:
        return self.error is None


_OK = WriteResult()


class StdinGuard:
    def __init__(self, writer: Any, *, label: str = "agent"):
        # `writer` is an asyncio.StreamWriter-like object (write/drain/close/wait_closed).
        self._writer = writer
        self._label = str(label or "agent")
        self._lock = asyncio.Lock()
        self._closed = False
        self._close_reason = ""

    @property
    def label(self) -> str:
        return self._label

    def is_closed(self) -> bool:
        return self._closed

    @property
    def close_reason(self) -> str:
        return self._close_reason

    async def write(self, content: Union[str, bytes]) -> WriteResult:
        """Write and drain; after close this returns StdinClosed and never touches the stream."""
        if self._closed:
            return WriteResult(StdinClosed(f"stdin of {self._label} is closed"))
        data = content.encode("utf-8") if isinstance(content, str) else bytes(content)
        async with self._lock:
            # Re-check: a close may have happened while we waited for the lock.
            if self._closed:
                return WriteResult(StdinClosed(f"stdin of {self._label} is closed"))
            try:
                self._writer.write(data)
                await self._writer.drain()
            except (BrokenPipeError, ConnectionResetError, OSError, RuntimeError) as e:
                logger.warning("stdin write failed for %s: %s", self._label, e)
                self._mark_closed(f"write failed: {e}")
                await self._close_stream()
                return WriteResult(StdinClosed(f"stdin of {self._label} failed: {e}"))
        return _OK

    async def close(self, reason: str = "closed") -> None:
        """Idempotent; only the first call transitions the guard."""
        if self._closed:
            return
        # No await between the check above and the flag flip below.
        self._mark_closed(reason)
        async with self._lock:
            await self._close_stream()

    def _mark_closed(self, reason: str) -> None:
        self._closed = True
        self._close_reason = str(reason or "closed")
        logger.debug("stdin guard closed for %s (%s)", self._label, self._close_reason)

    async def _close_stream(self) -> None:
        try:
            self._writer.close()
        except Exception:
            pass
        try:
            await self._writer.wait_closed()
        except Exception:
            pass
