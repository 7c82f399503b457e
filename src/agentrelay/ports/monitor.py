"""Tunnel observer console.

Connects to a run's tunnel, renders everything it broadcasts, and turns
typed lines into user input for the agent, or into the answer to the most
recent open prompt.
"""
from __future__ import annotations

import collections
import logging
import os
import sys
from typing import Optional, TextIO

from pydantic import BaseModel

from ..adapters.terminal import TerminalInput, parse_answer
from ..contracts.v1.message import PromptRequest, PromptResponse, StructuredEvent, UserInput
from ..errors import TunnelUnavailable
from ..kernel.protocol import DEFAULT_MAX_LINE_BYTES
from ..tunnel.client import TunnelClient
from ..tunnel.connection import TunnelConnection
from ..util.render import format_message

logger = logging.getLogger(__name__)


class Monitor:
    def __init__(self, conn: TunnelConnection, *, out: Optional[TextIO] = None, origin: str = ""):
        self.conn = conn
        self.origin = origin or f"monitor-{os.getpid()}"
        self._out = out
        self.pending: "collections.OrderedDict[str, PromptRequest]" = collections.OrderedDict()

    @property
    def out(self) -> TextIO:
        return self._out or sys.stdout

    def _print(self, text: str) -> None:
        self.out.write(text + ("" if text.endswith("\n") else "\n"))
        self.out.flush()

    def handle(self, msg: BaseModel) -> None:
        if isinstance(msg, UserInput):
            # Addressed to producers; the echo event is what observers show.
            return
        if isinstance(msg, StructuredEvent):
            if msg.kind == "user_terminal_input" and str(msg.payload.get("origin") or "") == self.origin:
                return
            if msg.kind == "prompt_answered":
                self.pending.pop(str(msg.payload.get("request_id") or ""), None)
        if isinstance(msg, PromptRequest):
            self.pending[msg.id] = msg
        text = format_message(msg)
        if text is not None:
            self._print(text)

    def submit_line(self, line: str) -> bool:
        """Send one typed line; returns False when it was rejected locally."""
        if self.pending:
            rid, request = next(reversed(self.pending.items()))
            ok, value, problem = parse_answer(request, line)
            if not ok:
                self._print(f"  {problem}")
                return False
            self.pending.pop(rid, None)
            return self.conn.send(PromptResponse(id=rid, value=value, source="observer"))
        if not line.strip():
            return False
        return self.conn.send(UserInput(content=line, origin=self.origin))

    async def run(self, *, interactive: Optional[bool] = None) -> None:
        term: Optional[TerminalInput] = None
        use_tty = TerminalInput.available() if interactive is None else bool(interactive)
        if use_tty:
            term = TerminalInput()
            if not term.start(self.submit_line):
                term = None
        try:
            async for msg in self.conn.messages():
                self.handle(msg)
        finally:
            if term is not None:
                term.stop()
            await self.conn.close()
        self._print("(tunnel closed)")


async def run_monitor(
    socket_path: str,
    *,
    out: Optional[TextIO] = None,
    interactive: Optional[bool] = None,
    max_line_bytes: int = DEFAULT_MAX_LINE_BYTES,
) -> int:
    """Exit code: 0 after the tunnel closes, 1 when it cannot be reached."""
    try:
        conn = await TunnelClient.connect(socket_path, max_line_bytes=max_line_bytes)
    except TunnelUnavailable as e:
        print(f"error: {e.message}", file=sys.stderr)
        return 1
    await Monitor(conn, out=out).run(interactive=interactive)
    return 0
