from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional, Set

from ..contracts.v1.message import InboundInput, Message, PromptResponse, UserInput
from ..contracts.v1.structured import structured_event
from ..kernel.arbitration import PendingPromptTable
from ..runners.stdin_guard import StdinGuard

logger = logging.getLogger(__name__)

Reply = Callable[[Message], None]
Fanout = Callable[[str, str, Optional[str]], None]


class InputRouter:
    """Inbound input handler shared by every adapter and the owned tunnel.

    PromptResponse resolves the pending prompt table. UserInput is written to
    the agent's stdin through its guard first; the echo and the fan-out to
    nested agents come after the write and never decide its outcome.
    """

    def __init__(
        self,
        table: PendingPromptTable,
        emit: Callable[[Message], None],
        *,
        guard: Optional[StdinGuard] = None,
        encode_input: Optional[Callable[[str], str]] = None,
        fanout: Optional[Fanout] = None,
        default_source: str = "observer",
        echo: bool = True,
    ):
        self.table = table
        self._emit = emit
        self._guard = guard
        self._encode_input = encode_input
        self._fanout = fanout
        self._default_source = default_source
        self._echo = bool(echo)
        self._tasks: Set["asyncio.Task[bool]"] = set()

    def set_guard(self, guard: Optional[StdinGuard], *, encode_input: Optional[Callable[[str], str]] = None) -> None:
        self._guard = guard
        if encode_input is not None:
            self._encode_input = encode_input

    def __call__(
        self,
        message: InboundInput,
        reply: Optional[Reply] = None,
        *,
        source: str = "",
        exclude: Optional[str] = None,
    ) -> None:
        if isinstance(message, PromptResponse):
            if not self.table.handle_response(message, source=source or message.source or self._default_source):
                logger.debug("late or unknown prompt response", extra={"request_id": message.id})
            return
        if isinstance(message, UserInput):
            src = source or ("terminal" if message.origin == "terminal" else self._default_source)
            task = asyncio.get_running_loop().create_task(self.deliver(message, reply, source=src, exclude=exclude))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            return
        logger.debug("ignoring inbound %s", getattr(message, "type", "?"))

    async def deliver(
        self,
        message: UserInput,
        reply: Optional[Reply] = None,
        *,
        source: str = "observer",
        exclude: Optional[str] = None,
    ) -> bool:
        guard = self._guard
        if guard is None:
            self._report_failure(message, "no agent is running", reply)
            return False
        text = self._encode_input(message.content) if self._encode_input is not None else message.content
        res = await guard.write(text)
        if not res.ok:
            self._report_failure(message, str(res.error), reply)
            return False

        if self._echo:
            try:
                self._emit(
                    structured_event(
                        "user_terminal_input",
                        content=message.content,
                        source=source if source in ("terminal", "tunnel", "gui", "observer") else "observer",
                        origin=message.origin,
                    )
                )
            except Exception:
                logger.warning("input echo failed", exc_info=True)

        fanout = self._fanout
        if fanout is not None:
            try:
                fanout(message.content, message.origin, exclude)
            except Exception:
                logger.warning("input fan-out failed", exc_info=True)
        return True

    def _report_failure(self, message: UserInput, reason: str, reply: Optional[Reply]) -> None:
        logger.info("user input not delivered: %s", reason)
        event = structured_event("input_delivery_failed", content=message.content, reason=reason, origin=message.origin)
        try:
            (reply or self._emit)(event)
        except Exception:
            logger.warning("could not report input delivery failure", exc_info=True)

    async def drain(self, timeout: float = 2.0) -> None:
        """Wait (bounded) for deliveries already in flight."""
        pending = list(self._tasks)
        if not pending:
            return
        _done, still = await asyncio.wait(pending, timeout=timeout)
        for t in still:
            t.cancel()
