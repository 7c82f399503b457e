"""
Base class for logger adapters.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Literal, Optional

from ..contracts.v1.message import InboundInput, LogLine, LogLevel, Message
from ..contracts.v1.structured import structured_event

logger = logging.getLogger(__name__)

AdapterKind = Literal["terminal", "tunnel", "headless"]
ADAPTER_KINDS: tuple = ("terminal", "tunnel", "headless")

Reply = Callable[[Message], None]
InputHandler = Callable[[InboundInput, Optional[Reply]], None]


class LoggerAdapter(ABC):
    """
    Output sink for one process's agent activity.

    Each adapter handles:
    - Emitting Messages (best-effort; `send` never raises)
    - Dispatching inbound UserInput / PromptResponse to one registered handler
    - Its own connect / flush lifecycle
    """

    kind: AdapterKind = "terminal"

    def __init__(self) -> None:
        self._input_handler: Optional[InputHandler] = None

    @abstractmethod
    def _emit(self, message: Message) -> None:
        """Deliver one message; may raise, `send` contains it."""

    @property
    def supports_remote_input(self) -> bool:
        return False

    def send(self, message: Message) -> None:
        try:
            self._emit(message)
        except Exception:
            logger.warning("%s adapter dropped a message", self.kind, exc_info=True)

    def set_user_input_handler(self, handler: Optional[InputHandler]) -> None:
        """Register the inbound handler; None clears it (late input is then dropped)."""
        self._input_handler = handler

    def _dispatch_input(self, message: InboundInput, reply: Optional[Reply]) -> None:
        handler = self._input_handler
        if handler is None:
            logger.debug("no input handler; dropping %s", message.type)
            return
        try:
            handler(message, reply)
        except Exception:
            logger.warning("input handler failed", exc_info=True)

    async def start(self) -> None:
        """Connect background machinery; default adapters need none."""

    async def close(self, timeout: float = 2.0) -> None:
        """Flush what can be flushed within `timeout`, then release resources."""

    # Convenience emitters

    def _log(self, level: LogLevel, args: tuple) -> None:
        self.send(LogLine(level=level, args=[str(a) for a in args]))

    def log(self, *args: Any) -> None:
        self._log("log", args)

    def info(self, *args: Any) -> None:
        self._log("info", args)

    def warn(self, *args: Any) -> None:
        self._log("warn", args)

    def error(self, *args: Any) -> None:
        self._log("error", args)

    def debug(self, *args: Any) -> None:
        self._log("debug", args)

    def event(self, kind: str, **payload: Any) -> None:
        try:
            msg = structured_event(kind, **payload)
        except Exception:
            logger.warning("invalid %s payload", kind, exc_info=True)
            return
        self.send(msg)
