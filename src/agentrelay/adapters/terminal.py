from __future__ import annotations

import asyncio
import collections
import logging
import os
import sys
from typing import Any, Callable, Deque, List, Optional, TextIO, Tuple

from ..contracts.v1.message import Message, PromptRequest
from ..kernel.protocol import LineSplitter
from ..util.render import format_message
from .base import LoggerAdapter

logger = logging.getLogger(__name__)


class TerminalAdapter(LoggerAdapter):
    """Writes rendered messages straight to the controlling terminal."""

    kind = "terminal"

    def __init__(self, stream: Optional[TextIO] = None, *, show_debug: bool = False):
        super().__init__()
        self._stream = stream
        self._show_debug = bool(show_debug)

    @property
    def stream(self) -> TextIO:
        return self._stream or sys.stdout

    def _emit(self, message: Message) -> None:
        if getattr(message, "type", "") == "log" and getattr(message, "level", "") == "debug" and not self._show_debug:
            return
        text = format_message(message)
        if text is None:
            return
        out = self.stream
        out.write(text + ("" if text.endswith("\n") else "\n"))
        out.flush()


class TerminalInput:
    """Line reader for an interactive stdin, driven by the event loop.

    Lines go to the oldest waiting local prompt if there is one, otherwise to
    `on_line`. Waiting is a plain future, so a prompt that loses a race is
    cancelled without leaving a blocked read behind.
    """

    def __init__(self, stream: Optional[TextIO] = None, *, prompt_stream: Optional[TextIO] = None):
        self._stream = stream or sys.stdin
        self._prompt_stream = prompt_stream
        self._splitter = LineSplitter()
        self._waiters: Deque["asyncio.Future[str]"] = collections.deque()
        self._on_line: Optional[Callable[[str], None]] = None
        self._fd: Optional[int] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._eof = False

    @staticmethod
    def available(stream: Optional[TextIO] = None) -> bool:
        s = stream or sys.stdin
        try:
            return bool(s is not None and s.isatty())
        except Exception:
            return False

    @property
    def running(self) -> bool:
        return self._fd is not None

    @property
    def out(self) -> TextIO:
        return self._prompt_stream or sys.stderr

    def start(self, on_line: Optional[Callable[[str], None]] = None) -> bool:
        if self._fd is not None:
            self._on_line = on_line
            return True
        try:
            fd = self._stream.fileno()
            loop = asyncio.get_running_loop()
            loop.add_reader(fd, self._on_readable)
        except (OSError, ValueError, NotImplementedError, AttributeError) as e:
            logger.debug("terminal input unavailable: %s", e)
            return False
        self._fd = fd
        self._loop = loop
        self._on_line = on_line
        return True

    def stop(self) -> None:
        fd, loop = self._fd, self._loop
        self._fd = None
        self._loop = None
        self._on_line = None
        if fd is not None and loop is not None:
            try:
                loop.remove_reader(fd)
            except Exception:
                pass

    def _on_readable(self) -> None:
        fd = self._fd
        if fd is None:
            return
        try:
            chunk = os.read(fd, 65536)
        except BlockingIOError:
            return
        except OSError:
            chunk = b""
        if not chunk:
            self._eof = True
            lines = self._splitter.finish()
            self.stop()
        else:
            lines = self._splitter.feed(chunk)
        for line in lines:
            self._deliver(line)

    def _deliver(self, line: str) -> None:
        while self._waiters:
            fut = self._waiters.popleft()
            if not fut.done():
                fut.set_result(line)
                return
        handler = self._on_line
        if handler is None:
            return
        try:
            handler(line)
        except Exception:
            logger.warning("terminal line handler failed", exc_info=True)

    async def read_line(self) -> str:
        fut: "asyncio.Future[str]" = asyncio.get_running_loop().create_future()
        self._waiters.append(fut)
        try:
            return await fut
        finally:
            try:
                self._waiters.remove(fut)
            except ValueError:
                pass

    async def ask(self, request: PromptRequest) -> Any:
        """Local answer to a prompt; re-asks on invalid input."""
        out = self.out
        try:
            while True:
                out.write(_render_question(request))
                out.flush()
                line = await self.read_line()
                ok, value, problem = parse_answer(request, line)
                if ok:
                    return value
                out.write(f"  {problem}\n")
        except asyncio.CancelledError:
            try:
                out.write("\n  (answered elsewhere)\n")
                out.flush()
            except Exception:
                pass
            raise


def _render_question(request: PromptRequest) -> str:
    opts = request.options
    lines: List[str] = [f"? {opts.message}"]
    for i, ch in enumerate(opts.choices, 1):
        mark = " [x]" if ch.checked else ""
        desc = f" - {ch.description}" if ch.description else ""
        lines.append(f"  {i}) {ch.name}{mark}{desc}")
    hint = {
        "confirm": "(y/n)",
        "select": "(number)",
        "checkbox": "(comma-separated numbers)",
    }.get(request.kind, "")
    if opts.default is not None and request.kind != "checkbox":
        hint = (hint + f" [default: {opts.default}]").strip()
    if opts.validation_hint:
        hint = (hint + f" {opts.validation_hint}").strip()
    return "\n".join(lines) + ("\n" + hint if hint else "") + "\n> "


_YES = {"y", "yes", "true", "1"}
_NO = {"n", "no", "false", "0"}


def parse_answer(request: PromptRequest, line: str) -> Tuple[bool, Any, str]:
    """(ok, value, problem) for one typed line."""
    s = (line or "").strip()
    opts = request.options
    if request.kind == "input":
        if not s and opts.default is not None:
            return True, opts.default, ""
        return True, s, ""
    if request.kind == "confirm":
        if not s:
            return True, bool(opts.default) if opts.default is not None else False, ""
        low = s.lower()
        if low in _YES:
            return True, True, ""
        if low in _NO:
            return True, False, ""
        return False, None, "please answer y or n"
    choices = opts.choices
    if request.kind == "select":
        if not s and opts.default is not None:
            return True, opts.default, ""
        found, picked = _pick(choices, s)
        if not found:
            return False, None, f"choose 1-{len(choices)}"
        return True, picked, ""
    if request.kind == "checkbox":
        if not s:
            return True, [_choice_value(c) for c in choices if c.checked], ""
        values: List[Any] = []
        for part in s.split(","):
            found, picked = _pick(choices, part.strip())
            if not found:
                return False, None, f"unknown choice: {part.strip()}"
            values.append(picked)
        return True, values, ""
    return False, None, f"unsupported prompt kind: {request.kind}"


def _pick(choices: list, token: str) -> Tuple[bool, Any]:
    if token.isdigit():
        i = int(token)
        if 1 <= i <= len(choices):
            return True, _choice_value(choices[i - 1])
        return False, None
    for c in choices:
        if token == c.name or token == str(c.value):
            return True, _choice_value(c)
    return False, None


def _choice_value(choice: Any) -> Any:
    return choice.name if choice.value is None else choice.value
