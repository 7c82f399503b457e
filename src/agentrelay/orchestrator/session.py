"""One process's view of a run: where output goes and where input comes from.

A RunSession bundles the logger adapter, the tunnel this process owns (if it
is the top of the tree), the pending prompt table with its arbiter, and the
terminal line reader. Output from this process and relayed output from
nested producers both leave through `emit`.
"""
from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Any, Mapping, Optional, Set, TextIO

from pydantic import BaseModel

from ..adapters import AdapterKind, LoggerAdapter, TerminalInput, open_adapter, resolve_adapter_kind
from ..contracts.v1.headless import SessionInfo
from ..contracts.v1.message import LogLine, Message, OutputChunk, PromptRequest, PromptResponse, StructuredEvent, UserInput
from ..contracts.v1.structured import structured_event
from ..errors import PromptCancelled, PromptError, TunnelUnavailable
from ..kernel.arbitration import PendingPromptTable, PromptAnswer, PromptArbiter
from ..kernel.context import TunnelContext, get_tunnel_context
from ..kernel.settings import Settings, load_settings
from ..tunnel.connection import TunnelConnection
from ..tunnel.server import TunnelServer
from ..util.fs import private_tempdir, remove_tree
from . import signals
from .input_router import InputRouter

logger = logging.getLogger(__name__)

SOCKET_NAME = "output.sock"

_DEFAULT_SOURCE = {"terminal": "terminal", "tunnel": "tunnel", "headless": "gui"}


class RunSession:
    def __init__(
        self,
        *,
        kind: AdapterKind,
        adapter: LoggerAdapter,
        context: TunnelContext,
        settings: Settings,
        server: Optional[TunnelServer] = None,
        server_dir: Optional[Path] = None,
        terminal_input: Optional[TerminalInput] = None,
    ):
        self.kind = kind
        self.adapter = adapter
        self.context = context
        self.settings = settings
        self.server = server
        self._server_dir = server_dir
        self.terminal_input = terminal_input
        self.table = PendingPromptTable()
        self.arbiter = PromptArbiter(
            self.table,
            self.emit,
            local=terminal_input.ask if terminal_input is not None else None,
            default_timeout_s=settings.timeouts.prompt_s,
        )
        self.router = InputRouter(
            self.table,
            self.emit,
            fanout=self._fanout if server is not None else None,
            default_source=_DEFAULT_SOURCE.get(kind, "observer"),
            # The owner already echoed input it relays to nested agents.
            echo=kind != "tunnel",
        )
        self._input_handler: Optional[InputRouter] = None
        self._relays: Set["asyncio.Task[None]"] = set()
        self._remove_cleanup: Any = None
        self._closed = False

    @classmethod
    async def open(
        cls,
        *,
        context: Optional[TunnelContext] = None,
        settings: Optional[Settings] = None,
        session_info: Optional[SessionInfo] = None,
        headless: Optional[bool] = None,
        tunnel: Optional[bool] = None,
        tunnel_path: str = "",
        stream: Optional[TextIO] = None,
        interactive: Optional[bool] = None,
    ) -> "RunSession":
        ctx = context or get_tunnel_context()
        cfg = settings or load_settings()
        if headless is not None:
            cfg.headless.enabled = bool(headless)
        kind = resolve_adapter_kind(ctx, cfg)
        adapter = await open_adapter(kind, context=ctx, settings=cfg, session_info=session_info, stream=stream, warn=None)

        server: Optional[TunnelServer] = None
        server_dir: Optional[Path] = None
        want_tunnel = cfg.tunnel.enabled if tunnel is None else bool(tunnel)
        # Reuse, never nest: a process inside a tunnel does not open another.
        if not ctx.active and want_tunnel:
            server, server_dir = await _start_server(cfg, tunnel_path, adapter)

        term: Optional[TerminalInput] = None
        if kind != "tunnel":
            use_tty = TerminalInput.available() if interactive is None else bool(interactive)
            if use_tty:
                term = TerminalInput()

        session = cls(
            kind=kind,
            adapter=adapter,
            context=ctx,
            settings=cfg,
            server=server,
            server_dir=server_dir,
            terminal_input=term,
        )
        session._wire()
        return session

    def _wire(self) -> None:
        if self.server is not None:
            self.server.set_handler(self._on_tunnel_message)
            sock = self.server.socket_path
            owned_dir = self._server_dir
            if owned_dir is not None:
                self._remove_cleanup = signals.register_cleanup(lambda: remove_tree(owned_dir))
            else:
                self._remove_cleanup = signals.register_cleanup(lambda: _unlink_quietly(sock))
        if self.terminal_input is not None:
            if not self.terminal_input.start(self._on_terminal_line):
                self.terminal_input = None
                self.arbiter.set_local(None)
        self.set_input_handler(self.router)

    @property
    def tunnel_socket(self) -> str:
        return self.server.socket_path if self.server is not None else ""

    @property
    def has_input_source(self) -> bool:
        return self.terminal_input is not None or self.server is not None or self.adapter.supports_remote_input

    def child_env(self, base: Optional[Mapping[str, str]] = None) -> dict:
        return self.context.child_env(os.environ if base is None else base, owned_socket=self.tunnel_socket)

    def emit(self, message: Message, *, exclude: Optional[str] = None) -> None:
        self.adapter.send(message)
        if self.server is not None:
            self.server.broadcast(message, exclude=exclude)

    def event(self, kind: str, **payload: Any) -> None:
        try:
            msg = structured_event(kind, **payload)
        except Exception:
            logger.warning("invalid %s payload", kind, exc_info=True)
            return
        self.emit(msg)

    def log(self, text: str) -> None:
        self.emit(LogLine(level="log", args=[text]))

    def warn(self, text: str) -> None:
        self.emit(LogLine(level="warn", args=[text]))

    def set_input_handler(self, handler: Optional[InputRouter]) -> None:
        """Install (or clear with None) the handler on every input path at once."""
        self._input_handler = handler
        self.adapter.set_user_input_handler(handler)

    def _fanout(self, content: str, origin: str, exclude: Optional[str]) -> None:
        if self.server is not None:
            self.server.send_user_input(content, origin=origin, exclude=exclude)

    def _on_terminal_line(self, line: str) -> None:
        handler = self._input_handler
        msg = UserInput(content=line, origin="terminal")
        if handler is None:
            self.emit(structured_event("input_delivery_failed", content=line, reason="no agent is running", origin="terminal"))
            return
        handler(msg, None, source="terminal")

    def _on_tunnel_message(self, msg: BaseModel, conn: TunnelConnection) -> None:
        if isinstance(msg, (StructuredEvent, LogLine, OutputChunk)):
            # Output of a nested producer: show it here and pass it on to the others.
            self.emit(msg, exclude=conn.conn_id)
            return
        if isinstance(msg, PromptRequest):
            task = asyncio.get_running_loop().create_task(self._relay_prompt(msg, conn))
            self._relays.add(task)
            task.add_done_callback(self._relays.discard)
            return
        if isinstance(msg, (UserInput, PromptResponse)):
            handler = self._input_handler
            if handler is None:
                if isinstance(msg, UserInput):
                    conn.send(
                        structured_event("input_delivery_failed", content=msg.content, reason="no agent is running", origin=msg.origin)
                    )
                return
            handler(msg, conn.send, source="tunnel", exclude=conn.conn_id)
            return
        logger.debug("ignoring tunnel frame %s", getattr(msg, "type", "?"), extra={"conn_id": conn.conn_id})

    async def _relay_prompt(self, request: PromptRequest, conn: TunnelConnection) -> None:
        try:
            answer = await self.arbiter.ask(
                request, publish=lambda m: self.emit(m, exclude=conn.conn_id), announce=False
            )
        except asyncio.CancelledError:
            conn.send(PromptResponse(id=request.id, error="prompt cancelled"))
            raise
        except (PromptError, ValueError) as e:
            conn.send(PromptResponse(id=request.id, error=str(e)))
            return
        conn.send(PromptResponse(id=request.id, value=answer.value, source=answer.source))

    async def ask(self, request: PromptRequest) -> PromptAnswer:
        """Arbitrate a prompt raised by this process."""
        if not self.has_input_source:
            raise PromptCancelled("no input source for prompt", details={"request_id": request.id})
        return await self.arbiter.ask(request)

    async def close(self, timeout: float = 2.0) -> None:
        """Release everything in a fixed order; safe to call twice."""
        if self._closed:
            return
        self._closed = True
        self.set_input_handler(None)
        if self.server is not None:
            self.server.set_handler(None)
        if self.terminal_input is not None:
            self.terminal_input.stop()
        self.table.cancel_all("session closed")
        await self.router.drain(timeout)
        relays = list(self._relays)
        for t in relays:
            t.cancel()
        if relays:
            await asyncio.gather(*relays, return_exceptions=True)
        await self.adapter.close(timeout)
        if self.server is not None:
            await self.server.close(timeout)
        if self._server_dir is not None:
            remove_tree(self._server_dir)
        if self._remove_cleanup is not None:
            self._remove_cleanup()


async def _start_server(cfg: Settings, tunnel_path: str, adapter: LoggerAdapter) -> tuple:
    server_dir: Optional[Path] = None
    if tunnel_path:
        path = Path(tunnel_path)
    else:
        server_dir = private_tempdir()
        path = server_dir / SOCKET_NAME
    server = TunnelServer(max_line_bytes=cfg.max_line_bytes)
    try:
        await server.start(path)
    except TunnelUnavailable as e:
        logger.info("tunnel disabled: %s", e)
        adapter.warn(f"tunnel unavailable ({e.message}); continuing without forwarding")
        if server_dir is not None:
            remove_tree(server_dir)
        return None, None
    return server, server_dir


def _unlink_quietly(path: str) -> None:
    if not path:
        return
    try:
        os.unlink(path)
    except OSError:
        pass
