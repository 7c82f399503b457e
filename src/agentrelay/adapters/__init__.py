from __future__ import annotations

import logging
from typing import Callable, Optional, TextIO

from ..contracts.v1.headless import SessionInfo
from ..errors import TunnelUnavailable
from ..kernel.context import TunnelContext
from ..kernel.settings import Settings, resolve_headless_url
from .base import ADAPTER_KINDS, AdapterKind, InputHandler, LoggerAdapter, Reply
from .headless import HeadlessAdapter
from .terminal import TerminalAdapter, TerminalInput
from .tunnel import TunnelAdapter

logger = logging.getLogger(__name__)

__all__ = [
    "ADAPTER_KINDS",
    "AdapterKind",
    "HeadlessAdapter",
    "InputHandler",
    "LoggerAdapter",
    "Reply",
    "TerminalAdapter",
    "TerminalInput",
    "TunnelAdapter",
    "open_adapter",
    "resolve_adapter_kind",
]


def resolve_adapter_kind(context: TunnelContext, settings: Settings) -> AdapterKind:
    """A parent tunnel always wins; headless only for a top-level process."""
    if context.active:
        return "tunnel"
    if settings.headless.enabled:
        return "headless"
    return "terminal"


async def open_adapter(
    kind: AdapterKind,
    *,
    context: TunnelContext,
    settings: Settings,
    session_info: Optional[SessionInfo] = None,
    stream: Optional[TextIO] = None,
    warn: Optional[Callable[[str], None]] = None,
) -> LoggerAdapter:
    """Build and start the adapter for `kind`.

    A parent tunnel that cannot be reached degrades to a terminal adapter with
    a one-line warning; the run itself continues.
    """
    if kind == "terminal":
        adapter: LoggerAdapter = TerminalAdapter(stream)
    elif kind == "tunnel":
        try:
            adapter = await TunnelAdapter.connect(context.socket_path, max_line_bytes=settings.max_line_bytes)
        except TunnelUnavailable as e:
            logger.info("parent tunnel unavailable: %s", e)
            adapter = TerminalAdapter(stream)
            adapter.warn(f"tunnel unavailable ({context.socket_path}); output goes to this terminal only")
    elif kind == "headless":
        url = resolve_headless_url(settings, warn=warn)
        adapter = HeadlessAdapter(
            url,
            session_info or SessionInfo(),
            wrapped=TerminalAdapter(stream),
            max_buffer_bytes=settings.headless.max_buffer_bytes,
            reconnect_interval_s=settings.headless.reconnect_interval_s,
            max_frame_bytes=settings.max_line_bytes,
        )
    else:
        raise ValueError(f"unknown adapter kind: {kind}")
    await adapter.start()
    return adapter
