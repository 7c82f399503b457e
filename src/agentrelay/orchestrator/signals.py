"""Interrupt handling for agent runs.

A signal must end the process even while it is blocked waiting on a child,
so the handler does only synchronous best-effort cleanup and then exits with
128+signal. Cleanup callbacks must be quick and must not await.
"""
from __future__ import annotations

import logging
import os
import signal
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

_CLEANUPS: List[Callable[[], None]] = []
_PREVIOUS: Dict[int, Any] = {}

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM, signal.SIGHUP)


def register_cleanup(fn: Callable[[], None]) -> Callable[[], None]:
    """Add a cleanup; the returned callable removes it again."""
    _CLEANUPS.append(fn)

    def _remove() -> None:
        try:
            _CLEANUPS.remove(fn)
        except ValueError:
            pass

    return _remove


def run_cleanups() -> None:
    for fn in reversed(list(_CLEANUPS)):
        try:
            fn()
        except Exception:
            pass


def _signal_handler(signum: int, frame: Any) -> None:
    logger.info("received signal %s; exiting", signum)
    run_cleanups()
    os._exit(128 + int(signum))


def install_signal_handlers() -> None:
    for sig in HANDLED_SIGNALS:
        if int(sig) in _PREVIOUS:
            continue
        try:
            _PREVIOUS[int(sig)] = signal.signal(sig, _signal_handler)
        except (ValueError, OSError):
            # Not the main thread, or unsupported on this platform.
            pass


def restore_signal_handlers() -> None:
    for signum, prev in list(_PREVIOUS.items()):
        try:
            signal.signal(signum, prev)
        except (ValueError, OSError, TypeError):
            pass
        _PREVIOUS.pop(signum, None)
