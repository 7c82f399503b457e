"""Agent subprocess runner.

Spawns an executor CLI in its own process group with piped stdio, streams
stdout/stderr line by line to async callbacks, and enforces the inactivity
watchdog. stdin belongs to the StdinGuard created here; nothing else in the
process writes to or closes it.
"""
from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from ..errors import SubprocessFailure
from ..kernel.protocol import DEFAULT_MAX_LINE_BYTES, LineSplitter
from .stdin_guard import StdinGuard

logger = logging.getLogger(__name__)

LineCallback = Callable[[str], Awaitable[None]]


def _best_effort_killpg(pid: int, sig: signal.Signals) -> None:
    if pid <= 0:
        return
    try:
        os.killpg(pid, sig)
    except Exception:
        try:
            os.kill(pid, sig)
        except Exception:
            pass


class AgentProcess:
    def __init__(
        self,
        argv: List[str],
        *,
        cwd: Optional[Path] = None,
        env: Optional[Dict[str, str]] = None,
        label: str = "agent",
        inactivity_s: float = 0.0,
        initial_inactivity_s: float = 0.0,
        kill_grace_s: float = 3.0,
        max_line_bytes: int = DEFAULT_MAX_LINE_BYTES,
    ):
        self.argv = list(argv)
        self.cwd = cwd
        self.env = env
        self.label = label
        self._inactivity_s = float(inactivity_s or 0.0)
        self._initial_inactivity_s = float(initial_inactivity_s or 0.0)
        self._kill_grace_s = float(kill_grace_s)
        self._max_line_bytes = int(max_line_bytes)
        self._proc: Optional[asyncio.subprocess.Process] = None
        self._guard: Optional[StdinGuard] = None
        self._last_activity = 0.0
        self._seen_output = False
        self.timed_out = False

    @property
    def pid(self) -> int:
        return int(self._proc.pid) if self._proc is not None else 0

    @property
    def guard(self) -> StdinGuard:
        if self._guard is None:
            raise RuntimeError("agent process not spawned")
        return self._guard

    @property
    def returncode(self) -> Optional[int]:
        return self._proc.returncode if self._proc is not None else None

    async def spawn(self) -> None:
        """Start the child; an executor that cannot be launched raises SubprocessFailure (exit 127)."""
        if not self.argv:
            raise SubprocessFailure("empty command", exit_code=127, code="spawn_failed")
        try:
            self._proc = await asyncio.create_subprocess_exec(
                *self.argv,
                cwd=str(self.cwd) if self.cwd is not None else None,
                env=self.env,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except (FileNotFoundError, PermissionError, NotADirectoryError) as e:
            raise SubprocessFailure(
                f"cannot start {self.argv[0]}: {e}",
                exit_code=127,
                code="spawn_failed",
                details={"command": self.argv[0]},
            ) from e
        except OSError as e:
            raise SubprocessFailure(f"cannot start {self.argv[0]}: {e}", exit_code=127, code="spawn_failed") from e
        self._guard = StdinGuard(self._proc.stdin, label=self.label)
        self._last_activity = time.monotonic()
        logger.debug("spawned %s", self.argv[0], extra={"pid": self._proc.pid})

    async def stream(self, on_stdout: LineCallback, on_stderr: LineCallback) -> None:
        """Pump both output streams until EOF; the watchdog runs alongside."""
        proc = self._proc
        if proc is None:
            raise RuntimeError("agent process not spawned")
        watchdog = asyncio.create_task(self._watchdog(), name=f"{self.label}-watchdog")
        try:
            await asyncio.gather(
                self._pump(proc.stdout, on_stdout),
                self._pump(proc.stderr, on_stderr),
            )
        finally:
            watchdog.cancel()
            await asyncio.gather(watchdog, return_exceptions=True)

    async def _pump(self, stream: Optional[asyncio.StreamReader], cb: LineCallback) -> None:
        if stream is None:
            return
        lines = LineSplitter(max_line_bytes=self._max_line_bytes)
        while True:
            chunk = await stream.read(65536)
            if not chunk:
                for line in lines.finish():
                    await self._deliver(cb, line)
                return
            self._touch()
            for line in lines.feed(chunk):
                await self._deliver(cb, line)

    async def _deliver(self, cb: LineCallback, line: str) -> None:
        try:
            await cb(line)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.warning("%s output callback failed", self.label, exc_info=True)

    def _touch(self) -> None:
        self._last_activity = time.monotonic()
        self._seen_output = True

    def _inactivity_limit(self) -> float:
        if not self._seen_output and self._initial_inactivity_s > 0:
            return self._initial_inactivity_s
        return self._inactivity_s

    async def _watchdog(self) -> None:
        while True:
            limit = self._inactivity_limit()
            if limit <= 0:
                await asyncio.sleep(1.0)
                continue
            idle = time.monotonic() - self._last_activity
            if idle >= limit:
                logger.warning("%s inactive for %.0fs; terminating", self.label, idle, extra={"pid": self.pid})
                self.timed_out = True
                await self.terminate()
                return
            await asyncio.sleep(min(1.0, max(0.05, limit - idle)))

    async def wait(self) -> Tuple[int, Optional[int]]:
        """(exit_code, signal); a signal death maps to exit code 128+signal."""
        proc = self._proc
        if proc is None:
            raise RuntimeError("agent process not spawned")
        rc = await proc.wait()
        if rc < 0:
            return 128 - rc, -rc
        return rc, None

    async def terminate(self) -> None:
        proc = self._proc
        if proc is None or proc.returncode is not None:
            return
        _best_effort_killpg(proc.pid, signal.SIGTERM)
        try:
            await asyncio.wait_for(proc.wait(), timeout=self._kill_grace_s)
        except asyncio.TimeoutError:
            _best_effort_killpg(proc.pid, signal.SIGKILL)

    def kill_now(self) -> None:
        """Synchronous SIGKILL for signal handlers."""
        proc = self._proc
        if proc is not None and proc.returncode is None:
            _best_effort_killpg(proc.pid, signal.SIGKILL)
