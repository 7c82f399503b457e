"""Agent run loop.

spawning -> streaming -> awaiting_input (0..n) -> completing -> done | failed

Failures of the agent itself come back in the RunResult; nothing raised by
the transport layers is allowed to end the run.
"""
from __future__ import annotations

import logging
import os
import time
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional, TextIO

from ..contracts.v1.headless import SessionInfo
from ..contracts.v1.message import OutputChunk
from ..contracts.v1.result import RunResult, RunState
from ..errors import SubprocessFailure
from ..kernel.context import TunnelContext, get_tunnel_context
from ..kernel.executors import ExecutorSpec, UnknownExecutor, resolve_executor
from ..kernel.settings import Settings, load_settings
from ..kernel.workspace import PlanRef, git_remote, git_root, load_plan_ref
from ..runners.agent import AgentProcess
from ..util.time import elapsed_ms
from . import signals
from .session import RunSession

logger = logging.getLogger(__name__)


def orchestrator_prompt(plan: PlanRef, *, executor: str = "") -> str:
    flag = f" -x {executor}" if executor else ""
    title = f" ({plan.title})" if plan.title else ""
    return (
        f"# Orchestration Instructions\n\n"
        f"You are the orchestrator for plan {plan.plan_id}{title}.\n"
        f"Plan reference: {plan.ref}\n\n"
        "Coordinate specialized subagents; do not implement the work yourself.\n\n"
        "## Available Agents\n\n"
        f"- Implementer: run `agentrelay subagent implementer {plan.ref}{flag} --input \"<instructions>\"`\n"
        f"- Tester: run `agentrelay subagent tester {plan.ref}{flag} --input \"<instructions>\"`\n"
        f"- Verifier: run `agentrelay subagent verifier {plan.ref}{flag} --input \"<instructions>\"`\n\n"
        "Each command prints only the subagent's final report. Use a timeout of at least 30 minutes.\n"
        "If a subagent reports a line beginning with 'FAILED:', stop and report the failure.\n"
        "To ask the user a question, run `agentrelay ask \"<question>\"` and read the JSON answer.\n"
    )


def session_info_for(plan: PlanRef, *, command: str, cwd: Path) -> SessionInfo:
    root = git_root(cwd) or cwd
    return SessionInfo(
        command=command,
        plan_id=plan.plan_id,
        plan_title=plan.title,
        workspace_path=str(root),
        git_remote=git_remote(root),
        pid=os.getpid(),
    )


class _RunTracker:
    """Current state plus the awaiting_input toggle driven by the prompt table."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        self.state: RunState = "spawning"
        self._terminal = False

    def set(self, state: RunState) -> None:
        if self._terminal:
            return
        if state != self.state:
            logger.debug("run state %s -> %s", self.state, state, extra={"run_id": self.run_id})
        self.state = state
        if state in ("done", "failed"):
            self._terminal = True

    def on_outstanding(self, count: int) -> None:
        if self.state == "streaming" and count > 0:
            self.set("awaiting_input")
        elif self.state == "awaiting_input" and count == 0:
            self.set("streaming")


async def run_agent(
    plan_ref: str,
    *,
    executor: str = "",
    model: str = "",
    prompt: str = "",
    cwd: Optional[Path] = None,
    settings: Optional[Settings] = None,
    context: Optional[TunnelContext] = None,
    headless: Optional[bool] = None,
    tunnel: Optional[bool] = None,
    tunnel_path: str = "",
    stream: Optional[TextIO] = None,
    interactive: Optional[bool] = None,
    role: str = "",
    mode: str = "run",
    command: str = "run",
    session: Optional[RunSession] = None,
) -> RunResult:
    """Run one agent to completion and report how it went."""
    cfg = settings or load_settings()
    ctx = context or get_tunnel_context()
    workdir = Path(cwd or Path.cwd()).resolve()
    run_id = uuid.uuid4().hex[:12]
    tracker = _RunTracker(run_id)
    started = time.monotonic()

    try:
        spec = resolve_executor(executor or cfg.default_executor, cfg.executors)
    except UnknownExecutor as e:
        tracker.set("failed")
        err = SubprocessFailure(str(e), exit_code=127, code="unknown_executor")
        return RunResult(ok=False, state=tracker.state, run_id=run_id, executor=executor, exit_code=127, error=err.to_info())

    plan = load_plan_ref(plan_ref, cwd=workdir)
    owns_session = session is None
    if session is None:
        session = await RunSession.open(
            context=ctx,
            settings=cfg,
            session_info=session_info_for(plan, command=command, cwd=workdir),
            headless=headless,
            tunnel=tunnel,
            tunnel_path=tunnel_path,
            stream=stream,
            interactive=interactive,
        )
    session.table.add_listener(tracker.on_outstanding)

    text = prompt or orchestrator_prompt(plan, executor=spec.name if executor else "")
    proc = AgentProcess(
        spec.build_argv(model=model),
        cwd=workdir,
        env=_child_env(session, spec),
        label=role or spec.name,
        inactivity_s=cfg.timeouts.inactivity_s,
        initial_inactivity_s=cfg.timeouts.initial_inactivity_s,
        max_line_bytes=cfg.max_line_bytes,
    )
    parser = spec.create_parser()
    exit_code: Optional[int] = None
    sig: Optional[int] = None
    error: Optional[SubprocessFailure] = None
    remove_cleanup = None

    try:
        try:
            await proc.spawn()
        except SubprocessFailure as e:
            error = e
            exit_code = e.exit_code
            session.event("failure_report", summary=e.message, details=f"executor: {spec.name}")
            return _finish(session, tracker, spec, run_id, started, exit_code, sig, parser, error)

        remove_cleanup = signals.register_cleanup(proc.kill_now)
        tracker.set("streaming")
        session.event(
            "agent_session_start",
            executor=spec.name,
            run_id=run_id,
            mode=mode,
            plan_id=plan.plan_id,
            role=role,
            pid=proc.pid,
        )
        if not ctx.active and session.kind != "tunnel":
            session.event(
                "workspace_info",
                workspace_path=str(git_root(workdir) or workdir),
                plan_id=plan.plan_id,
                plan_title=plan.title,
                git_remote=git_remote(workdir),
            )

        guard = proc.guard
        session.router.set_guard(guard, encode_input=spec.encode_input)
        first = await guard.write(spec.encode_input(text))
        if not first.ok:
            logger.warning("could not deliver the initial prompt: %s", first.error, extra={"run_id": run_id})
        if not spec.supports_followup_input:
            # Single-prompt executors read stdin to EOF.
            await guard.close("single prompt")

        async def on_stdout(line: str) -> None:
            try:
                messages: List[Any] = parser.parse_line(line)
            except Exception:
                logger.debug("unparseable agent line", extra={"run_id": run_id}, exc_info=True)
                messages = [OutputChunk(stream="stdout", data=line)]
            for m in messages:
                session.emit(m)
            if parser.seen_result and not guard.is_closed():
                # The agent is done talking; stop accepting input before closing stdin.
                session.set_input_handler(None)
                await guard.close("result received")

        async def on_stderr(line: str) -> None:
            session.emit(OutputChunk(stream="stderr", data=line))

        await proc.stream(on_stdout, on_stderr)
        exit_code, sig = await proc.wait()

        tracker.set("completing")
        session.set_input_handler(None)
        await guard.close("agent exited")

        if proc.timed_out:
            error = SubprocessFailure(
                f"{spec.name} produced no output for too long",
                exit_code=exit_code,
                signal=sig,
                code="inactivity_timeout",
            )
        elif exit_code != 0:
            error = SubprocessFailure(f"{spec.name} exited with code {exit_code}", exit_code=exit_code, signal=sig)
            session.event("failure_report", summary=error.message)
        return _finish(session, tracker, spec, run_id, started, exit_code, sig, parser, error)
    finally:
        if remove_cleanup is not None:
            remove_cleanup()
        await proc.terminate()
        if owns_session:
            await session.close()
        else:
            session.set_input_handler(session.router)
            session.router.set_guard(None)


def _child_env(session: RunSession, spec: ExecutorSpec) -> Dict[str, str]:
    env = session.child_env()
    for k, v in spec.env.items():
        if v == "":
            env.pop(k, None)
        else:
            env[k] = v
    return env


def _finish(
    session: RunSession,
    tracker: _RunTracker,
    spec: ExecutorSpec,
    run_id: str,
    started: float,
    exit_code: Optional[int],
    sig: Optional[int],
    parser: Any,
    error: Optional[SubprocessFailure],
) -> RunResult:
    ok = error is None and exit_code == 0
    duration = elapsed_ms(started)
    tracker.set("completing")
    session.event(
        "agent_session_end",
        run_id=run_id,
        success=ok,
        exit_code=exit_code,
        duration_ms=duration,
        summary=(error.message if error is not None else ""),
    )
    tracker.set("done" if ok else "failed")
    return RunResult(
        ok=ok,
        state=tracker.state,
        run_id=run_id,
        executor=spec.name,
        exit_code=exit_code,
        signal=sig,
        final_message=parser.final_message,
        seen_result=parser.seen_result,
        duration_ms=duration,
        tunnel_socket=session.tunnel_socket,
        error=error.to_info() if error is not None else None,
    )
