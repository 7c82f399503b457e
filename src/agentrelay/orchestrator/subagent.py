"""Subagent entry point.

A subagent runs one narrowly-scoped agent (implementer, tester, tdd-tests,
verifier). All of its activity travels through the inherited tunnel (or the
local terminal on stderr); stdout carries nothing but the final report, so
the calling orchestrator captures exactly one value.
"""
from __future__ import annotations

import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import Dict, List, Optional, Sequence, TextIO

from ..contracts.v1.result import SubagentResult
from ..errors import SubprocessFailure
from ..kernel.context import TunnelContext, get_tunnel_context
from ..kernel.settings import Settings, load_settings
from ..kernel.workspace import PlanRef, load_plan_ref
from ..util.fs import atomic_write_text
from .run import run_agent, session_info_for
from .session import RunSession

logger = logging.getLogger(__name__)

ROLES = ("implementer", "tester", "tdd-tests", "verifier")

_ROLE_BRIEFS: Dict[str, str] = {
    "implementer": (
        "You are the implementer. Make the code changes the orchestrator asks for, "
        "keep them focused, and run the relevant checks before you finish."
    ),
    "tester": (
        "You are the tester. Write or extend tests for the implemented functionality, "
        "run them, and fix failures in the tests or report failures in the code."
    ),
    "tdd-tests": (
        "You are writing tests first. Add failing tests that pin down the requested "
        "behavior; do not implement the behavior itself."
    ),
    "verifier": (
        "You are the verifier. Run the test suite and review the changes against the "
        "plan. Report problems; do not fix them."
    ),
}

_REPORT_RULES = (
    "When you are done, reply with a short report as your final message. "
    "If you could not complete the work, start that report with 'FAILED:' and say why."
)


def role_prompt(role: str, plan: PlanRef, instructions: str = "") -> str:
    parts: List[str] = [
        f"# {role.capitalize()} for plan {plan.plan_id}" + (f": {plan.title}" if plan.title else ""),
        _ROLE_BRIEFS[role],
        f"Plan reference: {plan.ref}" + (f" ({plan.path})" if plan.path else ""),
    ]
    if instructions.strip():
        parts.append("## Instructions from the orchestrator\n\n" + instructions.strip())
    parts.append(_REPORT_RULES)
    return "\n\n".join(parts) + "\n"


def resolve_subagent_input(
    input_text: Optional[str],
    input_file: Optional[str],
    *,
    stdin: Optional[TextIO] = None,
) -> str:
    """--input, --input-file (path or '-'), or piped stdin; raises ValueError on misuse."""
    src = stdin or sys.stdin
    if input_text and input_file:
        raise ValueError("use either --input or --input-file, not both")
    if input_text:
        return input_text
    if input_file:
        if input_file == "-":
            if _isatty(src):
                raise ValueError("--input-file - needs input on stdin")
            text = src.read()
            if not text.strip():
                raise ValueError("no input received on stdin")
            return text
        return Path(input_file).expanduser().read_text(encoding="utf-8")
    if src is not None and not _isatty(src):
        try:
            text = src.read()
        except (OSError, ValueError):
            return ""
        return text if text.strip() else ""
    return ""


def _isatty(stream: Optional[TextIO]) -> bool:
    try:
        return bool(stream is not None and stream.isatty())
    except Exception:
        return False


async def run_subagent(
    role: str,
    plan_ref: str,
    *,
    executor: str = "",
    model: str = "",
    input_text: str = "",
    output_file: str = "",
    cwd: Optional[Path] = None,
    settings: Optional[Settings] = None,
    context: Optional[TunnelContext] = None,
    out: Optional[TextIO] = None,
    log_stream: Optional[TextIO] = None,
) -> SubagentResult:
    if role not in ROLES:
        raise ValueError(f"unknown subagent role: {role}")
    cfg = settings or load_settings()
    ctx = context or get_tunnel_context()
    workdir = Path(cwd or Path.cwd()).resolve()
    plan = load_plan_ref(plan_ref, cwd=workdir)

    session = await RunSession.open(
        context=ctx,
        settings=cfg,
        session_info=session_info_for(plan, command=f"subagent {role}", cwd=workdir),
        # stdout is reserved for the final report.
        stream=log_stream or sys.stderr,
        interactive=False,
    )
    try:
        result = await run_agent(
            plan_ref,
            executor=executor,
            model=model,
            prompt=role_prompt(role, plan, input_text),
            cwd=workdir,
            settings=cfg,
            context=ctx,
            role=role,
            mode="subagent",
            command=f"subagent {role}",
            session=session,
        )
        final = result.final_message
        failed = result.error is not None and result.error.code in ("unknown_executor", "spawn_failed")
        timed_out = result.error is not None and result.error.code == "inactivity_timeout"
        if failed or (timed_out and not result.seen_result):
            return _failed(session, role, result.exit_code or 1, result.error.message if result.error else "")
        if result.exit_code != 0 and not result.seen_result:
            return _failed(session, role, result.exit_code or 1, f"subagent exited with code {result.exit_code}")
        if not final:
            return _failed(session, role, result.exit_code or 1, "no final agent message found")

        if output_file:
            atomic_write_text(Path(output_file).expanduser(), final)
        stream = out or sys.stdout
        # One write: the caller reads this as a single value.
        stream.write(final if final.endswith("\n") else final + "\n")
        stream.flush()
        session.event("subagent_result", role=role, bytes=len(final.encode("utf-8")), ok=True)
        session.log(f"Subagent produced {len(final)} bytes of output")
        return SubagentResult(ok=True, role=role, result=final, exit_code=0)
    finally:
        await session.close()


def _failed(session: RunSession, role: str, exit_code: int, message: str) -> SubagentResult:
    err = SubprocessFailure(message or f"{role} failed", exit_code=exit_code)
    session.event("subagent_result", role=role, bytes=0, ok=False)
    session.event("failure_report", summary=f"{role} subagent failed", details=err.message)
    return SubagentResult(ok=False, role=role, exit_code=exit_code or 1, error=err.to_info())


def subagent_argv(
    role: str,
    plan_ref: str,
    *,
    executor: str = "",
    model: str = "",
    program: Optional[Sequence[str]] = None,
    input_from_stdin: bool = True,
) -> List[str]:
    argv = list(program) if program else [sys.executable, "-m", "agentrelay"]
    argv += ["subagent", role, plan_ref]
    if executor:
        argv += ["-x", executor]
    if model:
        argv += ["--model", model]
    if input_from_stdin:
        argv += ["--input-file", "-"]
    return argv


async def invoke_subagent(
    role: str,
    plan_ref: str,
    *,
    executor: str = "",
    model: str = "",
    input_text: str = "",
    env: Optional[Dict[str, str]] = None,
    cwd: Optional[Path] = None,
    program: Optional[Sequence[str]] = None,
    timeout: Optional[float] = None,
) -> SubagentResult:
    """Run a subagent as a child process and capture its stdout as one value.

    The child inherits OUTPUT_SOCKET_PATH from `env` (or this process), so
    its activity reaches the existing observers instead of this caller.
    """
    argv = subagent_argv(
        role,
        plan_ref,
        executor=executor,
        model=model,
        program=program,
        input_from_stdin=bool((input_text or "").strip()),
    )
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            cwd=str(cwd) if cwd is not None else None,
            env=dict(os.environ if env is None else env),
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        err = SubprocessFailure(f"cannot start subagent: {e}", exit_code=127, code="spawn_failed")
        return SubagentResult(ok=False, role=role, exit_code=127, error=err.to_info())
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate((input_text or "").encode("utf-8")), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        err = SubprocessFailure("subagent timed out", exit_code=proc.returncode, code="timeout")
        return SubagentResult(ok=False, role=role, exit_code=proc.returncode or 1, error=err.to_info())
    code = int(proc.returncode or 0)
    result = stdout.decode("utf-8", errors="replace")
    if result.endswith("\n"):
        result = result[:-1]
    tail = "\n".join(stderr.decode("utf-8", errors="replace").splitlines()[-20:])
    if code != 0:
        err = SubprocessFailure(f"{role} subagent exited with code {code}", exit_code=code)
        return SubagentResult(ok=False, role=role, result=result, exit_code=code, stderr_tail=tail, error=err.to_info())
    return SubagentResult(ok=True, role=role, result=result, exit_code=0, stderr_tail=tail)
