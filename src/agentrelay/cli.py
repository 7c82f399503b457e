from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path
from typing import Any, List, Optional

from . import __version__
from .contracts.v1.message import PromptChoice
from .errors import PromptError
from .kernel.context import OUTPUT_SOCKET_ENV, get_tunnel_context
from .kernel.executors import detect_executor, list_executors
from .kernel.prompts import prompt_checkbox, prompt_confirm, prompt_input, prompt_select
from .kernel.settings import Settings, load_settings
from .orchestrator.subagent import ROLES
from .util.obslog import setup_root_json_logging

SPAWN_ERROR_CODES = ("unknown_executor", "spawn_failed")


def _print_json(obj: Any) -> None:
    print(json.dumps(obj, ensure_ascii=False, indent=2))


def _settings(args: argparse.Namespace) -> Settings:
    s = load_settings()
    level = str(getattr(args, "log_level", "") or "").strip() or s.log_level
    setup_root_json_logging(component=f"cli.{getattr(args, 'cmd', '') or 'main'}", level=level)
    return s


def _exit_code(ok: bool, error_code: str, exit_code: Optional[int]) -> int:
    if ok:
        return 0
    if error_code in SPAWN_ERROR_CODES:
        return 127
    return int(exit_code) if exit_code else 1


def _read_prompt(args: argparse.Namespace) -> str:
    if args.prompt and args.prompt_file:
        raise ValueError("use either --prompt or --prompt-file, not both")
    if args.prompt_file:
        return Path(args.prompt_file).expanduser().read_text(encoding="utf-8")
    return str(args.prompt or "")


def cmd_run(args: argparse.Namespace) -> int:
    from .orchestrator import signals
    from .orchestrator.run import run_agent

    settings = _settings(args)
    try:
        prompt = _read_prompt(args)
    except (OSError, ValueError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 1

    signals.install_signal_handlers()
    try:
        result = asyncio.run(
            run_agent(
                args.plan_ref,
                executor=args.executor,
                model=args.model,
                prompt=prompt,
                cwd=Path(args.cwd) if args.cwd else None,
                settings=settings,
                headless=True if args.headless else None,
                tunnel=False if args.no_tunnel else None,
            )
        )
    finally:
        signals.restore_signal_handlers()

    if args.json:
        _print_json(result.model_dump())
    elif not result.ok and result.error is not None:
        print(f"error: {result.error.message}", file=sys.stderr)
    return _exit_code(result.ok, result.error.code if result.error else "", result.exit_code)


def cmd_subagent(args: argparse.Namespace) -> int:
    from .orchestrator import signals
    from .orchestrator.subagent import resolve_subagent_input, run_subagent

    settings = _settings(args)
    try:
        instructions = resolve_subagent_input(args.input, args.input_file)
    except (OSError, ValueError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 1

    signals.install_signal_handlers()
    try:
        result = asyncio.run(
            run_subagent(
                args.role,
                args.plan_ref,
                executor=args.executor,
                model=args.model,
                input_text=instructions,
                output_file=args.output_file,
                settings=settings,
            )
        )
    finally:
        signals.restore_signal_handlers()

    if not result.ok:
        msg = result.error.message if result.error else f"{args.role} failed"
        print(f"FAILED: {msg}", file=sys.stderr)
    return _exit_code(result.ok, result.error.code if result.error else "", result.exit_code)


def _parse_choice(raw: str) -> PromptChoice:
    name, sep, value = raw.partition("=")
    return PromptChoice(name=name.strip(), value=value.strip() if sep else name.strip())


def _parse_default(kind: str, raw: Optional[str]) -> Any:
    if raw is None:
        return None
    if kind == "confirm":
        return raw.strip().lower() in ("y", "yes", "true", "1")
    return raw


async def _ask(args: argparse.Namespace, settings: Settings) -> Any:
    from .orchestrator.session import RunSession

    timeout_ms = int(float(args.timeout) * 1000) if args.timeout else None
    default = _parse_default(args.type, args.default)
    choices = [_parse_choice(c) for c in (args.choice or [])]
    session = await RunSession.open(settings=settings, tunnel=False, stream=sys.stderr)
    try:
        if args.type == "confirm":
            return await prompt_confirm(session, args.message, default=default, timeout_ms=timeout_ms)
        if args.type == "select":
            return await prompt_select(session, args.message, choices, default=default, timeout_ms=timeout_ms)
        if args.type == "checkbox":
            return await prompt_checkbox(session, args.message, choices, timeout_ms=timeout_ms)
        return await prompt_input(session, args.message, default=default, timeout_ms=timeout_ms)
    finally:
        await session.close()


def cmd_ask(args: argparse.Namespace) -> int:
    settings = _settings(args)
    if args.type in ("select", "checkbox") and not args.choice:
        print("error: --choice is required for select/checkbox prompts", file=sys.stderr)
        return 1
    try:
        value = asyncio.run(_ask(args, settings))
    except PromptError as e:
        print(f"error: {e.message}", file=sys.stderr)
        return 1
    print(json.dumps(value, ensure_ascii=False))
    return 0


def cmd_monitor(args: argparse.Namespace) -> int:
    from .ports.monitor import run_monitor

    settings = _settings(args)
    path = str(args.socket or os.environ.get(OUTPUT_SOCKET_ENV) or "").strip()
    if not path:
        print(f"error: no socket given and {OUTPUT_SOCKET_ENV} is not set", file=sys.stderr)
        return 1
    try:
        return asyncio.run(run_monitor(path, max_line_bytes=settings.max_line_bytes))
    except KeyboardInterrupt:
        return 130


def cmd_gui(args: argparse.Namespace) -> int:
    from .ports.web.main import serve

    _settings(args)
    return serve(host=str(args.host), port=int(args.port), log_level=str(args.uvicorn_log_level))


def cmd_executors(args: argparse.Namespace) -> int:
    settings = _settings(args)
    items: List[Any] = []
    for spec in list_executors(settings.executors):
        path = detect_executor(spec)
        d = spec.to_dict()
        d.update({"available": path is not None, "path": path or "", "default": spec.name == settings.default_executor})
        items.append(d)
    _print_json({"ok": True, "result": {"executors": items, "tunnel_active": get_tunnel_context().active}})
    return 0


def cmd_version(_: argparse.Namespace) -> int:
    print(__version__)
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="agentrelay", description="Run coding agents with live, multiplexed observation")
    p.add_argument("--log-level", default="", help="Diagnostic log level (default: settings or WARNING)")
    sub = p.add_subparsers(dest="cmd", required=True)

    p_run = sub.add_parser("run", help="Run the orchestrating agent against a plan")
    p_run.add_argument("plan_ref", help="Plan file or id")
    p_run.add_argument("-x", "--executor", default="", help="Executor (default: settings executors.default)")
    p_run.add_argument("--model", default="", help="Model override")
    p_run.add_argument("--prompt", default="", help="Prompt text (default: orchestrator instructions)")
    p_run.add_argument("--prompt-file", default="", help="Read the prompt from a file")
    p_run.add_argument("--headless", action="store_true", help="Mirror the run to a GUI over WebSocket")
    p_run.add_argument("--no-tunnel", action="store_true", help="Do not open a tunnel socket")
    p_run.add_argument("--cwd", default="", help="Working directory for the agent")
    p_run.add_argument("--json", action="store_true", help="Print the run result as JSON")
    p_run.set_defaults(func=cmd_run)

    p_sub = sub.add_parser("subagent", help="Run a subagent; prints only its final report")
    p_sub.add_argument("role", choices=list(ROLES), help="Subagent role")
    p_sub.add_argument("plan_ref", help="Plan file or id")
    p_sub.add_argument("-x", "--executor", default="", help="Executor (default: settings executors.default)")
    p_sub.add_argument("--model", default="", help="Model override")
    p_sub.add_argument("--input", default="", help="Instructions from the orchestrator")
    p_sub.add_argument("--input-file", default="", help="Read instructions from a file ('-' for stdin)")
    p_sub.add_argument("--output-file", default="", help="Also write the final report to this file")
    p_sub.set_defaults(func=cmd_subagent)

    p_ask = sub.add_parser("ask", help="Ask the user a question through the current run")
    p_ask.add_argument("message", help="Question text")
    p_ask.add_argument("--type", default="input", choices=["input", "confirm", "select", "checkbox"], help="Prompt kind")
    p_ask.add_argument("--choice", action="append", default=[], help="Choice as name or name=value (repeatable)")
    p_ask.add_argument("--default", default=None, help="Default answer")
    p_ask.add_argument("--timeout", type=float, default=0.0, help="Seconds to wait (default: no limit)")
    p_ask.set_defaults(func=cmd_ask)

    p_mon = sub.add_parser("monitor", help="Observe a run's tunnel and send input to it")
    p_mon.add_argument("socket", nargs="?", default="", help=f"Tunnel socket (default: ${OUTPUT_SOCKET_ENV})")
    p_mon.set_defaults(func=cmd_monitor)

    p_gui = sub.add_parser("gui", help="Run the GUI-side listener for headless runs")
    p_gui.add_argument("--host", default="127.0.0.1", help="Bind host (default: 127.0.0.1)")
    p_gui.add_argument("--port", type=int, default=8123, help="Bind port (default: 8123)")
    p_gui.add_argument("--uvicorn-log-level", default="info", help="Uvicorn log level (default: info)")
    p_gui.set_defaults(func=cmd_gui)

    p_exec = sub.add_parser("executors", help="List executors and whether they are installed")
    p_exec.set_defaults(func=cmd_executors)

    p_ver = sub.add_parser("version", help="Show version")
    p_ver.set_defaults(func=cmd_version)

    return p


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
