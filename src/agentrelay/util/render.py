from __future__ import annotations

import json
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel

from .time import clock_hms


def _header(title: str, ts: str = "") -> str:
    return f"### {title} [{clock_hms(ts)}]"


def _value(v: Any) -> str:
    if isinstance(v, str):
        return v
    try:
        return json.dumps(v, ensure_ascii=False)
    except Exception:
        return str(v)


def _session_start(p: Dict[str, Any], ts: str) -> str:
    bits = [f"executor={p.get('executor') or '?'}"]
    if p.get("role"):
        bits.append(f"role={p['role']}")
    if p.get("plan_id"):
        bits.append(f"plan={p['plan_id']}")
    return _header("Starting", ts) + "\n" + " ".join(bits)


def _session_end(p: Dict[str, Any], ts: str) -> str:
    status = "ok" if p.get("success") else f"failed (exit {p.get('exit_code')})"
    return _header("Done", ts) + f"\n{status}, {int(p.get('duration_ms') or 0) // 1000}s"


def _status(p: Dict[str, Any], ts: str) -> str:
    detail = str(p.get("detail") or "")
    return f"### Status: {p.get('status')} [{clock_hms(ts)}]" + (f"\n{detail}" if detail else "")


def _todo(p: Dict[str, Any], ts: str) -> str:
    marks = {"completed": "[x]", "in_progress": "[>]"}
    lines = [f"{marks.get(str(i.get('status')), '[ ]')} {i.get('label')}" for i in (p.get("items") or []) if isinstance(i, dict)]
    return _header("Todo", ts) + "\n" + "\n".join(lines)


def _summary(p: Dict[str, Any], ts: str) -> str:
    parts = []
    if p.get("cost_usd") is not None:
        parts.append(f"Cost: ${float(p['cost_usd']):.2f}")
    if p.get("duration_ms") is not None:
        parts.append(f"{round(int(p['duration_ms']) / 1000)}s")
    if p.get("turns") is not None:
        parts.append(f"{p['turns']} turns")
    return _header("Summary", ts) + ("\n" + ", ".join(parts) if parts else "")


_STRUCTURED: Dict[str, Callable[[Dict[str, Any], str], Optional[str]]] = {
    "agent_session_start": _session_start,
    "agent_session_end": _session_end,
    "llm_status": _status,
    "llm_thinking": lambda p, ts: _header("Thinking", ts) + "\n" + str(p.get("text") or ""),
    "llm_response": lambda p, ts: _header("Model Response", ts) + "\n" + str(p.get("text") or ""),
    "llm_tool_use": lambda p, ts: _header(f"Invoke Tool: {p.get('tool_name')}", ts)
    + ("\n" + str(p.get("input_summary")) if p.get("input_summary") else ""),
    "llm_tool_result": lambda p, ts: _header(f"Tool Result: {p.get('tool_name') or p.get('tool_use_id')}", ts)
    + ("\n" + str(p.get("summary")) if p.get("summary") else ""),
    "file_write": lambda p, ts: _header("Write", ts) + f"\n{p.get('path')} ({p.get('line_count')} lines)",
    "file_edit": lambda p, ts: _header("Edit", ts) + f"\n{p.get('path')}" + ("\n" + str(p.get("diff")) if p.get("diff") else ""),
    "todo_update": _todo,
    "command_exec": lambda p, ts: _header("Run", ts) + f"\n$ {p.get('command')}",
    "command_result": lambda p, ts: _header(f"Exit {p.get('exit_code')}", ts)
    + ("\n" + str(p.get("output")) if p.get("output") else ""),
    "token_usage": lambda p, ts: f"tokens: in={p.get('input_tokens')} out={p.get('output_tokens')} cached={p.get('cached_input_tokens')}",
    "execution_summary": _summary,
    "failure_report": lambda p, ts: _header("Failure", ts) + f"\n{p.get('summary')}" + (f"\n{p.get('details')}" if p.get("details") else ""),
    "user_terminal_input": lambda p, ts: f"> [{p.get('source')}] {p.get('content')}",
    "prompt_answered": lambda p, ts: f"answered ({p.get('source')}): {_value(p.get('value'))}",
    "input_delivery_failed": lambda p, ts: f"input not delivered ({p.get('reason')}): {p.get('content')}",
    "subagent_result": lambda p, ts: f"subagent {p.get('role')} finished ({p.get('bytes')} bytes)",
    "workspace_info": lambda p, ts: f"workspace: {p.get('workspace_path')}" + (f" ({p.get('git_remote')})" if p.get("git_remote") else ""),
}


def format_message(msg: BaseModel) -> Optional[str]:
    """Human-readable text for a Message, or None when nothing should be shown."""
    t = getattr(msg, "type", "")
    if t == "log":
        level = getattr(msg, "level", "log")
        text = " ".join(getattr(msg, "args", []) or [])
        if level == "warn":
            return f"warning: {text}"
        if level == "error":
            return f"error: {text}"
        return text
    if t == "stream":
        return str(getattr(msg, "data", "")).rstrip("\n")
    if t == "structured":
        kind = str(getattr(msg, "kind", ""))
        payload = getattr(msg, "payload", {}) or {}
        ts = str(getattr(msg, "ts", ""))
        fn = _STRUCTURED.get(kind)
        if fn is None:
            return f"[{kind}] {_value(payload)}"
        try:
            return fn(payload, ts)
        except Exception:
            return f"[{kind}] {_value(payload)}"
    if t == "prompt_request":
        opts = getattr(msg, "options")
        lines = [f"? {opts.message}"]
        for i, ch in enumerate(opts.choices, 1):
            mark = " (x)" if ch.checked else ""
            desc = f" - {ch.description}" if ch.description else ""
            lines.append(f"  {i}. {ch.name}{mark}{desc}")
        return "\n".join(lines)
    if t == "user_input":
        return f"> {getattr(msg, 'content', '')}"
    return None
