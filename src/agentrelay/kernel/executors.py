"""Executor table and stdout parsers for agent CLIs."""
from __future__ import annotations

import json
import shutil
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Literal, Optional

from ..contracts.v1.message import Message, OutputChunk
from ..contracts.v1.structured import structured_event


StdinFormat = Literal["stream-json", "text"]
OutputFormat = Literal["claude", "codex", "text"]


@dataclass
class ExecutorSpec:
    """How to launch one agent CLI and how to talk to it."""
    name: str
    display_name: str
    command: List[str]
    args: List[str] = field(default_factory=list)
    model: str = ""
    model_flag: str = "--model"
    stdin_format: StdinFormat = "stream-json"
    output_format: OutputFormat = "claude"
    # Trailing args placed after the model flag (e.g. codex's "-" = read prompt from stdin).
    tail_args: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)

    @property
    def supports_followup_input(self) -> bool:
        return self.stdin_format == "stream-json"

    def build_argv(self, *, model: str = "") -> List[str]:
        argv = list(self.command) + list(self.args)
        chosen = (model or self.model or "").strip()
        if chosen and self.model_flag:
            argv += [self.model_flag, chosen]
        return argv + list(self.tail_args)

    def encode_input(self, text: str) -> str:
        """One stdin payload for a prompt or a forwarded user message."""
        if self.stdin_format == "stream-json":
            msg = {
                "type": "user",
                "message": {"role": "user", "content": [{"type": "text", "text": text}]},
            }
            return json.dumps(msg, ensure_ascii=False) + "\n"
        return text if text.endswith("\n") else text + "\n"

    def create_parser(self) -> "StreamParser":
        if self.output_format == "claude":
            return ClaudeStreamParser()
        if self.output_format == "codex":
            return CodexStreamParser()
        return TextStreamParser()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "display_name": self.display_name,
            "command": list(self.command),
            "args": list(self.args),
            "model": self.model,
            "model_flag": self.model_flag,
            "stdin_format": self.stdin_format,
            "output_format": self.output_format,
            "tail_args": list(self.tail_args),
        }


# Known agent executors
KNOWN_EXECUTORS: Dict[str, ExecutorSpec] = {
    "claude-code": ExecutorSpec(
        name="claude-code",
        display_name="Claude Code",
        command=["claude"],
        args=[
            "--no-session-persistence",
            "--dangerously-skip-permissions",
            "--verbose",
            "--output-format",
            "stream-json",
            "--input-format",
            "stream-json",
        ],
        model="opus",
        stdin_format="stream-json",
        output_format="claude",
        env={"CLAUDECODE": "", "CLAUDE_BASH_MAINTAIN_PROJECT_WORKING_DIR": "true"},
    ),
    "codex-cli": ExecutorSpec(
        name="codex-cli",
        display_name="Codex CLI",
        command=["codex"],
        args=["exec", "--json", "--skip-git-repo-check"],
        model="",
        stdin_format="text",
        output_format="codex",
        tail_args=["-"],
    ),
}

EXECUTOR_ALIASES = {"claude": "claude-code", "codex": "codex-cli"}


class UnknownExecutor(ValueError):
    pass


def _from_settings(name: str, raw: Dict[str, Any], base: Optional[ExecutorSpec]) -> ExecutorSpec:
    def _list(key: str, fallback: List[str]) -> List[str]:
        v = raw.get(key)
        if isinstance(v, str):
            return [v]
        if isinstance(v, list):
            return [str(x) for x in v]
        return list(fallback)

    spec = base or ExecutorSpec(name=name, display_name=name, command=[], output_format="text", stdin_format="text")
    stdin_format = str(raw.get("stdin_format") or spec.stdin_format)
    output_format = str(raw.get("output_format") or spec.output_format)
    env = raw.get("env") if isinstance(raw.get("env"), dict) else spec.env
    return replace(
        spec,
        name=name,
        display_name=str(raw.get("display_name") or spec.display_name or name),
        command=_list("command", spec.command),
        args=_list("args", spec.args),
        model=str(raw.get("model") if raw.get("model") is not None else spec.model),
        model_flag=str(raw.get("model_flag") if raw.get("model_flag") is not None else spec.model_flag),
        stdin_format=stdin_format if stdin_format in ("stream-json", "text") else "text",  # type: ignore[arg-type]
        output_format=output_format if output_format in ("claude", "codex", "text") else "text",  # type: ignore[arg-type]
        tail_args=_list("tail_args", spec.tail_args),
        env={str(k): str(v) for k, v in dict(env).items()},
    )


def resolve_executor(name: str, overrides: Optional[Dict[str, Dict[str, Any]]] = None) -> ExecutorSpec:
    """Look up an executor, applying settings.yaml overrides or definitions."""
    key = EXECUTOR_ALIASES.get(str(name or "").strip(), str(name or "").strip())
    raw = (overrides or {}).get(key)
    base = KNOWN_EXECUTORS.get(key)
    if raw is not None:
        spec = _from_settings(key, raw, base)
        if not spec.command:
            raise UnknownExecutor(f"executor {key!r} has no command")
        return spec
    if base is None:
        raise UnknownExecutor(f"unknown executor: {name}")
    return replace(base)


def list_executors(overrides: Optional[Dict[str, Dict[str, Any]]] = None) -> List[ExecutorSpec]:
    names = list(KNOWN_EXECUTORS)
    for n in (overrides or {}):
        if n not in names:
            names.append(n)
    out: List[ExecutorSpec] = []
    for n in names:
        try:
            out.append(resolve_executor(n, overrides))
        except UnknownExecutor:
            continue
    return out


def detect_executor(spec: ExecutorSpec) -> Optional[str]:
    """Path of the executor binary, or None when it is not installed."""
    if not spec.command:
        return None
    return shutil.which(spec.command[0])


# ---------------------------------------------------------------------------
# Stream parsers
# ---------------------------------------------------------------------------


def _truncate(text: str, max_lines: int = 15, max_chars: int = 4000) -> str:
    s = str(text or "")
    lines = s.split("\n")
    if len(lines) > max_lines:
        s = "\n".join(lines[:max_lines]) + f"\n... ({len(lines) - max_lines} more lines)"
    if len(s) > max_chars:
        s = s[:max_chars] + "..."
    return s


def _summarize_input(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return _truncate(value, max_lines=5, max_chars=500)
    try:
        return _truncate(json.dumps(value, ensure_ascii=False), max_lines=5, max_chars=500)
    except Exception:
        return ""


class StreamParser:
    """Turns one stdout line into Messages; remembers the final answer."""

    def __init__(self) -> None:
        self.final_message = ""
        self.seen_result = False

    def parse_line(self, line: str) -> List[Message]:
        raise NotImplementedError


class TextStreamParser(StreamParser):
    def parse_line(self, line: str) -> List[Message]:
        if line.strip():
            self.final_message = line.strip()
        return [OutputChunk(stream="stdout", data=line)]


class ClaudeStreamParser(StreamParser):
    """Claude Code `--output-format stream-json`."""

    def __init__(self) -> None:
        super().__init__()
        self._tool_names: Dict[str, str] = {}
        self._last_text = ""

    def parse_line(self, line: str) -> List[Message]:
        s = line.strip()
        if not s:
            return []
        if s.startswith("[DEBUG]"):
            return []
        try:
            obj = json.loads(s)
        except ValueError:
            return [OutputChunk(stream="stdout", data=line)]
        if not isinstance(obj, dict):
            return [OutputChunk(stream="stdout", data=line)]

        t = str(obj.get("type") or "")
        sub = str(obj.get("subtype") or "")
        if t == "result":
            return self._on_result(obj, sub)
        if t == "system":
            return self._on_system(obj, sub)
        if t in ("assistant", "user"):
            return self._on_content(obj, t)
        return []

    def _on_result(self, obj: Dict[str, Any], sub: str) -> List[Message]:
        self.seen_result = True
        result = obj.get("result")
        if isinstance(result, str) and result.strip():
            self.final_message = result.strip()
        elif self._last_text:
            self.final_message = self._last_text
        out: List[Message] = [
            structured_event(
                "execution_summary",
                session_id=str(obj.get("session_id") or ""),
                subtype=sub,
                cost_usd=obj.get("total_cost_usd"),
                duration_ms=obj.get("duration_ms"),
                turns=obj.get("num_turns"),
            )
        ]
        usage = obj.get("usage")
        if isinstance(usage, dict):
            out.append(
                structured_event(
                    "token_usage",
                    input_tokens=int(usage.get("input_tokens") or 0),
                    output_tokens=int(usage.get("output_tokens") or 0),
                    cached_input_tokens=int(usage.get("cache_read_input_tokens") or 0),
                )
            )
        if obj.get("is_error") or (sub and sub not in ("success", "error_max_turns")):
            out.append(structured_event("failure_report", summary=f"agent finished with {sub or 'error'}", details=_truncate(str(result or ""))))
        return out

    def _on_system(self, obj: Dict[str, Any], sub: str) -> List[Message]:
        if sub == "init":
            tools = obj.get("tools") if isinstance(obj.get("tools"), list) else []
            return [
                structured_event(
                    "llm_status",
                    status="session_started",
                    detail=f"Session ID: {obj.get('session_id') or ''}",
                    tools=[str(x) for x in tools],
                    model=str(obj.get("model") or ""),
                )
            ]
        if sub == "status":
            status = obj.get("status")
            if status is None:
                return []
            return [structured_event("llm_status", status=str(status))]
        if sub == "task_notification":
            return [
                structured_event(
                    "llm_status",
                    status=str(obj.get("status") or "task"),
                    detail=str(obj.get("summary") or ""),
                    task_id=str(obj.get("task_id") or ""),
                )
            ]
        if sub == "compact_boundary":
            meta = obj.get("compact_metadata") if isinstance(obj.get("compact_metadata"), dict) else {}
            return [
                structured_event(
                    "llm_status",
                    status="compacting",
                    detail=f"{meta.get('trigger') or ''} ({meta.get('pre_tokens') or 0} tokens)",
                )
            ]
        return []

    def _on_content(self, obj: Dict[str, Any], role: str) -> List[Message]:
        msg = obj.get("message") if isinstance(obj.get("message"), dict) else {}
        content = msg.get("content")
        if isinstance(content, str):
            content = [content]
        if not isinstance(content, list):
            return []
        out: List[Message] = []
        for item in content:
            if isinstance(item, str):
                if role == "assistant" and item.strip():
                    self._last_text = item.strip()
                    out.append(structured_event("llm_response", text=item))
                continue
            if not isinstance(item, dict):
                continue
            ct = str(item.get("type") or "")
            if ct == "thinking":
                out.append(structured_event("llm_thinking", text=str(item.get("thinking") or "")))
            elif ct == "text":
                text = str(item.get("text") or "")
                if role == "assistant":
                    if text.strip():
                        self._last_text = text.strip()
                    out.append(structured_event("llm_response", text=text))
            elif ct == "tool_use":
                out.extend(self._on_tool_use(item))
            elif ct == "tool_result":
                out.append(self._on_tool_result(item))
        return out

    def _on_tool_use(self, item: Dict[str, Any]) -> List[Message]:
        name = str(item.get("name") or "")
        tool_id = str(item.get("id") or "")
        if tool_id:
            self._tool_names[tool_id] = name
        inp = item.get("input") if isinstance(item.get("input"), dict) else {}
        if name == "Write" and "file_path" in inp:
            text = str(inp.get("content") or "")
            return [structured_event("file_write", path=str(inp["file_path"]), line_count=len(text.split("\n")))]
        if name in ("Edit", "MultiEdit") and "file_path" in inp:
            old, new = str(inp.get("old_string") or ""), str(inp.get("new_string") or "")
            diff = "\n".join(["-" + x for x in old.split("\n") if old] + ["+" + x for x in new.split("\n") if new])
            return [structured_event("file_edit", path=str(inp["file_path"]), diff=_truncate(diff))]
        if name == "Bash" and "command" in inp:
            return [structured_event("command_exec", command=str(inp.get("command") or ""), tool_use_id=tool_id)]
        if name == "TodoWrite" and isinstance(inp.get("todos"), list):
            items = [
                {"label": str(t.get("content") or ""), "status": str(t.get("status") or "pending")}
                for t in inp["todos"]
                if isinstance(t, dict)
            ]
            return [structured_event("todo_update", items=items)]
        return [structured_event("llm_tool_use", tool_name=name, tool_use_id=tool_id, input_summary=_summarize_input(inp))]

    def _on_tool_result(self, item: Dict[str, Any]) -> Message:
        tool_id = str(item.get("tool_use_id") or "")
        content = item.get("content")
        if isinstance(content, list):
            parts = [str(c.get("text") or "") for c in content if isinstance(c, dict) and c.get("type") == "text"]
            text = "\n".join(parts)
        else:
            text = str(content or "")
        name = self._tool_names.get(tool_id, "")
        if name == "Bash":
            return structured_event(
                "command_result",
                output=_truncate(text),
                tool_use_id=tool_id,
                exit_code=1 if item.get("is_error") else 0,
            )
        return structured_event(
            "llm_tool_result",
            tool_name=name,
            tool_use_id=tool_id,
            summary=_truncate(text),
            is_error=bool(item.get("is_error")),
        )


class CodexStreamParser(StreamParser):
    """`codex exec --json` event lines."""

    def parse_line(self, line: str) -> List[Message]:
        s = line.strip()
        if not s:
            return []
        try:
            obj = json.loads(s)
        except ValueError:
            return [OutputChunk(stream="stdout", data=line)]
        if not isinstance(obj, dict):
            return [OutputChunk(stream="stdout", data=line)]

        t = str(obj.get("type") or "")
        if t == "thread.started":
            return [structured_event("llm_status", status="session_started", detail=f"Thread ID: {obj.get('thread_id') or ''}")]
        if t == "turn.started":
            return [structured_event("llm_status", status="turn_started")]
        if t == "turn.completed":
            self.seen_result = True
            usage = obj.get("usage") if isinstance(obj.get("usage"), dict) else {}
            return [
                structured_event(
                    "token_usage",
                    input_tokens=int(usage.get("input_tokens") or 0),
                    output_tokens=int(usage.get("output_tokens") or 0),
                    cached_input_tokens=int(usage.get("cached_input_tokens") or 0),
                )
            ]
        if t in ("turn.failed", "error"):
            err = obj.get("error") if isinstance(obj.get("error"), dict) else {}
            summary = str(err.get("message") or obj.get("message") or "codex reported an error")
            return [structured_event("failure_report", summary=summary)]
        if t in ("item.started", "item.completed"):
            item = obj.get("item") if isinstance(obj.get("item"), dict) else {}
            return self._on_item(item, completed=(t == "item.completed"))
        return []

    def _on_item(self, item: Dict[str, Any], *, completed: bool) -> List[Message]:
        it = str(item.get("type") or item.get("item_type") or "")
        if it == "agent_message" and completed:
            text = str(item.get("text") or "")
            if text.strip():
                self.final_message = text.strip()
            return [structured_event("llm_response", text=text)]
        if it == "reasoning" and completed:
            return [structured_event("llm_thinking", text=str(item.get("text") or ""))]
        if it == "command_execution":
            cmd = str(item.get("command") or "")
            if not completed:
                return [structured_event("command_exec", command=cmd)]
            return [
                structured_event(
                    "command_result",
                    command=cmd,
                    exit_code=item.get("exit_code"),
                    output=_truncate(str(item.get("aggregated_output") or "")),
                )
            ]
        if it == "file_change" and completed:
            changes = item.get("changes") if isinstance(item.get("changes"), list) else []
            out: List[Message] = []
            for ch in changes:
                if isinstance(ch, dict) and ch.get("path"):
                    out.append(structured_event("file_edit", path=str(ch["path"]), change=str(ch.get("kind") or "")))
            return out
        if it == "todo_list":
            items = item.get("items") if isinstance(item.get("items"), list) else []
            return [
                structured_event(
                    "todo_update",
                    items=[
                        {"label": str(x.get("text") or ""), "status": "completed" if x.get("completed") else "pending"}
                        for x in items
                        if isinstance(x, dict)
                    ],
                )
            ]
        return []
