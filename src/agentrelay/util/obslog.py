"""Diagnostic logging as JSON lines on stderr.

Only agentrelay's own diagnostics go here. Agent output and user-facing
warnings are rendered by the logger adapters, and stdout stays reserved for
command results (the subagent report, `--json` output).
"""
from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional, TextIO

# Correlation keys picked up from `logger.*(..., extra={...})`.
CORRELATION_KEYS = ("run_id", "conn_id", "request_id", "role", "executor", "session", "pid")


class JsonlFormatter(logging.Formatter):
    def __init__(self, *, component: str):
        super().__init__()
        self.component = str(component or "").strip() or "agentrelay"

    def _record_dict(self, record: logging.LogRecord) -> Dict[str, Any]:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        out: Dict[str, Any] = {
            "ts": created.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "component": self.component,
            "msg": record.getMessage(),
        }
        for key in CORRELATION_KEYS:
            value = record.__dict__.get(key)
            if value is None or str(value).strip() == "":
                continue
            out[key] = value if isinstance(value, (int, float)) else str(value).strip()
        if record.exc_info:
            out["exc"] = self.formatException(record.exc_info)
        return out

    def format(self, record: logging.LogRecord) -> str:
        try:
            return json.dumps(self._record_dict(record), ensure_ascii=False, default=str)
        except Exception:
            # Logging must not take the run down.
            return json.dumps({"component": self.component, "level": record.levelname, "msg": "(unformattable log record)"})


def parse_level(level: str, default: int = logging.WARNING) -> int:
    name = str(level or "").strip().upper()
    value = logging.getLevelName(name) if name else default
    return value if isinstance(value, int) else default


def setup_root_json_logging(
    *,
    component: str,
    level: str = "WARNING",
    stream: Optional[TextIO] = None,
    force: bool = False,
) -> logging.Handler:
    """Install one JSONL stderr handler on the root logger.

    Repeated calls retarget the installed handler (level, component), so every
    CLI command can call this unconditionally. `force=True` drops whatever
    handlers are present and starts over (tests use it with a StringIO).
    """
    root = logging.getLogger()
    lvl = parse_level(level)
    root.setLevel(lvl)

    if force:
        for h in list(root.handlers):
            root.removeHandler(h)

    for h in root.handlers:
        if isinstance(h.formatter, JsonlFormatter):
            h.setLevel(lvl)
            h.formatter.component = component
            return h

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setLevel(lvl)
    handler.setFormatter(JsonlFormatter(component=component))
    root.addHandler(handler)
    return handler
