from __future__ import annotations

from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


RunState = Literal["spawning", "streaming", "awaiting_input", "completing", "done", "failed"]


class ErrorInfo(BaseModel):
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid")


class RunResult(BaseModel):
    """Outcome of one agent run; failures are reported here, never raised."""

    v: int = 1
    ok: bool
    state: RunState
    run_id: str
    executor: str = ""
    exit_code: Optional[int] = None
    signal: Optional[int] = None
    final_message: str = ""
    seen_result: bool = False
    duration_ms: int = 0
    tunnel_socket: str = ""
    error: Optional[ErrorInfo] = None

    model_config = ConfigDict(extra="forbid")


class SubagentResult(BaseModel):
    v: int = 1
    ok: bool
    role: str
    result: str = ""
    exit_code: int = 0
    stderr_tail: str = ""
    error: Optional[ErrorInfo] = None

    model_config = ConfigDict(extra="forbid")
