from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from .message import StructuredEvent


StructuredKind = Literal[
    "agent_session_start",
    "agent_session_end",
    "llm_status",
    "llm_thinking",
    "llm_response",
    "llm_tool_use",
    "llm_tool_result",
    "file_write",
    "file_edit",
    "todo_update",
    "command_exec",
    "command_result",
    "token_usage",
    "execution_summary",
    "failure_report",
    "user_terminal_input",
    "prompt_answered",
    "input_delivery_failed",
    "subagent_result",
    "workspace_info",
]

InputSource = Literal["terminal", "tunnel", "gui", "observer"]


class AgentSessionStartData(BaseModel):
    executor: str
    run_id: str
    mode: str = ""
    plan_id: str = ""
    role: str = ""
    pid: Optional[int] = None

    model_config = ConfigDict(extra="allow")


class AgentSessionEndData(BaseModel):
    run_id: str
    success: bool
    exit_code: Optional[int] = None
    duration_ms: int = 0
    summary: str = ""

    model_config = ConfigDict(extra="allow")


class LlmStatusData(BaseModel):
    status: str
    detail: str = ""

    model_config = ConfigDict(extra="allow")


class LlmTextData(BaseModel):
    text: str

    model_config = ConfigDict(extra="allow")


class LlmToolUseData(BaseModel):
    tool_name: str
    tool_use_id: str = ""
    input_summary: str = ""

    model_config = ConfigDict(extra="allow")


class LlmToolResultData(BaseModel):
    tool_name: str = ""
    tool_use_id: str = ""
    summary: str = ""
    is_error: bool = False

    model_config = ConfigDict(extra="allow")


class FileWriteData(BaseModel):
    path: str
    line_count: int = 0

    model_config = ConfigDict(extra="allow")


class FileEditData(BaseModel):
    path: str
    diff: str = ""

    model_config = ConfigDict(extra="allow")


class TodoItem(BaseModel):
    label: str
    status: str = "pending"

    model_config = ConfigDict(extra="allow")


class TodoUpdateData(BaseModel):
    items: List[TodoItem] = Field(default_factory=list)

    model_config = ConfigDict(extra="allow")


class CommandExecData(BaseModel):
    command: str
    cwd: str = ""

    model_config = ConfigDict(extra="allow")


class CommandResultData(BaseModel):
    command: str = ""
    exit_code: Optional[int] = None
    output: str = ""

    model_config = ConfigDict(extra="allow")


class TokenUsageData(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0
    cached_input_tokens: int = 0

    model_config = ConfigDict(extra="allow")


class ExecutionSummaryData(BaseModel):
    session_id: str = ""
    subtype: str = ""
    cost_usd: Optional[float] = None
    duration_ms: Optional[int] = None
    turns: Optional[int] = None

    model_config = ConfigDict(extra="allow")


class FailureReportData(BaseModel):
    summary: str
    details: str = ""

    model_config = ConfigDict(extra="allow")


class UserInputEchoData(BaseModel):
    content: str
    source: InputSource
    origin: str = ""

    model_config = ConfigDict(extra="allow")


class PromptAnsweredData(BaseModel):
    request_id: str
    prompt_kind: str
    value: Any = None
    source: str

    model_config = ConfigDict(extra="allow")


class InputDeliveryFailedData(BaseModel):
    content: str
    reason: str
    origin: str = ""

    model_config = ConfigDict(extra="allow")


class SubagentResultData(BaseModel):
    role: str
    bytes: int = 0
    ok: bool = True

    model_config = ConfigDict(extra="allow")


class WorkspaceInfoData(BaseModel):
    workspace_path: str
    plan_id: str = ""
    plan_title: str = ""
    git_remote: str = ""

    model_config = ConfigDict(extra="allow")


_KIND_TO_MODEL = {
    "agent_session_start": AgentSessionStartData,
    "agent_session_end": AgentSessionEndData,
    "llm_status": LlmStatusData,
    "llm_thinking": LlmTextData,
    "llm_response": LlmTextData,
    "llm_tool_use": LlmToolUseData,
    "llm_tool_result": LlmToolResultData,
    "file_write": FileWriteData,
    "file_edit": FileEditData,
    "todo_update": TodoUpdateData,
    "command_exec": CommandExecData,
    "command_result": CommandResultData,
    "token_usage": TokenUsageData,
    "execution_summary": ExecutionSummaryData,
    "failure_report": FailureReportData,
    "user_terminal_input": UserInputEchoData,
    "prompt_answered": PromptAnsweredData,
    "input_delivery_failed": InputDeliveryFailedData,
    "subagent_result": SubagentResultData,
    "workspace_info": WorkspaceInfoData,
}


def normalize_structured_payload(kind: str, payload: Any) -> Dict[str, Any]:
    if not isinstance(payload, dict):
        payload = {} if payload is None else {"value": payload}
    model = _KIND_TO_MODEL.get(str(kind))
    if model is None:
        # Unknown kind: keep the envelope stable, keep the payload as a dict.
        return dict(payload)
    return model.model_validate(payload).model_dump()


def structured_event(kind: str, **payload: Any) -> StructuredEvent:
    return StructuredEvent(kind=kind, payload=normalize_structured_payload(kind, payload))
