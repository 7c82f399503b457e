from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from ...util.time import utc_now_iso


PromptKind = Literal["input", "confirm", "select", "checkbox"]
LogLevel = Literal["debug", "info", "log", "warn", "error"]


class StructuredEvent(BaseModel):
    """One-way progress/telemetry event; no reply expected."""

    type: Literal["structured"] = "structured"
    kind: str = Field(min_length=1)
    ts: str = Field(default_factory=utc_now_iso)
    payload: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="ignore")


class LogLine(BaseModel):
    type: Literal["log"] = "log"
    level: LogLevel = "log"
    args: List[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="ignore")


class OutputChunk(BaseModel):
    """Raw (non-JSON) output captured from a subprocess stream."""

    type: Literal["stream"] = "stream"
    stream: Literal["stdout", "stderr"] = "stdout"
    data: str

    model_config = ConfigDict(extra="ignore")


class PromptChoice(BaseModel):
    name: str
    value: Any = None
    description: str = ""
    checked: bool = False

    model_config = ConfigDict(extra="ignore")


class PromptOptions(BaseModel):
    message: str
    default: Any = None
    choices: List[PromptChoice] = Field(default_factory=list)
    page_size: Optional[int] = None
    validation_hint: str = ""

    model_config = ConfigDict(extra="ignore")


class PromptRequest(BaseModel):
    type: Literal["prompt_request"] = "prompt_request"
    id: str = Field(min_length=1)
    kind: PromptKind
    options: PromptOptions
    timeout_ms: Optional[int] = None

    model_config = ConfigDict(extra="ignore")


class PromptResponse(BaseModel):
    type: Literal["prompt_response"] = "prompt_response"
    id: str = Field(min_length=1)
    value: Any = None
    error: Optional[str] = None
    source: str = ""

    model_config = ConfigDict(extra="ignore")


class UserInput(BaseModel):
    """Free-form text from an observer, forwarded verbatim to the agent's stdin."""

    type: Literal["user_input"] = "user_input"
    content: str
    origin: str = ""

    model_config = ConfigDict(extra="ignore")


Message = Union[StructuredEvent, LogLine, OutputChunk, PromptRequest, PromptResponse, UserInput]
InboundInput = Union[UserInput, PromptResponse]

MESSAGE_MODELS: Dict[str, Any] = {
    "structured": StructuredEvent,
    "log": LogLine,
    "stream": OutputChunk,
    "prompt_request": PromptRequest,
    "prompt_response": PromptResponse,
    "user_input": UserInput,
}
