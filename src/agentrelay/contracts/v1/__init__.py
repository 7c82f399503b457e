from __future__ import annotations

from .headless import HEADLESS_MODELS, OutputEnvelope, ReplayEnd, ReplayStart, SessionInfo
from .message import (
    MESSAGE_MODELS,
    InboundInput,
    LogLine,
    Message,
    OutputChunk,
    PromptChoice,
    PromptKind,
    PromptOptions,
    PromptRequest,
    PromptResponse,
    StructuredEvent,
    UserInput,
)
from .result import ErrorInfo, RunResult, RunState, SubagentResult
from .structured import StructuredKind, normalize_structured_payload, structured_event

__all__ = [
    "ErrorInfo",
    "HEADLESS_MODELS",
    "InboundInput",
    "LogLine",
    "MESSAGE_MODELS",
    "Message",
    "OutputChunk",
    "OutputEnvelope",
    "PromptChoice",
    "PromptKind",
    "PromptOptions",
    "PromptRequest",
    "PromptResponse",
    "ReplayEnd",
    "ReplayStart",
    "RunResult",
    "RunState",
    "SessionInfo",
    "StructuredEvent",
    "StructuredKind",
    "SubagentResult",
    "UserInput",
    "normalize_structured_payload",
    "structured_event",
]
