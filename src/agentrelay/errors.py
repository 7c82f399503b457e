"""Error taxonomy shared by the protocol, transport and orchestration layers.

Transport errors are recovered where they happen; only their `ErrorInfo`
form travels into run results.
"""
from __future__ import annotations

from typing import Any, Dict, Optional

from .contracts.v1.result import ErrorInfo


class AgentRelayError(Exception):
    code = "error"

    def __init__(self, message: str = "", *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details: Dict[str, Any] = dict(details or {})

    def to_info(self) -> ErrorInfo:
        return ErrorInfo(code=self.code, message=self.message, details=dict(self.details))


class ProtocolError(AgentRelayError):
    code = "protocol_error"


class FramingError(ProtocolError):
    """Malformed wire message (bad JSON, wrong shape, oversized line)."""

    code = "framing_error"


class UnknownMessageKind(ProtocolError):
    code = "unknown_message_kind"

    def __init__(self, kind: str):
        super().__init__(f"unknown message kind: {kind}", details={"kind": kind})
        self.kind = kind


class StdinClosed(AgentRelayError):
    code = "stdin_closed"


class TunnelUnavailable(AgentRelayError):
    code = "tunnel_unavailable"


class PromptError(AgentRelayError):
    code = "prompt_error"


class PromptTimeout(PromptError):
    code = "prompt_timeout"


class PromptCancelled(PromptError):
    code = "prompt_cancelled"


class SubprocessFailure(AgentRelayError):
    code = "subprocess_failure"

    def __init__(
        self,
        message: str,
        *,
        exit_code: Optional[int] = None,
        signal: Optional[int] = None,
        code: str = "",
        details: Optional[Dict[str, Any]] = None,
    ):
        merged = dict(details or {})
        if exit_code is not None:
            merged.setdefault("exit_code", exit_code)
        if signal is not None:
            merged.setdefault("signal", signal)
        super().__init__(message, details=merged)
        self.exit_code = exit_code
        self.signal = signal
        if code:
            self.code = code
