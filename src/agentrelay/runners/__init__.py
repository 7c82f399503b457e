from __future__ import annotations

from .agent import AgentProcess
from .stdin_guard import StdinGuard, WriteResult

__all__ = ["AgentProcess", "StdinGuard", "WriteResult"]
