from __future__ import annotations

from typing import Any, Dict, Literal

from pydantic import BaseModel, ConfigDict, Field


class SessionInfo(BaseModel):
    """First frame a headless client sends after (re)connecting."""

    type: Literal["session_info"] = "session_info"
    command: str = ""
    plan_id: str = ""
    plan_title: str = ""
    workspace_path: str = ""
    git_remote: str = ""
    pid: int = 0

    model_config = ConfigDict(extra="ignore")


class OutputEnvelope(BaseModel):
    type: Literal["output"] = "output"
    seq: int = Field(ge=0)
    message: Dict[str, Any]

    model_config = ConfigDict(extra="ignore")


class ReplayStart(BaseModel):
    type: Literal["replay_start"] = "replay_start"

    model_config = ConfigDict(extra="ignore")


class ReplayEnd(BaseModel):
    type: Literal["replay_end"] = "replay_end"

    model_config = ConfigDict(extra="ignore")


HEADLESS_MODELS: Dict[str, Any] = {
    "session_info": SessionInfo,
    "output": OutputEnvelope,
    "replay_start": ReplayStart,
    "replay_end": ReplayEnd,
}
