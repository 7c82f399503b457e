from __future__ import annotations

import os
from pathlib import Path


def agentrelay_home() -> Path:
    env = os.environ.get("AGENTRELAY_HOME", "").strip()
    if env:
        return Path(env).expanduser().resolve()
    return (Path.home() / ".agentrelay").resolve()


def ensure_home() -> Path:
    home = agentrelay_home()
    home.mkdir(parents=True, exist_ok=True)
    return home
