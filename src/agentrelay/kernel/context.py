"""Process-wide tunnel context.

Whether this process already runs inside someone else's tunnel is decided
once, from the environment inherited at start, and then only read.
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Dict, Mapping, Optional


OUTPUT_SOCKET_ENV = "OUTPUT_SOCKET_PATH"

_CONTEXT: Dict[str, "TunnelContext"] = {}


@dataclass(frozen=True)
class TunnelContext:
    socket_path: str = ""

    @property
    def active(self) -> bool:
        """True when a parent tunnel exists and must be reused instead of nesting."""
        return bool(self.socket_path)

    def child_env(self, base: Mapping[str, str], *, owned_socket: str = "") -> Dict[str, str]:
        """Environment for a spawned agent: it must see exactly one tunnel path."""
        env = dict(base)
        path = owned_socket or self.socket_path
        if path:
            env[OUTPUT_SOCKET_ENV] = path
        else:
            env.pop(OUTPUT_SOCKET_ENV, None)
        return env


def resolve_tunnel_context(environ: Optional[Mapping[str, str]] = None) -> TunnelContext:
    env = os.environ if environ is None else environ
    return TunnelContext(socket_path=str(env.get(OUTPUT_SOCKET_ENV) or "").strip())


def get_tunnel_context() -> TunnelContext:
    """Resolved on first use and cached for the life of the process."""
    ctx = _CONTEXT.get("process")
    if ctx is None:
        ctx = resolve_tunnel_context()
        _CONTEXT["process"] = ctx
    return ctx
