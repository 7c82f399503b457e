"""Global settings for agentrelay.

Settings are stored in ~/.agentrelay/settings.yaml (or $AGENTRELAY_HOME) and include:
- protocol / tunnel / headless transport knobs
- agent timeouts
- executor overrides and user-defined executors
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

import yaml  # type: ignore

from ..paths import agentrelay_home
from ..util.conv import coerce_bool, coerce_float, coerce_int
from ..util.fs import atomic_write_text
from .protocol import DEFAULT_MAX_LINE_BYTES

logger = logging.getLogger(__name__)

DEFAULT_HEADLESS_URL = "ws://localhost:8123/agentrelay"
HEADLESS_URL_ENV = "AGENTRELAY_HEADLESS_URL"
HEADLESS_ENABLE_ENV = "AGENTRELAY_HEADLESS"
LOG_LEVEL_ENV = "AGENTRELAY_LOG_LEVEL"

_WARNED_URLS: Set[str] = set()


@dataclass
class TunnelSettings:
    enabled: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {"enabled": self.enabled}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "TunnelSettings":
        return cls(enabled=coerce_bool(d.get("enabled"), default=True))


@dataclass
class HeadlessSettings:
    enabled: bool = False
    url: str = ""
    reconnect_interval_s: float = 5.0
    max_buffer_bytes: int = 10 * 1024 * 1024

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "url": self.url,
            "reconnect_interval_s": self.reconnect_interval_s,
            "max_buffer_bytes": self.max_buffer_bytes,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "HeadlessSettings":
        return cls(
            enabled=coerce_bool(d.get("enabled"), default=False),
            url=str(d.get("url") or "").strip(),
            reconnect_interval_s=coerce_float(d.get("reconnect_interval_s"), default=5.0, minimum=0.05),
            max_buffer_bytes=coerce_int(d.get("max_buffer_bytes"), default=10 * 1024 * 1024, minimum=1024),
        )


@dataclass
class TimeoutSettings:
    inactivity_s: float = 1800.0
    initial_inactivity_s: float = 120.0
    prompt_s: float = 0.0  # 0 = wait forever

    def to_dict(self) -> Dict[str, Any]:
        return {
            "inactivity_s": self.inactivity_s,
            "initial_inactivity_s": self.initial_inactivity_s,
            "prompt_s": self.prompt_s,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "TimeoutSettings":
        return cls(
            inactivity_s=coerce_float(d.get("inactivity_s"), default=1800.0),
            initial_inactivity_s=coerce_float(d.get("initial_inactivity_s"), default=120.0),
            prompt_s=coerce_float(d.get("prompt_s"), default=0.0),
        )


@dataclass
class Settings:
    log_level: str = "WARNING"
    max_line_bytes: int = DEFAULT_MAX_LINE_BYTES
    tunnel: TunnelSettings = field(default_factory=TunnelSettings)
    headless: HeadlessSettings = field(default_factory=HeadlessSettings)
    timeouts: TimeoutSettings = field(default_factory=TimeoutSettings)
    default_executor: str = "claude-code"
    executors: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        executors: Dict[str, Any] = {"default": self.default_executor}
        executors.update(self.executors)
        return {
            "log_level": self.log_level,
            "protocol": {"max_line_bytes": self.max_line_bytes},
            "tunnel": self.tunnel.to_dict(),
            "headless": self.headless.to_dict(),
            "timeouts": self.timeouts.to_dict(),
            "executors": executors,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Settings":
        protocol = d.get("protocol") if isinstance(d.get("protocol"), dict) else {}
        executors_raw = d.get("executors") if isinstance(d.get("executors"), dict) else {}
        executors = {str(k): dict(v) for k, v in executors_raw.items() if k != "default" and isinstance(v, dict)}
        return cls(
            log_level=str(d.get("log_level") or "WARNING").strip() or "WARNING",
            max_line_bytes=coerce_int(protocol.get("max_line_bytes"), default=DEFAULT_MAX_LINE_BYTES, minimum=1024),
            tunnel=TunnelSettings.from_dict(_section(d, "tunnel")),
            headless=HeadlessSettings.from_dict(_section(d, "headless")),
            timeouts=TimeoutSettings.from_dict(_section(d, "timeouts")),
            default_executor=str(executors_raw.get("default") or "claude-code").strip() or "claude-code",
            executors=executors,
        )


def _section(d: Dict[str, Any], key: str) -> Dict[str, Any]:
    v = d.get(key)
    return v if isinstance(v, dict) else {}


def settings_path() -> Path:
    return agentrelay_home() / "settings.yaml"


def load_settings_doc() -> Dict[str, Any]:
    """Load the raw settings.yaml document ({} when missing or malformed)."""
    p = settings_path()
    if not p.exists():
        return {}
    try:
        doc = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
        return doc if isinstance(doc, dict) else {}
    except Exception:
        logger.warning("ignoring unreadable settings file: %s", p)
        return {}


def load_settings() -> Settings:
    s = Settings.from_dict(load_settings_doc())
    env_level = os.environ.get(LOG_LEVEL_ENV, "").strip()
    if env_level:
        s.log_level = env_level
    if coerce_bool(os.environ.get(HEADLESS_ENABLE_ENV), default=False):
        s.headless.enabled = True
    return s


def save_settings(settings: Settings) -> None:
    p = settings_path()
    p.parent.mkdir(parents=True, exist_ok=True)
    atomic_write_text(p, yaml.safe_dump(settings.to_dict(), allow_unicode=True, sort_keys=False))


def _valid_ws_url(url: str) -> bool:
    u = url.strip().lower()
    return u.startswith("ws://") or u.startswith("wss://")


def _warn_invalid_url(url: str, origin: str, warn: Optional[Any]) -> None:
    if url in _WARNED_URLS:
        return
    _WARNED_URLS.add(url)
    msg = f"ignoring headless url from {origin} (must start with ws:// or wss://): {url}"
    logger.warning(msg)
    if callable(warn):
        try:
            warn(msg)
        except Exception:
            pass


def resolve_headless_url(
    settings: Optional[Settings] = None,
    *,
    environ: Optional[Dict[str, str]] = None,
    warn: Optional[Any] = None,
) -> str:
    """Env var, then settings.yaml, then the default; invalid candidates are skipped."""
    env = os.environ if environ is None else environ
    candidates: List[tuple[str, str]] = [
        (HEADLESS_URL_ENV, str(env.get(HEADLESS_URL_ENV) or "").strip()),
        ("settings.yaml", (settings.headless.url if settings is not None else "").strip()),
    ]
    for origin, url in candidates:
        if not url:
            continue
        if _valid_ws_url(url):
            return url
        _warn_invalid_url(url, origin, warn)
    return DEFAULT_HEADLESS_URL
