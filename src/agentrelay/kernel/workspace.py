from __future__ import annotations

import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from urllib.parse import urlsplit, urlunsplit


def _run_git(args: list[str], *, cwd: Path) -> tuple[int, str]:
    try:
        p = subprocess.run(
            ["git", *args],
            cwd=str(cwd),
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
            text=True,
            check=False,
            timeout=5,
        )
        return int(p.returncode), (p.stdout or "").strip()
    except Exception:
        return 1, ""


def git_root(path: Path) -> Optional[Path]:
    code, out = _run_git(["rev-parse", "--show-toplevel"], cwd=path)
    if code != 0 or not out:
        return None
    try:
        return Path(out).resolve()
    except Exception:
        return None


def strip_credentials(url: str) -> str:
    """Drop user:password@ from http(s)/ssh URLs; scp-like `git@host:path` is kept."""
    u = (url or "").strip()
    if not u or "://" not in u:
        return u
    try:
        parts = urlsplit(u)
    except ValueError:
        return u
    if "@" not in parts.netloc:
        return u
    host = parts.netloc.rsplit("@", 1)[1]
    return urlunsplit((parts.scheme, host, parts.path, parts.query, parts.fragment))


def git_remote(cwd: Path) -> str:
    code, out = _run_git(["config", "--get", "remote.origin.url"], cwd=cwd)
    return strip_credentials(out) if code == 0 else ""


@dataclass(frozen=True)
class PlanRef:
    ref: str
    plan_id: str
    title: str = ""
    path: Optional[Path] = None


_HEADING = re.compile(r"^\s*#\s+(?P<title>.+?)\s*$")
_TITLE_KEY = re.compile(r"^\s*title:\s*(?P<title>.+?)\s*$")


def load_plan_ref(ref: str, *, cwd: Optional[Path] = None) -> PlanRef:
    """Resolve a plan reference without interpreting the plan itself.

    An existing file yields its stem as id and its first heading (or
    `title:` line) as title; anything else is kept verbatim as the id.
    """
    raw = str(ref or "").strip()
    base = cwd or Path.cwd()
    candidate = Path(raw).expanduser()
    if not candidate.is_absolute():
        candidate = base / candidate
    try:
        if raw and candidate.is_file():
            title = ""
            with candidate.open("r", encoding="utf-8", errors="replace") as f:
                for i, line in enumerate(f):
                    if i > 50:
                        break
                    m = _TITLE_KEY.match(line) or _HEADING.match(line)
                    if m:
                        title = m.group("title").strip().strip("'\"")
                        break
            return PlanRef(ref=raw, plan_id=candidate.stem, title=title, path=candidate.resolve())
    except OSError:
        pass
    return PlanRef(ref=raw, plan_id=raw)
