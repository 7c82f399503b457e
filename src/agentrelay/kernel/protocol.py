"""Newline-delimited JSON framing for every process and display boundary.

One message per line, UTF-8, discriminated by the `type` field. The same
codec serves the Unix-socket tunnel and WebSocket text frames.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ValidationError

from ..contracts.v1.headless import HEADLESS_MODELS
from ..contracts.v1.message import MESSAGE_MODELS
from ..errors import FramingError, ProtocolError, UnknownMessageKind


DEFAULT_MAX_LINE_BYTES = 8 * 1024 * 1024

FRAME_MODELS: Dict[str, Any] = {**MESSAGE_MODELS, **HEADLESS_MODELS}


@dataclass(frozen=True)
class DecodeResult:
    message: Optional[BaseModel] = None
    error: Optional[ProtocolError] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.message is not None


def encode(message: BaseModel) -> bytes:
    return (encode_text(message) + "\n").encode("utf-8")


def encode_text(message: BaseModel) -> str:
    """Single-line JSON without the trailing newline (WebSocket text frames)."""
    return json.dumps(message.model_dump(mode="json"), ensure_ascii=False, separators=(",", ":"))


def decode(
    data: Union[bytes, str],
    *,
    max_bytes: int = DEFAULT_MAX_LINE_BYTES,
    models: Optional[Dict[str, Any]] = None,
) -> DecodeResult:
    """Decode one frame. Never raises; failures come back as `DecodeResult.error`."""
    table = FRAME_MODELS if models is None else models
    try:
        raw = data.encode("utf-8") if isinstance(data, str) else bytes(data)
    except Exception as e:
        return DecodeResult(error=FramingError(f"unreadable frame: {e}"))
    if max_bytes > 0 and len(raw) > max_bytes:
        return DecodeResult(error=FramingError("frame exceeds size cap", details={"bytes": len(raw), "cap": max_bytes}))
    raw = raw.rstrip(b"\r\n")
    if not raw.strip():
        return DecodeResult(error=FramingError("empty frame"))
    try:
        obj = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        return DecodeResult(error=FramingError(f"invalid json: {e}"))
    if not isinstance(obj, dict):
        return DecodeResult(error=FramingError("frame is not a JSON object"))

    # Discriminant first, before trusting any other field.
    kind = obj.get("type")
    if not isinstance(kind, str) or not kind.strip():
        return DecodeResult(error=FramingError("missing message type"))
    model = table.get(kind)
    if model is None:
        return DecodeResult(error=UnknownMessageKind(kind))
    try:
        return DecodeResult(message=model.model_validate(obj))
    except ValidationError as e:
        return DecodeResult(
            error=FramingError(f"invalid {kind} message", details={"kind": kind, "errors": e.error_count()})
        )


class FrameReader:
    """Incremental line splitter + decoder for a byte stream.

    Partial lines are kept across `feed` calls; a line that grows past the cap
    yields one FramingError and the rest of it is discarded up to the next
    newline.
    """

    def __init__(self, *, max_line_bytes: int = DEFAULT_MAX_LINE_BYTES, models: Optional[Dict[str, Any]] = None):
        self._max = int(max_line_bytes)
        self._models = models
        self._buf = bytearray()
        self._discarding = False

    def feed(self, chunk: bytes) -> List[DecodeResult]:
        out: List[DecodeResult] = []
        for line in self._split(chunk):
            if not line.strip():
                continue
            out.append(decode(line, max_bytes=self._max, models=self._models))
        if self._max > 0 and len(self._buf) > self._max:
            out.append(DecodeResult(error=FramingError("line exceeds size cap", details={"cap": self._max})))
            self._buf.clear()
            self._discarding = True
        return out

    def finish(self) -> List[DecodeResult]:
        rest = bytes(self._buf)
        self._buf.clear()
        discarding = self._discarding
        self._discarding = False
        if discarding or not rest.strip():
            return []
        return [decode(rest, max_bytes=self._max, models=self._models)]

    def _split(self, chunk: bytes) -> List[bytes]:
        lines: List[bytes] = []
        start = 0
        while True:
            idx = chunk.find(b"\n", start)
            if idx < 0:
                break
            piece = chunk[start:idx]
            start = idx + 1
            if self._discarding:
                self._discarding = False
                self._buf.clear()
                continue
            self._buf.extend(piece)
            lines.append(bytes(self._buf))
            self._buf.clear()
        if not self._discarding:
            self._buf.extend(chunk[start:])
        return lines


class LineSplitter:
    """Plain text variant used for subprocess stdout/stderr."""

    def __init__(self, *, max_line_bytes: int = DEFAULT_MAX_LINE_BYTES):
        self._max = int(max_line_bytes)
        self._buf = bytearray()

    def feed(self, chunk: bytes) -> List[str]:
        self._buf.extend(chunk)
        out: List[str] = []
        while True:
            idx = self._buf.find(b"\n")
            if idx < 0:
                break
            line = bytes(self._buf[:idx])
            del self._buf[: idx + 1]
            out.append(line.decode("utf-8", errors="replace").rstrip("\r"))
        if self._max > 0 and len(self._buf) > self._max:
            # Oversized line without a newline: flush what we have as-is.
            out.append(bytes(self._buf).decode("utf-8", errors="replace"))
            self._buf.clear()
        return out

    def finish(self) -> List[str]:
        if not self._buf:
            return []
        rest = bytes(self._buf).decode("utf-8", errors="replace").rstrip("\r")
        self._buf.clear()
        return [rest] if rest else []
