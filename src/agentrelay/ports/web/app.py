from __future__ import annotations

import asyncio
import collections
import itertools
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional, Tuple

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse
from pydantic import BaseModel, Field

from ... import __version__
from ...contracts.v1.headless import OutputEnvelope, ReplayEnd, ReplayStart, SessionInfo
from ...contracts.v1.message import PromptResponse, UserInput
from ...kernel.protocol import DEFAULT_MAX_LINE_BYTES, decode, encode_text

logger = logging.getLogger(__name__)

GUI_INBOUND_MODELS: Dict[str, Any] = {
    "session_info": SessionInfo,
    "output": OutputEnvelope,
    "replay_start": ReplayStart,
    "replay_end": ReplayEnd,
}

MAX_MESSAGES_PER_SESSION = 5000


class InputRequest(BaseModel):
    content: str = Field(min_length=1)


class PromptAnswerRequest(BaseModel):
    value: Any = None


@dataclass
class HeadlessSession:
    """What the listener knows about one connected (or recently connected) run."""

    sid: str
    info: SessionInfo
    messages: Deque[Dict[str, Any]] = field(default_factory=lambda: collections.deque(maxlen=MAX_MESSAGES_PER_SESSION))
    last_seq: int = -1
    pending_prompts: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    replaying: bool = False
    websocket: Optional[WebSocket] = None

    @property
    def connected(self) -> bool:
        return self.websocket is not None

    def summary(self) -> Dict[str, Any]:
        return {
            "id": self.sid,
            "connected": self.connected,
            "info": self.info.model_dump(),
            "message_count": len(self.messages),
            "last_seq": self.last_seq,
            "pending_prompts": list(self.pending_prompts.values()),
        }


class SessionHub:
    """Sessions keyed by the run's identity, so a reconnect resumes the same entry."""

    def __init__(self) -> None:
        self._sessions: Dict[str, HeadlessSession] = {}
        self._by_identity: Dict[Tuple[Any, ...], str] = {}
        self._ids = itertools.count(1)

    def all(self) -> List[HeadlessSession]:
        return list(self._sessions.values())

    def get(self, sid: str) -> Optional[HeadlessSession]:
        return self._sessions.get(sid)

    def attach(self, info: SessionInfo, websocket: WebSocket) -> HeadlessSession:
        key = (info.pid, info.command, info.plan_id, info.workspace_path)
        sid = self._by_identity.get(key)
        session = self._sessions.get(sid) if sid else None
        if session is None:
            sid = f"s{next(self._ids)}"
            session = HeadlessSession(sid=sid, info=info)
            self._sessions[sid] = session
            self._by_identity[key] = sid
        session.info = info
        session.websocket = websocket
        logger.info("headless session attached", extra={"session": session.sid})
        return session

    def detach(self, session: HeadlessSession, websocket: WebSocket) -> None:
        if session.websocket is websocket:
            session.websocket = None
            logger.info("headless session detached", extra={"session": session.sid})

    def ingest(self, session: HeadlessSession, frame: BaseModel) -> None:
        if isinstance(frame, ReplayStart):
            session.replaying = True
            return
        if isinstance(frame, ReplayEnd):
            session.replaying = False
            return
        if not isinstance(frame, OutputEnvelope):
            return
        # Replays resend what we may already hold; seq makes that idempotent.
        if frame.seq <= session.last_seq:
            return
        session.last_seq = frame.seq
        msg = frame.message
        session.messages.append({"seq": frame.seq, "message": msg})
        self._track_prompts(session, msg)

    def _track_prompts(self, session: HeadlessSession, msg: Dict[str, Any]) -> None:
        t = msg.get("type")
        if t == "prompt_request" and msg.get("id"):
            session.pending_prompts[str(msg["id"])] = msg
        elif t == "structured" and msg.get("kind") == "prompt_answered":
            payload = msg.get("payload") if isinstance(msg.get("payload"), dict) else {}
            session.pending_prompts.pop(str(payload.get("request_id") or ""), None)

    async def send(self, session: HeadlessSession, frame: BaseModel) -> bool:
        ws = session.websocket
        if ws is None:
            return False
        try:
            await ws.send_text(encode_text(frame))
            return True
        except Exception as e:
            logger.info("send to headless session failed: %s", e, extra={"session": session.sid})
            return False


def _require_token_if_configured(request: Request) -> Optional[JSONResponse]:
    token = str(os.environ.get("AGENTRELAY_WEB_TOKEN") or "").strip()
    if not token:
        return None
    auth = str(request.headers.get("authorization") or "").strip()
    if auth != f"Bearer {token}":
        return JSONResponse(
            status_code=401,
            content={"ok": False, "error": {"code": "unauthorized", "message": "missing/invalid token", "details": {}}},
        )
    return None


def create_app(hub: Optional[SessionHub] = None) -> FastAPI:
    app = FastAPI(title="agentrelay gui listener", version=__version__)
    sessions = hub or SessionHub()
    app.state.hub = sessions

    cors = str(os.environ.get("AGENTRELAY_WEB_CORS_ORIGINS") or "").strip()
    if cors:
        allow_origins = [o.strip() for o in cors.split(",") if o.strip()]
        if allow_origins:
            app.add_middleware(
                CORSMiddleware,
                allow_origins=allow_origins,
                allow_methods=["*"],
                allow_headers=["*"],
            )

    @app.middleware("http")
    async def _auth(request: Request, call_next):  # type: ignore[no-untyped-def]
        blocked = _require_token_if_configured(request)
        if blocked is not None:
            return blocked
        return await call_next(request)

    def _session_or_404(sid: str) -> HeadlessSession:
        s = sessions.get(sid)
        if s is None:
            raise HTTPException(status_code=404, detail={"code": "session_not_found", "message": f"session not found: {sid}"})
        return s

    @app.get("/", response_class=HTMLResponse)
    async def index() -> str:
        return (
            "<h3>agentrelay</h3>"
            "<p>Headless runs connect to <code>/agentrelay</code>.</p>"
            "<p>Try <code>/api/v1/sessions</code>.</p>"
        )

    @app.get("/api/v1/ping")
    async def ping() -> Dict[str, Any]:
        return {"ok": True, "result": {"version": __version__, "sessions": len(sessions.all())}}

    @app.get("/api/v1/sessions")
    async def list_sessions() -> Dict[str, Any]:
        return {"ok": True, "result": {"sessions": [s.summary() for s in sessions.all()]}}

    @app.get("/api/v1/sessions/{sid}/messages")
    async def session_messages(sid: str, after: int = -1, limit: int = 500) -> Dict[str, Any]:
        s = _session_or_404(sid)
        items = [m for m in s.messages if int(m["seq"]) > after]
        if limit > 0:
            items = items[:limit]
        return {"ok": True, "result": {"messages": items, "last_seq": s.last_seq}}

    @app.post("/api/v1/sessions/{sid}/input")
    async def session_input(sid: str, req: InputRequest) -> Dict[str, Any]:
        s = _session_or_404(sid)
        sent = await sessions.send(s, UserInput(content=req.content, origin=f"gui-{s.sid}"))
        if not sent:
            return {"ok": False, "error": {"code": "session_disconnected", "message": "session is not connected"}}
        return {"ok": True, "result": {"sent": True}}

    @app.post("/api/v1/sessions/{sid}/prompts/{request_id}")
    async def answer_prompt(sid: str, request_id: str, req: PromptAnswerRequest) -> Dict[str, Any]:
        s = _session_or_404(sid)
        if request_id not in s.pending_prompts:
            raise HTTPException(status_code=404, detail={"code": "prompt_not_found", "message": f"no pending prompt: {request_id}"})
        sent = await sessions.send(s, PromptResponse(id=request_id, value=req.value, source="gui"))
        if not sent:
            return {"ok": False, "error": {"code": "session_disconnected", "message": "session is not connected"}}
        return {"ok": True, "result": {"sent": True}}

    @app.websocket("/agentrelay")
    async def headless_client(websocket: WebSocket) -> None:
        token = str(os.environ.get("AGENTRELAY_WEB_TOKEN") or "").strip()
        if token:
            provided = str(websocket.query_params.get("token") or "").strip()
            if provided != token:
                await websocket.close(code=4401)
                return

        await websocket.accept()
        session: Optional[HeadlessSession] = None
        try:
            while True:
                raw = await websocket.receive_text()
                res = decode(raw, max_bytes=DEFAULT_MAX_LINE_BYTES, models=GUI_INBOUND_MODELS)
                if not res.ok:
                    logger.info("dropping headless frame: %s", res.error)
                    continue
                frame = res.message
                if isinstance(frame, SessionInfo):
                    if session is not None:
                        sessions.detach(session, websocket)
                    session = sessions.attach(frame, websocket)
                    continue
                if session is None:
                    continue
                sessions.ingest(session, frame)  # type: ignore[arg-type]
        except WebSocketDisconnect:
            pass
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.warning("headless websocket failed", exc_info=True)
        finally:
            if session is not None:
                sessions.detach(session, websocket)

    return app
