"""
Lumi — FastAPI Control Server

================================================================================
Architecture:
  • One TutorSession per WebSocket, held in a SessionRegistry
  • The session runs locally: microphone + speaker via sounddevice,
    camera via OpenCV, live model via google-genai
  • The browser UI only renders: it sends commands and receives
    session events + analyser levels over the socket
================================================================================

Endpoints:
  WS  /ws/session           — control + event stream
  GET /health               — server health
  GET /sessions             — list active sessions
  GET /session/{session_id} — single session snapshot

Client → Server messages:
  { type: "connect", profile: {...}, restore: {messages, stats} }
  { type: "disconnect" }
  { type: "set_muted", muted: bool }
  { type: "set_video", active: bool }
  { type: "send_text", text: "...", mode: "chat" | "instruction" }
  { type: "upload_image", data: "<base64>", mime_type: "image/png" }
  { type: "toggle_message", id: "...", property: "is_favorite" | "is_flagged" }
  { type: "ping" }

Server → Client messages:
  { type: "state" | "message" | "message_updated" | "stats" |
          "live_text" | "speaking", data: {...} }   → session events
  { type: "levels", data: {input, output} }         → analyser readings
  { type: "snapshot", data: {...} }                 → full session state
  { type: "pong" }                                  → keepalive ack
  { type: "error", message: "..." }                 → error
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .audio.capture import MicrophoneInput
from .audio.output import SoundDeviceOutput
from .core.config import model_cfg, server_cfg
from .core.models import LearningStats, StudentProfile, messages_from_dicts
from .core.state_machine import ConnectionState
from .services.registry import SessionRegistry
from .services.session import TutorSession
from .services.tools import GeminiImageGenerator
from .services.transport import GeminiLiveTransport, make_client
from .video.sampler import OpenCVCamera

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logger = logging.getLogger("lumi.server")
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)

VERSION = "1.0.0"

registry = SessionRegistry()


# ---------------------------------------------------------------------------
# Session construction (real devices + live model)
# ---------------------------------------------------------------------------

def _open_output() -> SoundDeviceOutput:
    output = SoundDeviceOutput()
    output.open()
    return output


def build_session(
    session_id: str,
    profile: StudentProfile,
    restore: Dict[str, Any],
    on_event: Callable[[str, Dict[str, Any]], None],
) -> TutorSession:
    client = make_client(model_cfg.api_key) if model_cfg.has_api_key else None
    return TutorSession(
        session_id=session_id,
        profile=profile,
        transport_factory=lambda: GeminiLiveTransport(
            model_cfg.api_key, client=client, log_prefix=f"[{session_id}] ",
        ),
        output_factory=_open_output,
        input_factory=MicrophoneInput,
        camera_factory=OpenCVCamera,
        image_generator=GeminiImageGenerator(client) if client is not None else None,
        messages=messages_from_dicts(restore.get("messages")),
        stats=LearningStats.from_dict(restore.get("stats")),
        on_event=on_event,
    )


# ---------------------------------------------------------------------------
# FastAPI Lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("🚀 Lumi starting...")
    logger.info(f"   API key configured: {model_cfg.has_api_key}")
    yield
    logger.info("🛑 Shutting down — closing all sessions...")
    await registry.close_all()
    logger.info("🛑 Lumi stopped")


# ---------------------------------------------------------------------------
# FastAPI App
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Lumi — Realtime AI Tutor",
    version=VERSION,
    description=(
        "Runs a live voice/video tutoring session against the Gemini Live API "
        "and streams its state to a browser UI."
    ),
    lifespan=lifespan,
)
app.state.session_factory = build_session

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(server_cfg.cors_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# REST Endpoints
# ---------------------------------------------------------------------------

@app.get("/health")
async def health():
    return {
        "status": "ok",
        "version": VERSION,
        "api_key_configured": model_cfg.has_api_key,
        "active_sessions": registry.active_count,
    }


@app.get("/sessions")
async def list_sessions():
    result: Dict[str, Any] = {}
    for sid, session in registry.all_sessions.items():
        result[sid] = {
            "state": session.state.value,
            "student": session.profile.name,
            "messages": len(session.messages),
            "stats": session.stats.to_dict(),
        }
    return result


@app.get("/session/{session_id}")
async def session_detail(session_id: str):
    session = registry.get(session_id)
    if session is None:
        return JSONResponse(status_code=404, content={"error": "session not found"})
    return {
        **session.snapshot().to_dict(),
        "latency": session.latency,
        "state_history": session.state_history,
    }


# ---------------------------------------------------------------------------
# WebSocket: Per-Session Control Stream
# ---------------------------------------------------------------------------

@app.websocket("/ws/session")
async def websocket_session(ws: WebSocket):
    """
    WebSocket endpoint — one TutorSession per connection.
    Commands drive the session; session events are pushed back.
    """
    await ws.accept()

    session_id = uuid.uuid4().hex[:12]
    session: Optional[TutorSession] = None
    outbox: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue()
    background: list = []

    def on_event(kind: str, data: Dict[str, Any]) -> None:
        outbox.put_nowait({"type": kind, "data": data})

    async def sender() -> None:
        while True:
            payload = await outbox.get()
            try:
                await ws.send_text(json.dumps(payload))
            except Exception as e:
                logger.debug(f"[{session_id}] Send failed: {e}")
                return

    async def level_pusher() -> None:
        while True:
            await asyncio.sleep(server_cfg.levels_interval)
            if session is not None and session.state is ConnectionState.CONNECTED:
                outbox.put_nowait({"type": "levels", "data": session.levels()})

    def send(data: Dict[str, Any]) -> None:
        outbox.put_nowait(data)

    def send_snapshot() -> None:
        if session is not None:
            send({"type": "snapshot", "data": session.snapshot().to_dict()})

    background.append(asyncio.create_task(sender()))
    background.append(asyncio.create_task(level_pusher()))

    try:
        while True:
            raw = await ws.receive_text()

            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                send({"type": "error", "message": "Invalid JSON"})
                continue
            if not isinstance(message, dict):
                send({"type": "error", "message": "Expected a JSON object"})
                continue

            msg_type = message.get("type", "")

            # ── Connect (creates the session on first use) ──
            if msg_type == "connect":
                if session is not None and session.state not in (
                    ConnectionState.DISCONNECTED, ConnectionState.ERROR,
                ):
                    send({"type": "error", "message": "Session already active"})
                    continue

                if session is None:
                    profile = StudentProfile.from_dict(message.get("profile") or {})
                    if not profile.name:
                        send({"type": "error", "message": "A student profile with a name is required"})
                        continue
                    restore = message.get("restore") or {}
                    session = app.state.session_factory(session_id, profile, restore, on_event)
                    registry.add(session)

                send_snapshot()
                background.append(asyncio.create_task(session.connect()))

            # ── Disconnect ──
            elif msg_type == "disconnect":
                if session is not None:
                    await session.disconnect()
                    send_snapshot()

            elif msg_type == "ping":
                send({"type": "pong"})

            elif session is None:
                send({"type": "error", "message": "No active session"})

            elif msg_type == "set_muted":
                session.set_muted(bool(message.get("muted", False)))
                send_snapshot()

            elif msg_type == "set_video":
                await session.set_video_active(bool(message.get("active", False)))
                send_snapshot()

            elif msg_type == "send_text":
                try:
                    await session.send_text_message(
                        str(message.get("text", "")), str(message.get("mode", "chat")),
                    )
                except ValueError as e:
                    send({"type": "error", "message": str(e)})

            elif msg_type == "upload_image":
                try:
                    await session.send_uploaded_image(
                        message.get("data") or "", str(message.get("mime_type", "image/png")),
                    )
                except ValueError as e:
                    send({"type": "error", "message": f"Invalid image: {e}"})

            elif msg_type == "toggle_message":
                try:
                    session.toggle_message_property(
                        str(message.get("id", "")), str(message.get("property", "")),
                    )
                except ValueError as e:
                    send({"type": "error", "message": str(e)})

            else:
                send({"type": "error", "message": f"Unknown message type: {msg_type}"})

    except WebSocketDisconnect:
        logger.info(f"[{session_id}] WebSocket disconnected")
    except Exception as e:
        logger.error(f"[{session_id}] WebSocket error: {e}", exc_info=True)
    finally:
        if session is not None:
            await registry.remove(session_id)
        for task in background:
            if not task.done():
                task.cancel()
        await asyncio.gather(*background, return_exceptions=True)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main() -> None:
    import uvicorn

    uvicorn.run(
        "lumi.server:app",
        host=server_cfg.host,
        port=server_cfg.port,
        log_level="info",
    )


if __name__ == "__main__":
    main()
