from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# Load .env from project root (parent folder)
_project_root = Path(__file__).resolve().parent.parent
load_dotenv(_project_root / ".env")

log_level_name = os.getenv("TUTOR_LOG_LEVEL", "INFO").upper()
log_level = getattr(logging, log_level_name, logging.INFO)
logging.basicConfig(level=log_level)

from tutor_backend.config import get_settings
from tutor_backend.errors import TutorError
from tutor_backend.runtime.bus import EventBus
from tutor_backend.runtime.session import SUPPORTED_VOICES, UserImage
from tutor_backend.runtime.storage import MemoryBlobStore, SQLiteBlobStore
from tutor_backend.service.audio import BusAudioOutput
from tutor_backend.service.orchestrator import OrchestratorRegistry, TutorOrchestrator

logger = logging.getLogger(__name__)


def build_default_registry(bus: EventBus) -> OrchestratorRegistry:
    from tutor_backend.service.llm import GeminiGenerationService

    settings = get_settings()
    if settings.store.backend == "memory":
        blobs = MemoryBlobStore()
    else:
        blobs = SQLiteBlobStore(settings.store.path)
    generation = GeminiGenerationService()
    logger.info("Using %s store, text model %s", settings.store.backend, settings.generation.text_model)

    def _factory(user: str) -> TutorOrchestrator:
        return TutorOrchestrator(
            user, blobs, generation, BusAudioOutput(bus, user), bus, settings.tts.sample_rate
        )

    return OrchestratorRegistry(_factory)


def create_app(registry: Optional[OrchestratorRegistry] = None, bus: Optional[EventBus] = None) -> FastAPI:
    app = FastAPI(title="Tutor Backend")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.bus = bus or EventBus()
    app.state.registry = registry

    @app.on_event("startup")
    async def startup_event():
        if app.state.registry is None:
            app.state.registry = build_default_registry(app.state.bus)

    @app.exception_handler(TutorError)
    async def tutor_error_handler(request: Request, exc: TutorError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})

    async def _orchestrator(request: Request) -> TutorOrchestrator:
        return await app.state.registry.get(request.headers.get("x-user"))

    async def _body(request: Request) -> dict:
        try:
            data = await request.json()
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid JSON body")
        if not isinstance(data, dict):
            raise HTTPException(status_code=400, detail="Expected a JSON object")
        return data

    def _int_field(data: dict, name: str, default: int) -> int:
        value = data.get(name, default)
        if isinstance(value, bool):
            raise HTTPException(status_code=400, detail=f"Field {name} must be an integer")
        try:
            return int(value)
        except (TypeError, ValueError):
            raise HTTPException(status_code=400, detail=f"Field {name} must be an integer")

    def _sessions_payload(orchestrator: TutorOrchestrator) -> dict:
        return {
            "current_subject": orchestrator.current_subject,
            "sessions": {k: s.to_dict() for k, s in orchestrator.sessions().items()},
        }

    @app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/voices")
    async def voices() -> list:
        return [{"id": voice_id, "name": name} for voice_id, name in SUPPORTED_VOICES]

    @app.post("/sign-in")
    async def sign_in(request: Request) -> dict:
        orchestrator = await _orchestrator(request)
        return _sessions_payload(orchestrator)

    @app.post("/sign-out")
    async def sign_out(request: Request) -> dict[str, str]:
        user = request.headers.get("x-user")
        if user:
            await app.state.registry.sign_out(user)
            app.state.bus.delete(user)
        return {"status": "signed_out"}

    @app.get("/sessions")
    async def list_sessions(request: Request) -> dict:
        return _sessions_payload(await _orchestrator(request))

    @app.post("/sessions/reload")
    async def reload_sessions(request: Request) -> dict:
        orchestrator = await _orchestrator(request)
        await orchestrator.reload()
        return _sessions_payload(orchestrator)

    @app.post("/subjects")
    async def create_subject(request: Request) -> dict:
        orchestrator = await _orchestrator(request)
        data = await _body(request)
        subject = (data.get("subject") or "").strip()
        if not subject:
            raise HTTPException(status_code=400, detail="Missing subject")
        session = await orchestrator.create_subject(
            subject, data.get("goal", ""), data.get("level", ""), data.get("voice")
        )
        return session.to_dict()

    @app.delete("/subjects/{subject}")
    async def delete_subject(subject: str, request: Request) -> dict:
        orchestrator = await _orchestrator(request)
        await orchestrator.delete_subject(subject)
        return _sessions_payload(orchestrator)

    @app.post("/subjects/switch")
    async def switch_subject(request: Request) -> dict:
        orchestrator = await _orchestrator(request)
        orchestrator.switch_subject()
        return _sessions_payload(orchestrator)

    @app.post("/subjects/{subject}/select")
    async def select_subject(subject: str, request: Request) -> dict:
        orchestrator = await _orchestrator(request)
        return orchestrator.select_subject(subject).to_dict()

    @app.post("/subjects/{subject}/conversations")
    async def new_conversation(subject: str, request: Request) -> dict:
        orchestrator = await _orchestrator(request)
        return (await orchestrator.new_conversation(subject)).to_dict()

    @app.put("/subjects/{subject}/voice")
    async def set_voice(subject: str, request: Request) -> dict:
        orchestrator = await _orchestrator(request)
        data = await _body(request)
        return (await orchestrator.set_voice(data.get("voice", ""), subject)).to_dict()

    @app.post("/messages")
    async def send_message(request: Request) -> dict:
        orchestrator = await _orchestrator(request)
        data = await _body(request)
        image = data.get("image")
        outcome = await orchestrator.send_message(
            data.get("text", ""),
            UserImage.from_dict(image) if image else None,
        )
        return {"route": outcome.route, "messages": [m.to_dict() for m in outcome.conversation]}

    @app.post("/transcripts")
    async def submit_transcript(request: Request) -> dict:
        orchestrator = await _orchestrator(request)
        data = await _body(request)
        outcome = await orchestrator.submit_transcript(data.get("text", ""))
        return {"route": outcome.route, "messages": [m.to_dict() for m in outcome.conversation]}

    @app.post("/quiz/complete")
    async def complete_quiz(request: Request) -> dict:
        orchestrator = await _orchestrator(request)
        data = await _body(request)
        session = await orchestrator.complete_quiz(_int_field(data, "score", 0), _int_field(data, "total", 0))
        return session.to_dict() if session else {}

    @app.post("/refine")
    async def refine(request: Request) -> dict[str, str]:
        orchestrator = await _orchestrator(request)
        data = await _body(request)
        return {"text": await orchestrator.refine_text(data.get("text", ""), data.get("action", ""))}

    @app.post("/audio/play")
    async def play_audio(request: Request) -> dict:
        orchestrator = await _orchestrator(request)
        data = await _body(request)
        state = await orchestrator.play_message(_int_field(data, "index", -1))
        return state.to_dict()

    @app.put("/audio/enabled")
    async def set_audio_enabled(request: Request) -> dict:
        orchestrator = await _orchestrator(request)
        data = await _body(request)
        return orchestrator.set_narration_enabled(bool(data.get("enabled", True))).to_dict()

    @app.get("/assistant/messages")
    async def assistant_history(request: Request) -> list:
        orchestrator = await _orchestrator(request)
        return [m.to_dict() for m in orchestrator.assistant.history()]

    @app.post("/assistant/messages")
    async def assistant_send(request: Request) -> list:
        orchestrator = await _orchestrator(request)
        data = await _body(request)
        return [m.to_dict() for m in await orchestrator.send_assistant_message(data.get("text", ""))]

    @app.websocket("/ws/events/{user}")
    async def events(ws: WebSocket, user: str) -> None:
        await ws.accept()
        queue = app.state.bus.subscribe(user)
        try:
            while True:
                packet = await queue.get()
                metadata = packet.copy()
                audio_bytes = metadata.pop("audio", None)
                await ws.send_json(metadata)
                if audio_bytes:
                    await ws.send_bytes(audio_bytes)
        except WebSocketDisconnect:
            logger.info("Event stream for %s closed", user)
        finally:
            app.state.bus.unsubscribe(user, queue)

    return app


app = create_app()
