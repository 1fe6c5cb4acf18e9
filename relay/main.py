import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Optional, Set

from fastapi import APIRouter, Depends, FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.requests import HTTPConnection
from fastapi.responses import Response, StreamingResponse

from .config import AppSettings, load_settings
from .elevenlabs import DEFAULT_OUTPUT_FORMAT, audio_mime_type
from .errors import ProviderUnavailable
from .orchestrator import Orchestrator, ProviderRegistry, build_providers
from .schemas import ErrorEvent, OrchestrationRequest, SpeechRequest
from .transport import EventStream


logger = logging.getLogger("uvicorn.error")

PersistenceHook = Callable[[OrchestrationRequest, str], Awaitable[None]]

router = APIRouter()


def get_settings(conn: HTTPConnection) -> AppSettings:
    return conn.app.state.settings


def get_orchestrator(conn: HTTPConnection) -> Orchestrator:
    return conn.app.state.orchestrator


def get_on_complete(conn: HTTPConnection) -> Optional[PersistenceHook]:
    return conn.app.state.on_complete


def get_run_tasks(conn: HTTPConnection) -> Set[asyncio.Task]:
    return conn.app.state.run_tasks


async def run_request(
    orchestrator: Orchestrator,
    request: OrchestrationRequest,
    transport: EventStream,
    on_complete: Optional[PersistenceHook],
) -> Optional[str]:
    full_text = await orchestrator.run(request, transport)
    if full_text is None or on_complete is None:
        return full_text
    try:
        await on_complete(request, full_text)
    except Exception:
        # The caller already received done; persistence failures are only logged.
        logger.exception("Persistence hook failed for conversation %s", request.conversation_id)
    return full_text


def start_run(
    orchestrator: Orchestrator,
    request: OrchestrationRequest,
    transport: EventStream,
    on_complete: Optional[PersistenceHook],
    run_tasks: Set[asyncio.Task],
) -> asyncio.Task:
    task = asyncio.create_task(run_request(orchestrator, request, transport, on_complete))
    run_tasks.add(task)
    task.add_done_callback(run_tasks.discard)
    return task


@router.get("/health")
async def health():
    return {"ok": True}


@router.get("/settings")
async def get_settings_route(
    settings: AppSettings = Depends(get_settings),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    return {"settings": settings.to_safe_dict(), "providers": orchestrator.providers_status()}


@router.get("/api/providers")
async def list_providers(orchestrator: Orchestrator = Depends(get_orchestrator)):
    return {"providers": orchestrator.providers_status()}


@router.get("/api/voices")
async def list_voices(orchestrator: Orchestrator = Depends(get_orchestrator)):
    try:
        voices = await orchestrator.list_voices()
    except ProviderUnavailable as exc:
        raise HTTPException(status_code=503, detail=exc.message)
    return {"voices": voices}


@router.post("/api/speech")
async def synthesize_speech(body: SpeechRequest, orchestrator: Orchestrator = Depends(get_orchestrator)):
    if not body.text.strip():
        raise HTTPException(status_code=400, detail="Text is required.")
    try:
        audio = await orchestrator.synthesize_speech(body.text, body.voice_settings)
    except ProviderUnavailable as exc:
        raise HTTPException(status_code=503, detail=exc.message)
    return Response(content=audio, media_type=audio_mime_type(DEFAULT_OUTPUT_FORMAT))


@router.post("/api/chat/stream")
async def chat_stream(
    body: OrchestrationRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
    on_complete: Optional[PersistenceHook] = Depends(get_on_complete),
    run_tasks: Set[asyncio.Task] = Depends(get_run_tasks),
):
    transport = EventStream()
    start_run(orchestrator, body, transport, on_complete, run_tasks)

    async def event_generator():
        try:
            async for frame in transport.sse():
                yield frame
        finally:
            # Client gone or terminal event sent; later writes are dropped.
            transport.close()

    return StreamingResponse(event_generator(), media_type="text/event-stream")


@router.websocket("/ws/chat")
async def chat_socket(
    websocket: WebSocket,
    orchestrator: Orchestrator = Depends(get_orchestrator),
    on_complete: Optional[PersistenceHook] = Depends(get_on_complete),
    run_tasks: Set[asyncio.Task] = Depends(get_run_tasks),
):
    await websocket.accept()
    try:
        payload = await websocket.receive_json()
        request = OrchestrationRequest.model_validate(payload)
    except WebSocketDisconnect:
        return
    except ValueError as exc:
        logger.warning("Rejected websocket request: %s", exc)
        await websocket.send_json(ErrorEvent(message="Invalid request").to_wire())
        await websocket.close(code=1003)
        return

    transport = EventStream()
    start_run(orchestrator, request, transport, on_complete, run_tasks)
    try:
        async for event in transport.events():
            await websocket.send_json(event.to_wire())
    except WebSocketDisconnect:
        logger.info("Websocket client disconnected mid-run (mode=%s)", request.mode)
        return
    finally:
        transport.close()
    await websocket.close()


def create_app(
    settings: AppSettings,
    *,
    providers: Optional[ProviderRegistry] = None,
    on_complete: Optional[PersistenceHook] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            yield
        finally:
            pending = list(app.state.run_tasks)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            await app.state.orchestrator.close()

    app = FastAPI(title="Relay Orchestrator", lifespan=lifespan)
    app.state.settings = settings
    app.state.orchestrator = Orchestrator(settings, providers or build_providers(settings))
    app.state.on_complete = on_complete
    app.state.run_tasks = set()
    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import os
    import uvicorn

    settings = app.state.settings
    reload_enabled = os.getenv("RELAY_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "relay.main:app",
            host=settings.host,
            port=settings.port,
            reload=reload_enabled,
        )
    except KeyboardInterrupt:
        pass
