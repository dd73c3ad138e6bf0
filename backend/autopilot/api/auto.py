"""
Autopilot API Routes
====================

Thin HTTP surface over the cycle engine.

Endpoints:
- POST   /api/v1/auto/start                  - Start a session
- POST   /api/v1/auto/pause                  - Pause the running session
- POST   /api/v1/auto/resume                 - Resume a paused session
- POST   /api/v1/auto/stop                   - Stop and discard engine state
- GET    /api/v1/auto/status                 - Engine status and stats
- POST   /api/v1/auto/prompts                - Add an instruction mid-session
- GET    /api/v1/auto/sessions/{id}/cycles   - Cycle history
- GET    /api/v1/auto/sessions/{id}/findings - Findings of a session
- WS     /api/v1/auto/stream                 - Buffered history, then live events
"""

import asyncio
from typing import List

import structlog
from fastapi import APIRouter, HTTPException, WebSocket, WebSocketDisconnect, status

from autopilot.api.deps import DbSession, Engine
from autopilot.core import repository
from autopilot.core.config import settings
from autopilot.core.engine.cycle_engine import EngineStateError
from autopilot.core.events import AutoEvent
from autopilot.core.schemas import (
    CycleSchema,
    EngineStatus,
    FindingSchema,
    MessageResponse,
    StartRequest,
    UserPromptRequest,
    UserPromptResponse,
)

logger = structlog.get_logger()

router = APIRouter(prefix="/api/v1/auto", tags=["auto"])


def _conflict(exc: EngineStateError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))


class ClientQueue:
    """
    Bounded event queue for one stream client.

    While a slow client has a full queue, new events are dropped for it
    and counted; other listeners are unaffected.
    """

    def __init__(self, maxsize: int):
        self.queue: asyncio.Queue[AutoEvent] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def put(self, event: AutoEvent) -> None:
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            if self.dropped == 1:
                logger.warning("Event stream client is falling behind, dropping events")

    async def get(self) -> AutoEvent:
        return await self.queue.get()


# ==========================================================================
# Lifecycle
# ==========================================================================

@router.post(
    "/start",
    response_model=MessageResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start autonomous mode",
    responses={409: {"description": "Already running or not startable"}},
)
async def start(request: StartRequest, engine: Engine) -> MessageResponse:
    try:
        session = await engine.start(request.target_project, request.initial_prompt)
    except EngineStateError as e:
        raise _conflict(e)
    return MessageResponse(
        message="Autonomous mode started",
        data={"session_id": session.id, "target_project": session.target_project},
    )


@router.post("/pause", response_model=MessageResponse, summary="Pause the running session")
async def pause(engine: Engine) -> MessageResponse:
    try:
        await engine.pause()
    except EngineStateError as e:
        raise _conflict(e)
    return MessageResponse(message="Autonomous mode paused")


@router.post("/resume", response_model=MessageResponse, summary="Resume a paused session")
async def resume(engine: Engine) -> MessageResponse:
    try:
        await engine.resume()
    except EngineStateError as e:
        raise _conflict(e)
    return MessageResponse(message="Autonomous mode resumed")


@router.post("/stop", response_model=MessageResponse, summary="Stop the session")
async def stop(engine: Engine) -> MessageResponse:
    stopped = await engine.stop()
    return MessageResponse(message="Autonomous mode stopped" if stopped else "Autonomous mode was not running")


@router.get("/status", response_model=EngineStatus, summary="Engine status")
async def get_status(engine: Engine) -> EngineStatus:
    return await engine.get_status()


@router.post(
    "/prompts",
    response_model=UserPromptResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Add an instruction to the running session",
)
async def add_prompt(request: UserPromptRequest, engine: Engine) -> UserPromptResponse:
    try:
        prompt = await engine.add_user_prompt(request.content)
    except EngineStateError as e:
        raise _conflict(e)
    return UserPromptResponse.model_validate(prompt)


# ==========================================================================
# History
# ==========================================================================

@router.get("/sessions/{session_id}/cycles", response_model=List[CycleSchema], summary="Cycle history")
async def list_cycles(session_id: str, db: DbSession) -> List[CycleSchema]:
    if await repository.get_session(db, session_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Session {session_id} not found",
        )
    cycles = await repository.list_cycles(db, session_id)
    return [CycleSchema.model_validate(c) for c in cycles]


@router.get("/sessions/{session_id}/findings", response_model=List[FindingSchema], summary="Session findings")
async def list_findings(session_id: str, db: DbSession) -> List[FindingSchema]:
    if await repository.get_session(db, session_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Session {session_id} not found",
        )
    findings = await repository.list_findings(db, session_id)
    return [FindingSchema.model_validate(f) for f in findings]


# ==========================================================================
# WebSocket Event Stream
# ==========================================================================

@router.websocket("/stream")
async def stream_events(websocket: WebSocket):
    """
    Stream engine events.

    On connect the client receives the buffered history, then live events.

    Message format:
    {
        "type": "<event type>",
        "data": {...},
        "timestamp": "<ISO 8601>"
    }
    """
    engine = getattr(websocket.app.state, "engine", None)
    await websocket.accept()
    if engine is None:
        await websocket.send_json({"type": "error", "data": {"message": "Engine not initialized"}})
        await websocket.close()
        return

    queue = ClientQueue(max(settings.STREAM_QUEUE_SIZE, engine.hub.buffer.maxlen or 0))
    detach = engine.add_listener(queue.put)
    try:
        while True:
            event = await queue.get()
            await websocket.send_json(event.to_dict())
    except WebSocketDisconnect:
        pass
    finally:
        detach()
        logger.debug("Event stream client disconnected", dropped_events=queue.dropped)
