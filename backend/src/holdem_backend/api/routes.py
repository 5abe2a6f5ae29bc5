from __future__ import annotations

from fastapi import APIRouter, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from holdem_backend.api.deps import bot_scheduler, engine_service
from holdem_backend.engine.errors import EngineError, NotFoundError, PersistenceConflict, ValidationError
from holdem_backend.engine.models import (
    ActionType,
    GameState,
    Player,
    SimulatorConfig,
    TimeoutResult,
    mask_for_viewer,
)
from holdem_backend.repo.rows import ActionLogEntry


router = APIRouter(prefix="/api")


class CreateGameRequest(BaseModel):
    big_blind: int | None = Field(default=None, gt=0)
    small_blind: int | None = Field(default=None, gt=0)
    turn_ms: int | None = Field(default=None, gt=0)

    model_config = ConfigDict(extra="forbid")


class CreateGameResponse(BaseModel):
    game_id: str
    state: GameState


class JoinRequest(BaseModel):
    user_id: str = Field(min_length=1)
    initial_stack: int = Field(ge=0)
    display_name: str | None = None

    model_config = ConfigDict(extra="forbid")


class ActionRequest(BaseModel):
    player_id: str = Field(min_length=1)
    action: ActionType
    amount: int | None = None

    model_config = ConfigDict(extra="forbid")


class LeaveRequest(BaseModel):
    user_id: str = Field(min_length=1)

    model_config = ConfigDict(extra="forbid")


class TimeoutRequest(BaseModel):
    player_id: str = Field(min_length=1)
    reported_by: str | None = None

    model_config = ConfigDict(extra="forbid")


class BotStatus(BaseModel):
    game_id: str
    running: bool
    submitted: int = 0
    discarded: int = 0


def _status_for(exc: EngineError) -> int:
    if isinstance(exc, ValidationError):
        return 400
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, PersistenceConflict):
        return 409
    return 500


async def engine_error_handler(request: Request, exc: EngineError) -> JSONResponse:
    return JSONResponse(
        status_code=_status_for(exc),
        content={"detail": {"code": exc.code, "message": exc.message}},
    )


def _bot_status(game_id: str) -> BotStatus:
    worker = bot_scheduler.worker(game_id)
    if worker is None:
        return BotStatus(game_id=game_id, running=False)
    return BotStatus(
        game_id=game_id,
        running=bot_scheduler.is_running(game_id),
        submitted=worker.submitted,
        discarded=worker.discarded,
    )


@router.post("/games", response_model=CreateGameResponse)
async def create_game(request: CreateGameRequest) -> CreateGameResponse:
    game_id = await engine_service.create_game(
        big_blind=request.big_blind,
        small_blind=request.small_blind,
        turn_ms=request.turn_ms,
    )
    state = await engine_service.get_state(game_id)
    return CreateGameResponse(game_id=game_id, state=mask_for_viewer(state, None))


@router.get("/games/{game_id}", response_model=GameState)
async def get_game(game_id: str, viewer_id: str | None = None) -> GameState:
    state = await engine_service.get_state(game_id)
    return mask_for_viewer(state, viewer_id)


@router.post("/games/{game_id}/join", response_model=Player)
async def join_game(game_id: str, request: JoinRequest) -> Player:
    return await engine_service.join(
        game_id,
        request.user_id,
        request.initial_stack,
        display_name=request.display_name,
    )


@router.post("/games/{game_id}/actions", response_model=GameState)
async def submit_action(game_id: str, request: ActionRequest) -> GameState:
    state = await engine_service.act(game_id, request.player_id, request.action, request.amount)
    return mask_for_viewer(state, request.player_id)


@router.get("/games/{game_id}/actions", response_model=list[ActionLogEntry])
async def list_actions(game_id: str, hand_id: int | None = None) -> list[ActionLogEntry]:
    await engine_service.get_state(game_id)
    return await engine_service.get_actions(game_id, hand_id)


@router.post("/games/{game_id}/advance", response_model=GameState)
async def advance_game(game_id: str, viewer_id: str | None = None) -> GameState:
    state = await engine_service.advance(game_id)
    return mask_for_viewer(state, viewer_id)


@router.post("/games/{game_id}/reset", response_model=GameState)
async def reset_game(game_id: str, viewer_id: str | None = None) -> GameState:
    state = await engine_service.reset(game_id)
    return mask_for_viewer(state, viewer_id)


@router.post("/games/{game_id}/leave", response_model=GameState)
async def leave_game(game_id: str, request: LeaveRequest) -> GameState:
    state = await engine_service.leave(game_id, request.user_id)
    return mask_for_viewer(state, None)


@router.post("/games/{game_id}/timeout", response_model=TimeoutResult)
async def claim_timeout(game_id: str, request: TimeoutRequest) -> TimeoutResult:
    result = await engine_service.claim_timeout(game_id, request.player_id, reported_by=request.reported_by)
    if result.new_game_state is not None:
        result.new_game_state = mask_for_viewer(result.new_game_state, request.reported_by or request.player_id)
    return result


@router.get("/games/{game_id}/bots", response_model=BotStatus)
async def get_bots(game_id: str) -> BotStatus:
    return _bot_status(game_id)


@router.post("/games/{game_id}/bots", response_model=BotStatus)
async def start_bots(game_id: str, config: SimulatorConfig) -> BotStatus:
    await bot_scheduler.start(game_id, config)
    return _bot_status(game_id)


@router.delete("/games/{game_id}/bots", response_model=BotStatus)
async def stop_bots(game_id: str) -> BotStatus:
    await bot_scheduler.stop(game_id)
    return _bot_status(game_id)


@router.websocket("/ws/games/{game_id}")
async def game_socket(websocket: WebSocket, game_id: str, viewer_id: str | None = None) -> None:
    await websocket.accept()
    try:
        state = await engine_service.get_state(game_id)
    except NotFoundError:
        await websocket.close(code=1008)
        return

    queue = await engine_service.subscribe(game_id)
    try:
        await websocket.send_json({"type": "STATE", "payload": mask_for_viewer(state, viewer_id).model_dump(mode="json")})
        while True:
            state = await queue.get()
            await websocket.send_json({"type": "STATE", "payload": mask_for_viewer(state, viewer_id).model_dump(mode="json")})
    except WebSocketDisconnect:
        pass
    finally:
        await engine_service.unsubscribe(game_id, queue)
