from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .db import get_settings
from .errors import GameError, InvalidState, NotFound, TransientFailure, Unauthorized
from .events import EventStore, event_store
from .game import GameSessionManager, controller
from .gateway import Gateway, gateway
from .logging_config import configure_logging
from .models import Quiz, UserProfile
from .results import build_user_results, export_csv
from .schemas import ExportIn, PublicSessionOut, QuizUpsertIn, UserUpsertIn

settings = get_settings()
router = APIRouter()


def get_controller(request: Request) -> GameSessionManager:
    return request.app.state.controller


def get_events(request: Request) -> EventStore:
    return request.app.state.events


def require_admin(x_admin_key: Optional[str] = Header(default=None)):
    if x_admin_key != settings.ADMIN_KEY:
        raise HTTPException(status_code=401, detail="Invalid admin key")


def _status_for(exc: GameError) -> int:
    if isinstance(exc, NotFound):
        return 404
    if isinstance(exc, Unauthorized):
        return 403
    if isinstance(exc, InvalidState):
        return 409
    if isinstance(exc, TransientFailure):
        return 503
    return 400


async def game_error_handler(request: Request, exc: GameError):
    return JSONResponse(
        status_code=_status_for(exc),
        content={"success": False, "message": exc.message, "code": exc.code},
    )


@router.get("/api/health")
async def health():
    return {"ok": True}


@router.get("/api/sessions/by-code/{game_code}", response_model=PublicSessionOut)
async def get_session_by_code(game_code: str, manager: GameSessionManager = Depends(get_controller)):
    session = await manager.get_session_by_code(game_code)
    return session.public()


@router.get("/api/sessions/{session_id}", response_model=PublicSessionOut)
async def get_session(session_id: str, manager: GameSessionManager = Depends(get_controller)):
    session = await manager.get_session(session_id)
    return session.public()


@router.get("/api/teachers/{teacher_id}/sessions")
async def list_teacher_sessions(teacher_id: str, manager: GameSessionManager = Depends(get_controller)):
    sessions = await manager.list_teacher_sessions(teacher_id)
    return {"sessions": [s.public() for s in sessions]}


@router.get("/api/sessions/{session_id}/results")
async def session_results(session_id: str, manager: GameSessionManager = Depends(get_controller)):
    return {"success": True, "results": await manager.get_results(session_id)}


@router.get("/api/sessions/{session_id}/results/{user_id}")
async def user_results(session_id: str, user_id: str, manager: GameSessionManager = Depends(get_controller)):
    session = await manager.get_session(session_id)
    quiz = await manager.get_quiz_for(session)
    if quiz is None:
        raise HTTPException(status_code=404, detail="Quiz not found")
    return {"success": True, "results": build_user_results(session, quiz, user_id)}


@router.post("/api/sessions/{session_id}/export")
async def export_results(
    session_id: str,
    payload: ExportIn,
    manager: GameSessionManager = Depends(get_controller),
):
    if payload.format != "csv":
        raise HTTPException(status_code=400, detail="Unsupported export format")
    session = await manager.get_session(session_id)
    return {
        "success": True,
        "data": export_csv(session, await manager.get_quiz_for(session)),
        "filename": f"game-results-{session_id}.csv",
    }


@router.get("/api/sessions/{session_id}/events")
async def list_events(
    session_id: str,
    after: int | None = None,
    limit: int = 200,
    events: EventStore = Depends(get_events),
):
    items = await events.list(session_id, after=after, limit=limit)
    latest_seq = items[-1]["seq"] if items else after
    return {"events": items, "latest_seq": latest_seq}


@router.post("/api/admin/quizzes")
async def upsert_quiz(
    payload: QuizUpsertIn,
    manager: GameSessionManager = Depends(get_controller),
    _: None = Depends(require_admin),
):
    await manager.quizzes.upsert_quiz(Quiz(**payload.model_dump()))
    return {"ok": True}


@router.post("/api/admin/users")
async def upsert_user(
    payload: UserUpsertIn,
    manager: GameSessionManager = Depends(get_controller),
    _: None = Depends(require_admin),
):
    await manager.users.upsert_user(UserProfile(**payload.model_dump()))
    return {"ok": True}


@router.get("/api/admin/verify")
async def verify(_: None = Depends(require_admin)):
    return {"ok": True}


def create_app(
    manager: GameSessionManager = controller,
    ws_gateway: Gateway = gateway,
    events: EventStore = event_store,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(application: FastAPI):
        configure_logging(settings.LOG_LEVEL)
        await manager.store.ensure_indexes()
        yield

    application = FastAPI(title="quizlive API", lifespan=lifespan)
    application.state.controller = manager
    application.state.events = events

    origins = [o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()]
    application.add_middleware(
        CORSMiddleware,
        allow_origins=origins or ["*"],
        allow_origin_regex=settings.CORS_ORIGIN_REGEX or None,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    application.add_exception_handler(GameError, game_error_handler)
    application.include_router(router)

    @application.websocket("/ws")
    async def game_socket(websocket: WebSocket):
        await ws_gateway.serve(websocket)

    return application


app = create_app()
