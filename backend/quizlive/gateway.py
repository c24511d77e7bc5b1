"""Websocket gateway for live games.

Each connected client gets one :class:`Connection`. Connections are grouped
per session (the equivalent of a socket.io room) and client commands are
routed to the :class:`GameSessionManager`. A command either fails, in which
case only its sender hears about it, or succeeds and is acknowledged to the
sender before its broadcasts go out to the session's group.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from fastapi import WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder
from pydantic import ValidationError

from .errors import GameError, Unauthorized
from .events import EventStore, event_store
from .game import GameSessionManager, controller
from .results import build_session_results
from .schemas import (
    CreateGameIn,
    JoinGameIn,
    KickParticipantIn,
    LeaveGameIn,
    NextQuestionIn,
    QuestionTimeoutIn,
    RejoinSessionIn,
    SessionRefIn,
    SubmitAnswerIn,
    TeacherCommandIn,
)
from .utils import sort_leaderboard

logger = logging.getLogger(__name__)

Broadcast = Tuple[str, str, Dict[str, Any]]  # (session_id, event, data)
Reply = Tuple[Dict[str, Any], List[Broadcast]]


class Connection:
    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self.connection_id = uuid.uuid4().hex
        self.session_id: Optional[str] = None
        self.user_id: Optional[str] = None

    def bind(self, session_id: str, user_id: Optional[str] = None) -> None:
        self.session_id = session_id
        self.user_id = user_id

    def unbind(self) -> None:
        self.session_id = None
        self.user_id = None

    async def send(self, event: str, data: Dict[str, Any], ack: Any = None) -> None:
        frame: Dict[str, Any] = {"event": event, "data": jsonable_encoder(data)}
        if ack is not None:
            frame["ack"] = ack
        await self.websocket.send_json(frame)


class SessionHub:
    """Session-scoped broadcast groups."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._groups: Dict[str, List[Connection]] = {}

    async def add(self, session_id: str, conn: Connection) -> None:
        async with self._lock:
            members = self._groups.setdefault(session_id, [])
            if conn not in members:
                members.append(conn)

    async def remove(self, session_id: str, conn: Connection) -> None:
        async with self._lock:
            members = [c for c in self._groups.get(session_id, []) if c is not conn]
            if members:
                self._groups[session_id] = members
            else:
                self._groups.pop(session_id, None)

    async def members(self, session_id: str) -> List[Connection]:
        async with self._lock:
            return list(self._groups.get(session_id, []))


class Gateway:
    def __init__(self, manager: GameSessionManager, events: Optional[EventStore] = None):
        self.manager = manager
        self.events = events
        self.hub = SessionHub()
        self._handlers: Dict[str, Callable[[Connection, Dict[str, Any]], Awaitable[Reply]]] = {
            "create-game": self._create_game,
            "join-game": self._join_game,
            "rejoin-session": self._rejoin_session,
            "get-current-question": self._get_current_question,
            "leave-game": self._leave_game,
            "kick-participant": self._kick_participant,
            "start-game": self._start_game,
            "next-question": self._next_question,
            "question-timeout": self._question_timeout,
            "pause-game": self._pause_game,
            "resume-game": self._resume_game,
            "submit-answer": self._submit_answer,
            "end-game": self._end_game,
        }

    async def serve(self, websocket: WebSocket) -> None:
        await websocket.accept()
        conn = Connection(websocket)
        logger.info("Client connected: %s", conn.connection_id)
        await conn.send("connected", {"connection_id": conn.connection_id})
        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    frame = json.loads(raw)
                except ValueError:
                    await conn.send("ack", {"success": False, "error": "Malformed message"})
                    continue
                await self.dispatch(conn, frame)
        except WebSocketDisconnect:
            pass
        finally:
            await self._handle_disconnect(conn)

    async def dispatch(self, conn: Connection, frame: Any) -> None:
        if not isinstance(frame, dict):
            await conn.send("ack", {"success": False, "error": "Malformed message"})
            return

        event = frame.get("event")
        data = frame.get("data") or {}
        ack = frame.get("ack")
        handler = self._handlers.get(event)
        if handler is None:
            await conn.send("ack", {"success": False, "error": f"Unknown event: {event}"}, ack)
            return

        try:
            reply, broadcasts = await handler(conn, data)
        except GameError as exc:
            logger.info("%s from %s failed: %s", event, conn.connection_id, exc.message)
            await conn.send("ack", {"success": False, "error": exc.message, "code": exc.code}, ack)
            return
        except ValidationError as exc:
            details = exc.errors(include_url=False, include_context=False, include_input=False)
            await conn.send(
                "ack",
                {"success": False, "error": "Invalid payload", "code": "invalid_payload", "details": details},
                ack,
            )
            return
        except Exception:
            logger.exception("%s from %s crashed", event, conn.connection_id)
            await conn.send("ack", {"success": False, "error": f"Failed to handle {event}"}, ack)
            return

        await conn.send("ack", {"success": True, **reply}, ack)
        for session_id, name, payload in broadcasts:
            await self.broadcast(session_id, name, payload)

    async def broadcast(self, session_id: str, event: str, data: Dict[str, Any]) -> None:
        payload = jsonable_encoder(data)
        if self.events is not None:
            await self.events.append(session_id, {"type": event, **payload})
        for member in await self.hub.members(session_id):
            try:
                await member.send(event, payload)
            except Exception:
                logger.info("Dropping dead connection %s from %s", member.connection_id, session_id)
                await self.hub.remove(session_id, member)

    async def _attach(self, conn: Connection, session_id: str, user_id: Optional[str] = None) -> None:
        if conn.session_id and conn.session_id != session_id:
            await self.hub.remove(conn.session_id, conn)
        conn.bind(session_id, user_id)
        await self.hub.add(session_id, conn)

    async def _handle_disconnect(self, conn: Connection) -> None:
        logger.info("Client disconnected: %s", conn.connection_id)
        session_id, user_id = conn.session_id, conn.user_id
        if session_id is None:
            return
        await self.hub.remove(session_id, conn)
        if user_id is None:
            return
        # A refreshed page may have rejoined on a new socket before this one closed.
        if any(member.user_id == user_id for member in await self.hub.members(session_id)):
            logger.info("User %s still connected to %s, keeping them in the game", user_id, session_id)
            return
        try:
            removed = await self.manager.remove_participant(session_id, user_id)
            if removed:
                await self.broadcast(session_id, "participant-left", await self._left_payload(session_id, user_id))
        except Exception:
            logger.exception("Cleanup for %s in %s failed", user_id, session_id)

    async def _left_payload(self, session_id: str, user_id: str) -> Dict[str, Any]:
        session = await self.manager.get_session(session_id)
        return {"user_id": user_id, "participant_count": len(session.participants)}

    # ---- command handlers ----

    async def _create_game(self, conn: Connection, data: Dict[str, Any]) -> Reply:
        payload = CreateGameIn(**data)
        created = await self.manager.create_session(
            payload.quiz_id, payload.teacher_id, payload.class_id, payload.settings
        )
        await self._attach(conn, created.session_id)
        return {"session_id": created.session_id, "game_code": created.game_code}, []

    async def _join_game(self, conn: Connection, data: Dict[str, Any]) -> Reply:
        payload = JoinGameIn(**data)
        result = await self.manager.join_by_code(payload.game_code, payload.user_id)
        session_id = result.session.session_id
        await self._attach(conn, session_id, payload.user_id)

        broadcasts: List[Broadcast] = []
        if result.joined:
            broadcasts.append(
                (
                    session_id,
                    "participant-joined",
                    {
                        "participant": result.participant.public(),
                        "participant_count": len(result.session.participants),
                    },
                )
            )
        return {"session": result.session.public()}, broadcasts

    async def _rejoin_session(self, conn: Connection, data: Dict[str, Any]) -> Reply:
        payload = RejoinSessionIn(**data)
        session = await self.manager.get_session(payload.session_id)
        user_id = payload.user_id if payload.user_id in session.participants else None
        await self._attach(conn, session.session_id, user_id)
        return {"session": session.public()}, []

    async def _get_current_question(self, conn: Connection, data: Dict[str, Any]) -> Reply:
        payload = SessionRefIn(**data)
        view = await self.manager.get_current_question(payload.session_id)
        return view.as_payload(), []

    async def _leave_game(self, conn: Connection, data: Dict[str, Any]) -> Reply:
        payload = LeaveGameIn(**data)
        removed = await self.manager.remove_participant(payload.session_id, payload.user_id)
        if conn.session_id == payload.session_id:
            await self.hub.remove(payload.session_id, conn)
            conn.unbind()
        if not removed:
            return {}, []
        left = await self._left_payload(payload.session_id, payload.user_id)
        return {}, [(payload.session_id, "participant-left", left)]

    async def _kick_participant(self, conn: Connection, data: Dict[str, Any]) -> Reply:
        payload = KickParticipantIn(**data)
        try:
            removed = await self.manager.kick_participant(payload.session_id, payload.user_id, payload.teacher_id)
        except Unauthorized:
            logger.info("Ignoring kick of %s by non-owner %s", payload.user_id, payload.teacher_id)
            return {"kicked": False}, []
        if not removed:
            return {"kicked": False}, []

        # The kicked client stays in the group long enough to hear about it,
        # but its disconnect must not try to remove it a second time.
        for member in await self.hub.members(payload.session_id):
            if member.user_id == payload.user_id:
                member.user_id = None

        left = await self._left_payload(payload.session_id, payload.user_id)
        return {"kicked": True}, [
            (payload.session_id, "participant-kicked", {"user_id": payload.user_id}),
            (payload.session_id, "participant-left", left),
        ]

    async def _start_game(self, conn: Connection, data: Dict[str, Any]) -> Reply:
        payload = TeacherCommandIn(**data)
        session = await self.manager.start_session(payload.session_id, payload.teacher_id)
        view = await self.manager.get_current_question(payload.session_id)
        started = {
            "session_id": session.session_id,
            "started_at": session.started_at,
            **view.as_payload(),
        }
        return {}, [(session.session_id, "game-started", started)]

    async def _next_question(self, conn: Connection, data: Dict[str, Any]) -> Reply:
        payload = NextQuestionIn(**data)
        result = await self.manager.advance_question(
            payload.session_id, payload.teacher_id, payload.expected_index
        )
        reply = {**result.view.as_payload(), "advanced": result.advanced}
        if not result.advanced:
            return reply, []
        return reply, [(payload.session_id, "question-changed", result.view.as_payload())]

    async def _submit_answer(self, conn: Connection, data: Dict[str, Any]) -> Reply:
        payload = SubmitAnswerIn(**data)
        outcome = await self.manager.submit_answer(
            payload.session_id,
            payload.user_id,
            payload.question_id,
            payload.answer,
            payload.time_spent,
            payload.user_name,
        )
        if conn.session_id != payload.session_id or conn.user_id is None:
            await self._attach(conn, payload.session_id, payload.user_id)

        reply = {"is_correct": outcome.is_correct, "points": outcome.points}
        if outcome.duplicate:
            return {**reply, "duplicate": True}, []
        return reply, [
            (payload.session_id, "answer-submitted", {"user_id": payload.user_id, "question_id": payload.question_id}),
            (payload.session_id, "leaderboard-updated", {"leaderboard": sort_leaderboard(outcome.session.roster)}),
        ]

    async def _question_timeout(self, conn: Connection, data: Dict[str, Any]) -> Reply:
        payload = QuestionTimeoutIn(**data)
        view = await self.manager.time_out_question(payload.session_id, payload.question_index)
        if view is None:
            return {"timed_out": False}, []
        timed_out = {"session_id": payload.session_id, "question_index": view.question_index}
        return {"timed_out": True}, [(payload.session_id, "question-timed-out", timed_out)]

    async def _pause_game(self, conn: Connection, data: Dict[str, Any]) -> Reply:
        payload = TeacherCommandIn(**data)
        if not await self.manager.pause_session(payload.session_id, payload.teacher_id):
            return {"paused": True}, []
        return {"paused": True}, [(payload.session_id, "game-paused", {"session_id": payload.session_id})]

    async def _resume_game(self, conn: Connection, data: Dict[str, Any]) -> Reply:
        payload = TeacherCommandIn(**data)
        if not await self.manager.resume_session(payload.session_id, payload.teacher_id):
            return {"paused": False}, []
        return {"paused": False}, [(payload.session_id, "game-resumed", {"session_id": payload.session_id})]

    async def _end_game(self, conn: Connection, data: Dict[str, Any]) -> Reply:
        payload = TeacherCommandIn(**data)
        result = await self.manager.complete_session(payload.session_id, payload.teacher_id)
        results = build_session_results(result.session, await self.manager.get_quiz_for(result.session))
        # A repeat end-game re-announces results that never made it out.
        if result.session.results_announced or not await self.manager.mark_results_announced(payload.session_id):
            return {"results": results}, []
        return {"results": results}, [(payload.session_id, "game-ended", results)]


gateway = Gateway(controller, event_store)
