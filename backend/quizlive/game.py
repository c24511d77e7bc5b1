from __future__ import annotations

import asyncio
import logging
import math
import random
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from pymongo.errors import AutoReconnect, DuplicateKeyError

from .db import Settings, db, get_settings
from .errors import (
    GameAlreadyStarted,
    GameCodeNotFound,
    GameCodeUnavailable,
    GameNotStarted,
    InvalidAnswer,
    NoMoreQuestions,
    NoParticipants,
    QuestionNotFound,
    QuizNotFound,
    SessionNotFound,
    TransientFailure,
    Unauthorized,
    UserNotFound,
    WriteConflict,
)
from .grading import is_correct_answer, score_answer, strip_answer_key, time_limit_for
from .lookups import QuizDirectory, UserDirectory
from .models import (
    Action,
    Answer,
    AnswerValue,
    Participant,
    Quiz,
    Session,
    SessionSettings,
    SessionStatus,
    ensure_allowed,
    is_allowed,
)
from .results import build_session_results
from .store import SessionStore, UpdateFn
from .utils import generate_game_code

logger = logging.getLogger(__name__)

RECOVERED_PLAYER_NAME = "Player"


@dataclass(slots=True)
class CreatedSession:
    session_id: str
    game_code: str


@dataclass(slots=True)
class JoinResult:
    session: Session
    participant: Participant
    joined: bool


@dataclass(slots=True)
class QuestionView:
    question: Dict[str, Any]
    question_index: int
    total_questions: int
    time_limit: int

    def as_payload(self) -> Dict[str, Any]:
        return {
            "question": self.question,
            "question_index": self.question_index,
            "total_questions": self.total_questions,
            "time_limit": self.time_limit,
        }


@dataclass(slots=True)
class AdvanceResult:
    view: QuestionView
    advanced: bool


@dataclass(slots=True)
class AnswerOutcome:
    session: Session
    is_correct: bool
    points: int
    duplicate: bool = False
    recovered: bool = False


@dataclass(slots=True)
class CompleteResult:
    session: Session
    completed_now: bool


class GameSessionManager:
    """State machine for live game sessions.

    Every change to a session goes through ``SessionStore.mutate``; update
    functions re-check the session's state on each (possibly retried) fresh
    read, so no decision is ever made against a stale copy.
    """

    def __init__(
        self,
        store: SessionStore,
        quizzes: QuizDirectory,
        users: UserDirectory,
        config: Settings | None = None,
    ):
        self.store = store
        self.quizzes = quizzes
        self.users = users
        self.config = config or get_settings()

    async def _mutate(self, session_id: str, update_fn: UpdateFn) -> Session:
        attempts = self.config.TRANSIENT_RETRIES + 1
        for attempt in range(1, attempts + 1):
            try:
                return await self.store.mutate(session_id, update_fn)
            except (WriteConflict, AutoReconnect) as exc:
                logger.warning(
                    "Transient store failure on session %s (attempt %d/%d): %s",
                    session_id,
                    attempt,
                    attempts,
                    exc,
                )
                if attempt == attempts:
                    raise TransientFailure() from exc
                await asyncio.sleep(random.uniform(0, self.config.TRANSIENT_BACKOFF_SEC * attempt))
        raise TransientFailure()  # pragma: no cover - loop always returns or raises

    @staticmethod
    def _authorize(session: Session, teacher_id: str) -> None:
        if session.teacher_id != teacher_id:
            raise Unauthorized()

    async def _require_quiz(self, quiz_id: str) -> Quiz:
        quiz = await self.quizzes.get_quiz(quiz_id)
        if quiz is None:
            raise QuizNotFound()
        return quiz

    def _question_view(self, session: Session, quiz: Quiz) -> QuestionView:
        question = quiz.questions[session.current_question_index]
        return QuestionView(
            question=strip_answer_key(question),
            question_index=session.current_question_index,
            total_questions=len(quiz.questions),
            time_limit=time_limit_for(question, session.settings, self.config.DEFAULT_TIME_LIMIT_SEC),
        )

    # ---- reads ----

    async def get_session(self, session_id: str) -> Session:
        session = await self.store.get(session_id)
        if session is None:
            raise SessionNotFound()
        return session

    async def get_session_by_code(self, game_code: str) -> Session:
        session = await self.store.get_by_code(game_code.strip())
        if session is None:
            raise GameCodeNotFound()
        return session

    async def list_teacher_sessions(self, teacher_id: str) -> List[Session]:
        return await self.store.list_for_teacher(teacher_id)

    async def get_quiz_for(self, session: Session) -> Quiz | None:
        return await self.quizzes.get_quiz(session.quiz_id)

    async def get_results(self, session_id: str) -> Dict[str, Any]:
        session = await self.get_session(session_id)
        return build_session_results(session, await self.get_quiz_for(session))

    # ---- lifecycle ----

    async def create_session(
        self,
        quiz_id: str,
        teacher_id: str,
        class_id: str,
        settings: SessionSettings | Dict[str, Any] | None = None,
    ) -> CreatedSession:
        await self._require_quiz(quiz_id)
        if not isinstance(settings, SessionSettings):
            settings = SessionSettings(**(settings or {}))

        for _ in range(self.config.GAME_CODE_MAX_ATTEMPTS):
            code = generate_game_code()
            if await self.store.get_by_code(code) is not None:
                logger.info("Game code %s already live, drawing another", code)
                continue

            session = Session(
                session_id=uuid.uuid4().hex,
                quiz_id=quiz_id,
                teacher_id=teacher_id,
                class_id=class_id,
                game_code=code,
                settings=settings,
            )
            try:
                await self.store.create(session)
            except DuplicateKeyError:
                logger.info("Game code %s claimed concurrently, drawing another", code)
                continue

            logger.info("Game %s created by teacher %s with code %s", session.session_id, teacher_id, code)
            return CreatedSession(session_id=session.session_id, game_code=code)

        raise GameCodeUnavailable()

    async def add_participant(
        self,
        session_id: str,
        user_id: str,
        user_name: str,
        avatar_url: Optional[str] = None,
    ) -> JoinResult:
        joined = False

        def update(session: Session) -> Optional[bool]:
            nonlocal joined
            joined = False
            ensure_allowed(session.status, Action.JOIN)
            if user_id in session.participants:
                return False
            session.participants[user_id] = Participant(
                user_id=user_id,
                user_name=user_name,
                avatar_url=avatar_url,
            )
            joined = True
            return None

        session = await self._mutate(session_id, update)
        if joined:
            logger.info("User %s joined game %s (total: %d)", user_id, session_id, len(session.participants))
        return JoinResult(session=session, participant=session.participants[user_id], joined=joined)

    async def join_by_code(self, game_code: str, user_id: str) -> JoinResult:
        session = await self.get_session_by_code(game_code)
        if session.status != SessionStatus.WAITING:
            raise GameAlreadyStarted()

        profile = await self.users.get_user_profile(user_id)
        if profile is None:
            raise UserNotFound()

        return await self.add_participant(session.session_id, user_id, profile.display_name, profile.avatar_url)

    async def remove_participant(self, session_id: str, user_id: str) -> bool:
        removed = False

        def update(session: Session) -> Optional[bool]:
            nonlocal removed
            removed = False
            # Completed sessions are history; leaving one changes nothing.
            if not is_allowed(session.status, Action.LEAVE) or user_id not in session.participants:
                return False
            del session.participants[user_id]
            removed = True
            return None

        await self._mutate(session_id, update)
        if removed:
            logger.info("User %s left game %s", user_id, session_id)
        return removed

    async def kick_participant(self, session_id: str, user_id: str, teacher_id: str) -> bool:
        removed = False

        def update(session: Session) -> Optional[bool]:
            nonlocal removed
            removed = False
            self._authorize(session, teacher_id)
            if not is_allowed(session.status, Action.LEAVE) or user_id not in session.participants:
                return False
            del session.participants[user_id]
            removed = True
            return None

        await self._mutate(session_id, update)
        if removed:
            logger.info("User %s kicked from game %s by %s", user_id, session_id, teacher_id)
        return removed

    async def start_session(self, session_id: str, teacher_id: str) -> Session:
        def update(session: Session) -> None:
            self._authorize(session, teacher_id)
            ensure_allowed(session.status, Action.START)
            # Checked against the fresh read so late joiners are never dropped.
            if not session.participants:
                raise NoParticipants()
            session.transition_to(SessionStatus.ACTIVE)
            session.current_question_index = 0

        session = await self._mutate(session_id, update)
        logger.info("Game %s started with %d participants", session_id, len(session.participants))
        return session

    async def advance_question(
        self,
        session_id: str,
        teacher_id: str,
        expected_index: Optional[int] = None,
    ) -> AdvanceResult:
        """Move to the next question.

        With ``expected_index`` the call only advances from that index; a
        caller that lost a race against another advance gets the current
        question back with ``advanced=False`` instead of skipping one.
        """
        current = await self.get_session(session_id)
        self._authorize(current, teacher_id)
        quiz = await self._require_quiz(current.quiz_id)
        last_index = len(quiz.questions) - 1
        advanced = False

        def update(session: Session) -> Optional[bool]:
            nonlocal advanced
            advanced = False
            self._authorize(session, teacher_id)
            ensure_allowed(session.status, Action.ADVANCE)
            if session.current_question_index >= last_index:
                raise NoMoreQuestions()
            if expected_index is not None and session.current_question_index != expected_index:
                return False
            session.current_question_index += 1
            advanced = True
            return None

        session = await self._mutate(session_id, update)
        if advanced:
            logger.info(
                "Game %s advanced to question %d/%d",
                session_id,
                session.current_question_index + 1,
                len(quiz.questions),
            )
        return AdvanceResult(view=self._question_view(session, quiz), advanced=advanced)

    async def get_current_question(self, session_id: str) -> QuestionView:
        session = await self.get_session(session_id)
        ensure_allowed(session.status, Action.ANSWER)
        quiz = await self._require_quiz(session.quiz_id)
        if not quiz.questions:
            raise QuestionNotFound("This quiz has no questions")
        return self._question_view(session, quiz)

    async def validate_answer(self, quiz_id: str, question_id: str, answer: AnswerValue) -> bool:
        quiz = await self._require_quiz(quiz_id)
        question = quiz.question(question_id)
        if question is None:
            raise QuestionNotFound()
        return is_correct_answer(question, answer)

    async def submit_answer(
        self,
        session_id: str,
        user_id: str,
        question_id: str,
        answer: AnswerValue,
        time_spent: float,
        user_name: Optional[str] = None,
    ) -> AnswerOutcome:
        if not math.isfinite(time_spent):
            raise InvalidAnswer("time_spent must be a finite number of seconds")

        current = await self.get_session(session_id)
        quiz = await self._require_quiz(current.quiz_id)
        question = quiz.question(question_id)
        if question is None:
            raise QuestionNotFound()

        time_spent = max(0.0, float(time_spent))
        is_correct = is_correct_answer(question, answer)
        outcome: Dict[str, Any] = {}

        def update(session: Session) -> Optional[bool]:
            outcome.clear()
            ensure_allowed(session.status, Action.ANSWER)

            participant = session.participants.get(user_id)
            if participant is None:
                # Client reconnected mid-game without re-joining the roster.
                participant = Participant(
                    user_id=user_id,
                    user_name=user_name or RECOVERED_PLAYER_NAME,
                    recovered=True,
                )
                session.participants[user_id] = participant
                outcome["recovered"] = True

            existing = participant.answers.get(question_id)
            if existing is not None:
                outcome.update(is_correct=existing.is_correct, points=existing.points, duplicate=True)
                return False

            time_limit = time_limit_for(question, session.settings, self.config.DEFAULT_TIME_LIMIT_SEC)
            points = score_answer(
                is_correct,
                question.points,
                time_spent,
                time_limit,
                self.config.TIME_BONUS_RATIO,
            )
            participant.answers[question_id] = Answer(
                question_id=question_id,
                answer=answer,
                is_correct=is_correct,
                time_spent=time_spent,
                points=points,
            )
            participant.score += points
            outcome.update(is_correct=is_correct, points=points)
            return None

        session = await self._mutate(session_id, update)
        recovered = outcome.get("recovered", False)
        if recovered:
            logger.warning(
                "Recovered participant %s in game %s from an answer submission",
                user_id,
                session_id,
            )
        if outcome.get("duplicate"):
            logger.info("Ignoring duplicate answer from %s to %s in game %s", user_id, question_id, session_id)

        return AnswerOutcome(
            session=session,
            is_correct=outcome["is_correct"],
            points=outcome["points"],
            duplicate=outcome.get("duplicate", False),
            recovered=recovered,
        )

    async def complete_session(self, session_id: str, teacher_id: str) -> CompleteResult:
        completed_now = False

        def update(session: Session) -> Optional[bool]:
            nonlocal completed_now
            completed_now = False
            self._authorize(session, teacher_id)
            if session.status == SessionStatus.COMPLETED:
                return False
            ensure_allowed(session.status, Action.COMPLETE)
            session.transition_to(SessionStatus.COMPLETED)
            completed_now = True
            return None

        session = await self._mutate(session_id, update)
        if completed_now:
            logger.info("Game %s ended with %d participants", session_id, len(session.participants))
        return CompleteResult(session=session, completed_now=completed_now)

    async def _set_paused(self, session_id: str, teacher_id: str, paused: bool) -> bool:
        changed = False

        def update(session: Session) -> Optional[bool]:
            nonlocal changed
            changed = False
            self._authorize(session, teacher_id)
            ensure_allowed(session.status, Action.PAUSE)
            if session.paused == paused:
                return False
            session.paused = paused
            changed = True
            return None

        await self._mutate(session_id, update)
        if changed:
            logger.info("Game %s %s by %s", session_id, "paused" if paused else "resumed", teacher_id)
        return changed

    async def pause_session(self, session_id: str, teacher_id: str) -> bool:
        """Mark an active game paused. Returns False if it already was."""
        return await self._set_paused(session_id, teacher_id, True)

    async def resume_session(self, session_id: str, teacher_id: str) -> bool:
        return await self._set_paused(session_id, teacher_id, False)

    async def time_out_question(self, session_id: str, question_index: Optional[int] = None) -> Optional[QuestionView]:
        """Confirm that the current question's time is up.

        Returns None when ``question_index`` names a question the game has
        already moved past, so late timers from other clients are dropped.
        """
        view = await self.get_current_question(session_id)
        if question_index is not None and question_index != view.question_index:
            return None
        return view

    async def mark_results_announced(self, session_id: str) -> bool:
        """Record that the final results went out. True only for the first caller."""
        marked = False

        def update(session: Session) -> Optional[bool]:
            nonlocal marked
            marked = False
            if session.status != SessionStatus.COMPLETED:
                raise GameNotStarted("Results are only announced once the game has ended.")
            if session.results_announced:
                return False
            session.results_announced = True
            marked = True
            return None

        await self._mutate(session_id, update)
        return marked


controller = GameSessionManager(
    SessionStore(db.sessions),
    QuizDirectory(db.quizzes),
    UserDirectory(db.users),
)
