from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from .errors import GameAlreadyStarted, GameCompleted, GameNotStarted, InvalidState
from .utils import now_utc

AnswerValue = Union[int, str]


class SessionStatus(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"

    @property
    def is_live(self) -> bool:
        return self in LIVE_STATUSES


LIVE_STATUSES = frozenset({SessionStatus.WAITING, SessionStatus.ACTIVE})

# waiting -> active -> completed, never skipping a state.
TRANSITIONS: Dict[SessionStatus, frozenset] = {
    SessionStatus.WAITING: frozenset({SessionStatus.ACTIVE}),
    SessionStatus.ACTIVE: frozenset({SessionStatus.COMPLETED}),
    SessionStatus.COMPLETED: frozenset(),
}


class Action(str, Enum):
    JOIN = "join"
    LEAVE = "leave"
    START = "start"
    ADVANCE = "advance"
    ANSWER = "answer"
    PAUSE = "pause"
    COMPLETE = "complete"


ALLOWED_ACTIONS: Dict[Action, frozenset] = {
    Action.JOIN: frozenset({SessionStatus.WAITING}),
    Action.LEAVE: LIVE_STATUSES,
    Action.START: frozenset({SessionStatus.WAITING}),
    Action.ADVANCE: frozenset({SessionStatus.ACTIVE}),
    Action.ANSWER: frozenset({SessionStatus.ACTIVE}),
    Action.PAUSE: frozenset({SessionStatus.ACTIVE}),
    Action.COMPLETE: frozenset({SessionStatus.ACTIVE}),
}


def is_allowed(status: SessionStatus, action: Action) -> bool:
    return SessionStatus(status) in ALLOWED_ACTIONS[action]


def ensure_allowed(status: SessionStatus, action: Action) -> None:
    """Single legality check shared by every mutating game operation."""
    status = SessionStatus(status)
    allowed = ALLOWED_ACTIONS[action]
    if status in allowed:
        return
    if SessionStatus.WAITING in allowed and status == SessionStatus.ACTIVE:
        raise GameAlreadyStarted()
    if status == SessionStatus.COMPLETED:
        if action in (Action.JOIN, Action.START):
            raise GameAlreadyStarted()
        raise GameCompleted()
    if status == SessionStatus.WAITING:
        raise GameNotStarted()
    raise InvalidState()  # pragma: no cover - table covers every status


class SessionSettings(BaseModel):
    show_answers: bool = True
    show_leaderboard: bool = True
    time_per_question: Optional[int] = Field(default=None, gt=0)


class Answer(BaseModel):
    question_id: str
    answer: AnswerValue
    is_correct: bool
    time_spent: float = Field(ge=0, allow_inf_nan=False)
    points: int = Field(default=0, ge=0)
    answered_at: datetime = Field(default_factory=now_utc)


class Participant(BaseModel):
    user_id: str
    user_name: str
    avatar_url: Optional[str] = None
    joined_at: datetime = Field(default_factory=now_utc)
    score: int = 0
    # Keyed by question_id, so a question can only ever be answered once.
    answers: Dict[str, Answer] = Field(default_factory=dict)
    recovered: bool = False

    def public(self) -> Dict[str, Any]:
        data = self.model_dump(mode="json", exclude={"answers"})
        data["answers"] = [a.model_dump(mode="json") for a in self.answers.values()]
        return data


class Session(BaseModel):
    session_id: str
    quiz_id: str
    teacher_id: str
    class_id: str
    game_code: str
    status: SessionStatus = SessionStatus.WAITING
    current_question_index: int = 0
    # Keyed by user_id; insertion order is the roster order.
    participants: Dict[str, Participant] = Field(default_factory=dict)
    settings: SessionSettings = Field(default_factory=SessionSettings)
    created_at: datetime = Field(default_factory=now_utc)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    paused: bool = False
    # Set once the final results went out to everyone in the game.
    results_announced: bool = False
    version: int = 0

    @property
    def roster(self) -> List[Participant]:
        return list(self.participants.values())

    def transition_to(self, target: SessionStatus) -> None:
        current = SessionStatus(self.status)
        if target not in TRANSITIONS[current]:
            raise InvalidState(f"Cannot move a {current.value} game to {target.value}")
        self.status = target
        if target == SessionStatus.ACTIVE:
            self.started_at = now_utc()
        elif target == SessionStatus.COMPLETED:
            self.completed_at = now_utc()
            self.paused = False

    def to_document(self) -> Dict[str, Any]:
        doc = self.model_dump(mode="json")
        doc["id"] = self.session_id
        doc["live"] = SessionStatus(self.status).is_live
        return doc

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Session":
        return cls(**{k: v for k, v in doc.items() if k not in ("_id", "id", "live")})

    def public(self) -> Dict[str, Any]:
        data = self.model_dump(mode="json", exclude={"participants", "version", "results_announced"})
        data["participants"] = [p.public() for p in self.participants.values()]
        data["participant_count"] = len(self.participants)
        return data


class Question(BaseModel):
    question_id: str
    question_text: str
    type: str = "multiple-choice"
    options: Optional[List[str]] = None
    correct_answer: AnswerValue
    points: int = Field(default=10, ge=0)
    time_limit: Optional[int] = Field(default=None, gt=0)
    question_image_url: Optional[str] = None


class Quiz(BaseModel):
    quiz_id: str
    title: str = "Untitled Quiz"
    description: str = ""
    questions: List[Question] = Field(default_factory=list)

    def question(self, question_id: str) -> Optional[Question]:
        return next((q for q in self.questions if q.question_id == question_id), None)


class UserProfile(BaseModel):
    user_id: str
    first_name: str = ""
    last_name: str = ""
    avatar_url: Optional[str] = None

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip() or self.user_id
