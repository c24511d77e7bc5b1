from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional

from .models import AnswerValue, Question, SessionSettings


class CreateGameIn(BaseModel):
    quiz_id: str
    teacher_id: str
    class_id: str
    settings: SessionSettings = Field(default_factory=SessionSettings)


class JoinGameIn(BaseModel):
    game_code: str
    user_id: str


class RejoinSessionIn(BaseModel):
    session_id: str
    user_id: str


class SessionRefIn(BaseModel):
    session_id: str


class LeaveGameIn(BaseModel):
    session_id: str
    user_id: str


class KickParticipantIn(BaseModel):
    session_id: str
    user_id: str
    teacher_id: str


class TeacherCommandIn(BaseModel):
    session_id: str
    teacher_id: str


class NextQuestionIn(TeacherCommandIn):
    expected_index: Optional[int] = None


class QuestionTimeoutIn(BaseModel):
    session_id: str
    question_index: Optional[int] = None


class SubmitAnswerIn(BaseModel):
    session_id: str
    user_id: str
    question_id: str
    answer: AnswerValue
    time_spent: float = Field(default=0, allow_inf_nan=False)
    user_name: Optional[str] = None


class ExportIn(BaseModel):
    format: str = "csv"


class QuizUpsertIn(BaseModel):
    quiz_id: str
    title: str = "Untitled Quiz"
    description: str = ""
    questions: List[Question]


class UserUpsertIn(BaseModel):
    user_id: str
    first_name: str = ""
    last_name: str = ""
    avatar_url: Optional[str] = None


class PublicSessionOut(BaseModel):
    session_id: str
    quiz_id: str
    teacher_id: str
    class_id: str
    game_code: str
    status: str
    current_question_index: int
    participants: List[Dict[str, Any]]
    participant_count: int
    settings: SessionSettings
    created_at: Any = None
    started_at: Any = None
    completed_at: Any = None
    paused: bool = False
