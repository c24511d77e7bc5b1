from __future__ import annotations


class GameError(Exception):
    """Base class for failures reported back to the caller of a game operation."""

    code = "game_error"
    default_message = "The game operation failed"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class NotFound(GameError):
    code = "not_found"
    default_message = "Not found"


class SessionNotFound(NotFound):
    code = "session_not_found"
    default_message = "Game session not found"


class GameCodeNotFound(NotFound):
    code = "game_code_not_found"
    default_message = "Game not found. Please check the code and try again."


class QuizNotFound(NotFound):
    code = "quiz_not_found"
    default_message = "Quiz not found"


class QuestionNotFound(NotFound):
    code = "question_not_found"
    default_message = "Question not found in this quiz"


class UserNotFound(NotFound):
    code = "user_not_found"
    default_message = "User not found"


class ParticipantNotFound(NotFound):
    code = "participant_not_found"
    default_message = "Participant not found in this session"


class InvalidAnswer(GameError):
    code = "invalid_answer"
    default_message = "That answer could not be accepted."


class InvalidState(GameError):
    code = "invalid_state"
    default_message = "The game is not in a state that allows this"


class GameAlreadyStarted(InvalidState):
    code = "game_already_started"
    default_message = "This game has already started."


class GameNotStarted(InvalidState):
    code = "game_not_started"
    default_message = "This game has not started yet."


class GameCompleted(InvalidState):
    code = "game_completed"
    default_message = "This game has already ended."


class NoMoreQuestions(InvalidState):
    code = "no_more_questions"
    default_message = "There are no more questions in this quiz."


class NoParticipants(InvalidState):
    code = "no_participants"
    default_message = "Cannot start game with no participants."


class Unauthorized(GameError):
    code = "unauthorized"
    default_message = "Only the teacher hosting this game can do that."


class TransientFailure(GameError):
    code = "transient_failure"
    default_message = "The game is busy, please try again."


class GameCodeUnavailable(TransientFailure):
    code = "game_code_unavailable"
    default_message = "Could not allocate a free game code, please try again."


class WriteConflict(Exception):
    """Raised by the session store when a compare-and-swap keeps losing races."""

    def __init__(self, session_id: str, attempts: int):
        self.session_id = session_id
        self.attempts = attempts
        super().__init__(f"Session {session_id} changed concurrently {attempts} times in a row")
