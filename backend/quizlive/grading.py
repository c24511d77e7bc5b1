"""Answer grading and scoring rules for live games.

A question's ``correct_answer`` is stored either as the literal answer text or
as a zero-based index into ``options``. Submitted answers come in the same two
shapes. Both sides are resolved to option text where possible and compared
case-insensitively after trimming.
"""

from __future__ import annotations

import math
from typing import Any, Dict, List, Optional, Set

from .models import AnswerValue, Question, SessionSettings


def normalize(value: Any) -> str:
    return str(value).strip().casefold()


def _option_index(value: Any, options: Optional[List[str]]) -> Optional[int]:
    if not options or isinstance(value, bool):
        return None
    if isinstance(value, int):
        idx = value
    elif isinstance(value, str) and value.strip().isdigit():
        # A digit string that is itself an option is an answer, not an index.
        if normalize(value) in {normalize(o) for o in options}:
            return None
        idx = int(value.strip())
    else:
        return None
    return idx if 0 <= idx < len(options) else None


def _correct_forms(question: Question) -> Set[str]:
    idx = _option_index(question.correct_answer, question.options)
    if idx is not None:
        return {normalize(question.options[idx])}
    return {normalize(question.correct_answer)}


def _submitted_forms(question: Question, answer: AnswerValue) -> Set[str]:
    forms = {normalize(answer)}
    idx = _option_index(answer, question.options)
    if idx is not None:
        forms.add(normalize(question.options[idx]))
    return forms


def is_correct_answer(question: Question, answer: Optional[AnswerValue]) -> bool:
    if answer is None:
        return False
    return bool(_submitted_forms(question, answer) & _correct_forms(question))


def time_limit_for(question: Question, settings: SessionSettings, default: int) -> int:
    return settings.time_per_question or question.time_limit or default


def score_answer(
    is_correct: bool,
    points: int,
    time_spent: float,
    time_limit: float,
    bonus_ratio: float = 0.25,
) -> int:
    if not is_correct:
        return 0
    if time_spent < time_limit / 2:
        return points + math.floor(points * bonus_ratio)
    return points


def strip_answer_key(question: Question) -> Dict[str, Any]:
    return question.model_dump(mode="json", exclude={"correct_answer"})
