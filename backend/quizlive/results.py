"""Final results, per-student review and exports for a game session."""

from __future__ import annotations

import csv
import io
from typing import Any, Dict, List, Optional

from .errors import ParticipantNotFound
from .models import Quiz, Session
from .utils import sort_leaderboard


def _correct_count(participant) -> int:
    return sum(1 for a in participant.answers.values() if a.is_correct)


def _percent(part: float, whole: float) -> float:
    return (part / whole) * 100 if whole else 0.0


def build_leaderboard(session: Session) -> List[Dict[str, Any]]:
    rows = sort_leaderboard(session.roster)
    for row in rows:
        participant = session.participants[row["user_id"]]
        row["total_answers"] = len(participant.answers)
        row["correct_answers"] = _correct_count(participant)
    return rows


def build_question_stats(session: Session, quiz: Optional[Quiz]) -> List[Dict[str, Any]]:
    stats = []
    for number, question in enumerate(quiz.questions if quiz else [], start=1):
        answers = [
            p.answers[question.question_id]
            for p in session.roster
            if question.question_id in p.answers
        ]
        correct = sum(1 for a in answers if a.is_correct)
        total = len(answers)
        average_time = sum(a.time_spent for a in answers) / total if total else 0
        stats.append(
            {
                "question_id": question.question_id,
                "question_text": question.question_text or f"Question {number}",
                "question_number": number,
                "correct_count": correct,
                "incorrect_count": total - correct,
                "percentage_correct": _percent(correct, total),
                "average_time": round(average_time),
                "total_answers": total,
            }
        )
    return stats


def build_session_results(session: Session, quiz: Optional[Quiz]) -> Dict[str, Any]:
    roster = session.roster
    total_correct = sum(_correct_count(p) for p in roster)
    total_answers = sum(len(p.answers) for p in roster)
    average_score = sum(p.score for p in roster) / len(roster) if roster else 0

    return {
        "session": {
            "session_id": session.session_id,
            "game_code": session.game_code,
            "status": session.status,
            "started_at": session.started_at,
            "completed_at": session.completed_at,
        },
        "quiz": (
            {
                "quiz_id": quiz.quiz_id,
                "title": quiz.title,
                "description": quiz.description,
                "total_questions": len(quiz.questions),
            }
            if quiz
            else None
        ),
        "statistics": {
            "total_participants": len(roster),
            "participation_rate": 100,
            "average_score": round(average_score),
            "total_correct_answers": total_correct,
            "total_answers": total_answers,
            "overall_accuracy": _percent(total_correct, total_answers),
        },
        "leaderboard": build_leaderboard(session),
        "question_stats": build_question_stats(session, quiz),
    }


def build_user_results(session: Session, quiz: Quiz, user_id: str) -> Dict[str, Any]:
    participant = session.participants.get(user_id)
    if participant is None:
        raise ParticipantNotFound()

    leaderboard = sort_leaderboard(session.roster)
    rank = next(row["rank"] for row in leaderboard if row["user_id"] == user_id)
    class_average = sum(p.score for p in session.roster) / len(session.roster)
    correct = _correct_count(participant)
    total_questions = len(quiz.questions)

    review = []
    for number, question in enumerate(quiz.questions, start=1):
        answer = participant.answers.get(question.question_id)
        review.append(
            {
                "question_number": number,
                "question_id": question.question_id,
                "question_text": question.question_text,
                "question_image_url": question.question_image_url,
                "type": question.type,
                "options": question.options,
                "correct_answer": question.correct_answer,
                "user_answer": answer.answer if answer else None,
                "is_correct": answer.is_correct if answer else False,
                "points": answer.points if answer else 0,
                "time_spent": answer.time_spent if answer else 0,
            }
        )

    return {
        "participant": {
            "user_id": participant.user_id,
            "user_name": participant.user_name,
            "score": participant.score,
            "rank": rank,
            "total_participants": len(session.roster),
        },
        "performance": {
            "correct_answers": correct,
            "incorrect_answers": len(participant.answers) - correct,
            "total_questions": total_questions,
            "accuracy": _percent(correct, total_questions),
            "class_average": round(class_average),
            "comparison_to_average": _percent(participant.score - class_average, class_average),
        },
        "answer_review": review,
        "quiz": {"quiz_id": quiz.quiz_id, "title": quiz.title, "description": quiz.description},
    }


CSV_HEADERS = ["Rank", "Student Name", "Score", "Correct Answers", "Total Questions", "Accuracy %"]


def export_csv(session: Session, quiz: Optional[Quiz]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(CSV_HEADERS)
    for row in build_leaderboard(session):
        total_questions = len(quiz.questions) if quiz and quiz.questions else row["total_answers"]
        writer.writerow(
            [
                row["rank"],
                row["user_name"],
                row["score"],
                row["correct_answers"],
                total_questions,
                f"{_percent(row['correct_answers'], total_questions):.1f}",
            ]
        )
    return buf.getvalue()
