# results.py
# Read side of the attempt engine: the most recent submission for (user, quiz),
# joined back to its questions for display. No rule beyond "latest wins".
from typing import Any, Dict, Optional

from attempts import iso_timestamp, count_submissions, max_attempts_of
from errors import NotFound
from store import parse_options


def _latest_submission(deps: Dict[str, Any], user_id: int, quiz_id: str) -> Optional[Dict[str, Any]]:
    # attempt_number is strictly increasing per (user, quiz); timestamps can disagree
    return deps["fetch_one"]("""
        SELECT id, quiz_id, user_id, attempt_number, submitted_at
          FROM public.quiz_submissions
         WHERE user_id = %s AND quiz_id = %s
         ORDER BY attempt_number DESC, submitted_at DESC
         LIMIT 1;
    """, (user_id, quiz_id))


def _answer_rows(deps: Dict[str, Any], submission_id: str):
    return deps["fetch_all"]("""
        SELECT a.question_id, a.position AS answer_position, a.student_answer,
               q.id AS q_id, q.text, q.type, q.options, q.correct_answer, q.points,
               q.position AS question_position
          FROM public.quiz_submission_answers a
          LEFT JOIN public.questions q ON q.id = a.question_id
         WHERE a.submission_id = %s
         ORDER BY q.position ASC NULLS LAST, a.position ASC;
    """, (submission_id,)) or []


def _answer_view(row: Dict[str, Any]) -> Dict[str, Any]:
    answer = row.get("student_answer") or ""
    missing = row.get("q_id") is None
    qtype = row.get("type")
    return {
        "question_id": str(row["question_id"]),
        "student_answer": answer,
        "answered": bool(answer.strip()),
        "question_missing": missing,
        "text": row.get("text"),
        "type": qtype,
        "options": parse_options(row.get("options")) if qtype == "MULTIPLE_CHOICE" else None,
        # reference only; nothing is scored against it
        "correct_answer": row.get("correct_answer"),
        "points": int(row["points"]) if row.get("points") is not None else None,
        "position": row.get("question_position"),
    }


def latest_result(deps: Dict[str, Any], user_id: int, quiz: Dict[str, Any]) -> Dict[str, Any]:
    """Most recent submission for this user and quiz, or NotFound."""
    quiz_id = str(quiz["id"])
    sub = _latest_submission(deps, user_id, quiz_id)
    if not sub:
        raise NotFound("No submission found for this quiz.")

    used = count_submissions(deps, user_id, quiz_id)
    ceiling = max_attempts_of(quiz)
    return {
        "id": sub["id"],
        "quiz": {
            "id": quiz_id,
            "title": quiz.get("title"),
            "description": quiz.get("description"),
            "course_id": quiz.get("course_id"),
            "max_attempts": ceiling,
        },
        "attempt_number": int(sub.get("attempt_number") or 0),
        "submitted_at": iso_timestamp(sub.get("submitted_at")),
        "answers": [_answer_view(r) for r in _answer_rows(deps, sub["id"])],
        "attempts_used": used,
        "max_attempts": ceiling,
        "can_retake": used < ceiling,
    }


__all__ = ["latest_result"]
