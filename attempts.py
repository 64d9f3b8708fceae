# attempts.py
# -----------------------------------------------------------------------------
# Quiz attempt engine.
# - NOT_STARTED -> IN_PROGRESS -> SUBMITTED; timer expiry is just a submit
# - the running attempt lives in the client; the server only sees start + submit
# - attempts used = number of stored submissions; the ceiling is re-checked
#   inside the insert transaction, under an advisory lock per (user, quiz)
# - answers are recorded, never graded; correct answers are reference data only
# -----------------------------------------------------------------------------
import os
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from psycopg.errors import UniqueViolation

from access import can_access, required_action
from errors import AttemptsExhausted, DeadlinePassed, Locked, ValidationFailed
from store import public_question

# ---- Config ------------------------------------------------------------------
# Empty => a quiz without timer_minutes is untimed. Set a number to give such
# quizzes a default countdown instead.
_default_timer_raw = (os.getenv("QUIZ_DEFAULT_TIMER_MIN") or "").strip()
DEFAULT_TIMER_MIN: Optional[int] = int(_default_timer_raw) if _default_timer_raw else None

ENFORCE_DEADLINE   = (os.getenv("QUIZ_ENFORCE_DEADLINE", "0").lower() in ("1", "true", "yes"))
DEADLINE_GRACE_SEC = int(os.getenv("QUIZ_DEADLINE_GRACE_SEC") or 30)
ANSWER_CHAR_LIMIT  = int(os.getenv("QUIZ_ANSWER_CHAR_LIMIT") or 2000)

_TOKEN_SALT = "quiz-attempt"


def iso_timestamp(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.isoformat()
    return str(value)


def max_attempts_of(quiz: Dict[str, Any]) -> int:
    try:
        return max(1, int(quiz.get("max_attempts") or 1))
    except (TypeError, ValueError):
        return 1


def timer_seconds(quiz: Dict[str, Any]) -> Optional[int]:
    minutes = quiz.get("timer_minutes")
    if minutes is None:
        minutes = DEFAULT_TIMER_MIN
    if minutes is None:
        return None
    return int(minutes) * 60


# ------------------------------- access guard --------------------------------
def ensure_quiz_access(viewer: Dict[str, Any], quiz: Dict[str, Any],
                       course: Optional[Dict[str, Any]], purchased: bool) -> str:
    """Raise Locked unless the viewer may take this quiz; return the gate reason."""
    if not viewer or not viewer.get("id"):
        raise Locked("Sign in to take this quiz.", action="auth_required")
    item = {"type": "quiz", "id": str(quiz["id"]), "course_id": quiz.get("course_id")}
    allowed, reason = can_access(viewer, course, item, purchased=purchased)
    if not allowed:
        raise Locked("Purchase the course to take this quiz.",
                     action=required_action(viewer), course_id=quiz.get("course_id"))
    return reason


# ------------------------------- attempt counts -------------------------------
def count_submissions(deps: Dict[str, Any], user_id: int, quiz_id: str) -> int:
    row = deps["fetch_one"]("""
        SELECT COUNT(*) AS n
          FROM public.quiz_submissions
         WHERE user_id = %s AND quiz_id = %s;
    """, (user_id, str(quiz_id)))
    return int((row or {}).get("n") or 0)


def attempt_counts(deps: Dict[str, Any], user_id: Optional[int],
                   quiz_ids: Iterable[str]) -> Dict[str, int]:
    ids = [str(q) for q in quiz_ids]
    if not user_id or not ids:
        return {}
    rows = deps["fetch_all"]("""
        SELECT quiz_id, COUNT(*) AS n
          FROM public.quiz_submissions
         WHERE user_id = %s AND quiz_id = ANY(%s)
         GROUP BY quiz_id;
    """, (user_id, ids)) or []
    return {str(r["quiz_id"]): int(r.get("n") or 0) for r in rows}


def can_start_attempt(deps: Dict[str, Any], user_id: int, quiz: Dict[str, Any]) -> bool:
    # always a fresh count: a submission from a moment ago must be visible
    return count_submissions(deps, user_id, quiz["id"]) < max_attempts_of(quiz)


# ------------------------------- deadline tokens -----------------------------
def _serializer(secret_key: str) -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(secret_key, salt=_TOKEN_SALT)


def issue_attempt_token(secret_key: str, user_id: int, quiz_id: str, attempt_number: int) -> str:
    return _serializer(secret_key).dumps({"u": user_id, "q": str(quiz_id), "a": int(attempt_number)})


def check_attempt_token(secret_key: str, token: Optional[str], user_id: int,
                        quiz: Dict[str, Any]) -> int:
    """
    Only called when deadline enforcement is on. Untimed quizzes never expire.
    Returns the attempt number the token was issued for.
    """
    if not token:
        raise ValidationFailed("attempt_token is required for this quiz.")
    limit = timer_seconds(quiz)
    max_age = (limit + DEADLINE_GRACE_SEC) if limit is not None else None
    try:
        data = _serializer(secret_key).loads(token, max_age=max_age)
    except SignatureExpired:
        raise DeadlinePassed("The time limit for this attempt has passed.")
    except BadSignature:
        raise ValidationFailed("attempt_token is not valid.")
    if not isinstance(data, dict) or data.get("u") != user_id or data.get("q") != str(quiz["id"]):
        raise ValidationFailed("attempt_token does not belong to this quiz.")
    try:
        return int(data["a"])
    except (KeyError, TypeError, ValueError):
        raise ValidationFailed("attempt_token is not valid.")


# ----------------------------------- start -----------------------------------
def start_attempt(deps: Dict[str, Any], viewer: Dict[str, Any], quiz: Dict[str, Any],
                  questions: List[Dict[str, Any]], secret_key: Optional[str] = None) -> Dict[str, Any]:
    user_id = viewer["id"]
    used = count_submissions(deps, user_id, quiz["id"])
    ceiling = max_attempts_of(quiz)
    if used >= ceiling:
        raise AttemptsExhausted(
            f"Attempt limit reached ({ceiling}).",
            attempts_used=used, max_attempts=ceiling, quiz_id=str(quiz["id"]),
        )

    limit = timer_seconds(quiz)
    started = datetime.now(timezone.utc)
    out: Dict[str, Any] = {
        "quiz_id": str(quiz["id"]),
        "attempt_number": used + 1,
        "attempts_used": used,
        "max_attempts": ceiling,
        "questions": [public_question(q) for q in questions],
        "timer_seconds": limit,
        "started_at": started.isoformat(),
        "deadline_at": (started + timedelta(seconds=limit)).isoformat() if limit is not None else None,
        "deadline_enforced": bool(ENFORCE_DEADLINE),
    }
    if ENFORCE_DEADLINE and secret_key:
        out["attempt_token"] = issue_attempt_token(secret_key, user_id, quiz["id"], used + 1)
    print(f"[quiz] start user={user_id} quiz={quiz['id']} attempt={used + 1}/{ceiling}", flush=True)
    return out


# -------------------------------- validation ---------------------------------
def _pairs_from_payload(answers: Any) -> List[Tuple[str, Any]]:
    if answers is None:
        return []
    if isinstance(answers, dict):
        return [(str(k), v) for k, v in answers.items()]
    if not isinstance(answers, list):
        raise ValidationFailed("answers must be a list or an object.")
    pairs: List[Tuple[str, Any]] = []
    for i, entry in enumerate(answers, start=1):
        if not isinstance(entry, dict):
            raise ValidationFailed(f"Answer {i}: expected an object.")
        qid = entry.get("questionId", entry.get("question_id"))
        if qid is None or str(qid) == "":
            raise ValidationFailed(f"Answer {i}: questionId is required.")
        pairs.append((str(qid), entry.get("answer")))
    return pairs


def _normalize_answer(question: Dict[str, Any], raw: Any, char_limit: int) -> str:
    qtype = question.get("type")
    qid = question["id"]
    if isinstance(raw, dict):
        raw = raw.get("text")
    if raw is None:
        return ""
    if isinstance(raw, bool):
        if qtype != "TRUE_FALSE":
            raise ValidationFailed(f"Question {qid}: expected text.", question_id=qid)
        return "true" if raw else "false"
    if not isinstance(raw, str):
        raise ValidationFailed(f"Question {qid}: expected text.", question_id=qid)
    if not raw.strip():
        return ""
    if len(raw) > char_limit:
        raise ValidationFailed(f"Question {qid}: answer exceeds {char_limit} characters.", question_id=qid)

    if qtype == "TRUE_FALSE":
        value = raw.strip().lower()
        if value not in ("true", "false"):
            raise ValidationFailed(f"Question {qid}: answer must be true or false.", question_id=qid)
        return value
    if qtype == "MULTIPLE_CHOICE":
        options = question.get("options") or []
        value = raw.strip()
        if not options:
            return value
        # stored options may carry stray whitespace; keep the option as authored
        for option in options:
            if option.strip() == value:
                return option
        raise ValidationFailed(f"Question {qid}: answer is not one of the options.", question_id=qid)
    return raw


def validate_answers(questions: List[Dict[str, Any]], answers: Any,
                     char_limit: int = ANSWER_CHAR_LIMIT) -> List[Tuple[str, str]]:
    """
    All-or-nothing check of a submission payload. Returns one (question_id,
    answer) per quiz question in question order, "" where nothing was given.
    """
    by_id = {str(q["id"]): q for q in questions}
    given: Dict[str, str] = {}
    for qid, raw in _pairs_from_payload(answers):
        if qid not in by_id:
            raise ValidationFailed(f"Question {qid} is not part of this quiz.", question_id=qid)
        if qid in given:
            raise ValidationFailed(f"Question {qid} answered more than once.", question_id=qid)
        given[qid] = _normalize_answer(by_id[qid], raw, char_limit)
    return [(str(q["id"]), given.get(str(q["id"]), "")) for q in questions]


# ---------------------------------- submit -----------------------------------
def _insert_submission(deps: Dict[str, Any], user_id: int, quiz_id: str, ceiling: int,
                       rows: List[Tuple[str, str]],
                       token_attempt: Optional[int] = None) -> Dict[str, Any]:
    lock_key = f"quiz-attempt:{user_id}:{quiz_id}"
    submission_id = uuid.uuid4().hex
    try:
        with deps["transaction"]() as cur:
            cur.execute("SELECT pg_advisory_xact_lock(hashtext(%s));", (lock_key,))
            cur.execute("""
                SELECT COUNT(*) AS n
                  FROM public.quiz_submissions
                 WHERE user_id = %s AND quiz_id = %s;
            """, (user_id, quiz_id))
            used = int((cur.fetchone() or {}).get("n") or 0)
            if used >= ceiling:
                raise AttemptsExhausted(
                    f"Attempt limit reached ({ceiling}).",
                    attempts_used=used, max_attempts=ceiling, quiz_id=quiz_id,
                )
            if token_attempt is not None and token_attempt != used + 1:
                raise ValidationFailed("attempt_token was issued for another attempt.",
                                       attempt_number=used + 1)
            cur.execute("""
                INSERT INTO public.quiz_submissions (id, quiz_id, user_id, attempt_number, submitted_at)
                VALUES (%s, %s, %s, %s, clock_timestamp())
                RETURNING id, quiz_id, user_id, attempt_number, submitted_at;
            """, (submission_id, quiz_id, user_id, used + 1))
            sub = dict(cur.fetchone())
            cur.executemany("""
                INSERT INTO public.quiz_submission_answers (submission_id, question_id, position, student_answer)
                VALUES (%s, %s, %s, %s);
            """, [(submission_id, qid, pos, ans) for pos, (qid, ans) in enumerate(rows, start=1)])
    except UniqueViolation:
        # a concurrent insert won the same attempt_number
        raise AttemptsExhausted(f"Attempt limit reached ({ceiling}).",
                                max_attempts=ceiling, quiz_id=quiz_id)
    return sub


def submit_attempt(deps: Dict[str, Any], viewer: Dict[str, Any], quiz: Dict[str, Any],
                   questions: List[Dict[str, Any]], answers: Any,
                   attempt_token: Optional[str] = None,
                   secret_key: Optional[str] = None) -> Dict[str, Any]:
    """Manual submit and timer expiry both land here."""
    user_id = viewer["id"]
    quiz_id = str(quiz["id"])
    ceiling = max_attempts_of(quiz)

    rows = validate_answers(questions, answers)
    token_attempt = None
    if ENFORCE_DEADLINE and secret_key:
        token_attempt = check_attempt_token(secret_key, attempt_token, user_id, quiz)

    sub = _insert_submission(deps, user_id, quiz_id, ceiling, rows, token_attempt)
    attempt_number = int(sub.get("attempt_number") or 0)
    print(f"[quiz] submitted user={user_id} quiz={quiz_id} attempt={attempt_number}/{ceiling}", flush=True)
    return {
        "id": sub["id"],
        "quiz_id": quiz_id,
        "user_id": user_id,
        "attempt_number": attempt_number,
        "submitted_at": iso_timestamp(sub.get("submitted_at")),
        "answers": [{"question_id": qid, "answer": ans} for qid, ans in rows],
        "attempts_used": attempt_number,
        "max_attempts": ceiling,
        "can_retake": attempt_number < ceiling,
    }


__all__ = [
    "iso_timestamp", "DEFAULT_TIMER_MIN", "ENFORCE_DEADLINE", "DEADLINE_GRACE_SEC", "ANSWER_CHAR_LIMIT",
    "max_attempts_of", "timer_seconds", "ensure_quiz_access",
    "count_submissions", "attempt_counts", "can_start_attempt",
    "issue_attempt_token", "check_attempt_token",
    "start_attempt", "validate_answers", "submit_attempt",
]
