# store.py
# Position Store: courses, their chapters and quizzes, quiz questions and the
# (external) purchase facts. Read-only apart from the schema bootstrap.
import json
from typing import Any, Callable, Dict, List, Optional

QUESTION_TYPES = ("MULTIPLE_CHOICE", "TRUE_FALSE", "SHORT_ANSWER")

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS public.users (
        id        BIGSERIAL PRIMARY KEY,
        email     TEXT NOT NULL UNIQUE,
        full_name TEXT,
        role      TEXT NOT NULL DEFAULT 'learner'
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS public.courses (
        id           TEXT PRIMARY KEY,
        title        TEXT NOT NULL,
        price        NUMERIC(12, 2) NOT NULL DEFAULT 0,
        owner_id     BIGINT REFERENCES public.users(id),
        is_published BOOLEAN NOT NULL DEFAULT FALSE,
        created_at   TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS public.chapters (
        id           TEXT PRIMARY KEY,
        course_id    TEXT NOT NULL REFERENCES public.courses(id) ON DELETE CASCADE,
        title        TEXT NOT NULL,
        description  TEXT,
        position     INTEGER NOT NULL,
        is_free      BOOLEAN NOT NULL DEFAULT FALSE,
        is_published BOOLEAN NOT NULL DEFAULT FALSE,
        video_url    TEXT,
        created_at   TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS public.quizzes (
        id            TEXT PRIMARY KEY,
        course_id     TEXT REFERENCES public.courses(id) ON DELETE CASCADE,
        title         TEXT NOT NULL,
        description   TEXT,
        position      INTEGER NOT NULL DEFAULT 1,
        timer_minutes INTEGER CHECK (timer_minutes IS NULL OR timer_minutes > 0),
        max_attempts  INTEGER NOT NULL DEFAULT 1 CHECK (max_attempts >= 1),
        is_published  BOOLEAN NOT NULL DEFAULT FALSE,
        created_at    TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS public.questions (
        id             TEXT PRIMARY KEY,
        quiz_id        TEXT NOT NULL REFERENCES public.quizzes(id) ON DELETE CASCADE,
        text           TEXT NOT NULL,
        type           TEXT NOT NULL CHECK (type IN ('MULTIPLE_CHOICE', 'TRUE_FALSE', 'SHORT_ANSWER')),
        options        JSONB,
        correct_answer TEXT,
        points         INTEGER NOT NULL DEFAULT 1 CHECK (points > 0),
        position       INTEGER NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS public.purchases (
        user_id    BIGINT NOT NULL,
        course_id  TEXT NOT NULL,
        status     TEXT NOT NULL DEFAULT 'ACTIVE',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (user_id, course_id)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS public.user_progress (
        user_id      BIGINT NOT NULL,
        chapter_id   TEXT NOT NULL,
        is_completed BOOLEAN NOT NULL DEFAULT TRUE,
        updated_at   TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (user_id, chapter_id)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS public.quiz_submissions (
        id             TEXT PRIMARY KEY,
        quiz_id        TEXT NOT NULL,
        user_id        BIGINT NOT NULL,
        attempt_number INTEGER NOT NULL,
        submitted_at   TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (quiz_id, user_id, attempt_number)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS public.quiz_submission_answers (
        submission_id  TEXT NOT NULL REFERENCES public.quiz_submissions(id) ON DELETE CASCADE,
        question_id    TEXT NOT NULL,
        position       INTEGER NOT NULL,
        student_answer TEXT NOT NULL DEFAULT '',
        PRIMARY KEY (submission_id, question_id)
    );
    """,
)


def ensure_schema(execute: Callable) -> None:
    for stmt in SCHEMA_STATEMENTS:
        execute(stmt)
    print(f"[schema] ensured {len(SCHEMA_STATEMENTS)} tables", flush=True)


# ------------------------------- row helpers ---------------------------------
def parse_options(raw: Any) -> Optional[List[str]]:
    """Options arrive as a JSON array or as a JSON-encoded string of one."""
    if raw is None or raw == "":
        return None
    if isinstance(raw, (list, tuple)):
        return [str(o) for o in raw]
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        return None
    if isinstance(data, list):
        return [str(o) for o in data]
    return None


def _question_from_row(row: Dict[str, Any]) -> Dict[str, Any]:
    q = dict(row)
    q["options"] = parse_options(row.get("options")) if row.get("type") == "MULTIPLE_CHOICE" else None
    q["points"] = int(row.get("points") or 1)
    return q


# --------------------------------- courses -----------------------------------
def course_row(deps: Dict[str, Any], course_id: str) -> Optional[Dict[str, Any]]:
    return deps["fetch_one"]("""
        SELECT id, title, price, owner_id, is_published
          FROM public.courses
         WHERE id = %s AND is_published = TRUE;
    """, (course_id,))


def published_chapters(deps: Dict[str, Any], course_id: str) -> List[Dict[str, Any]]:
    # created_at/id keep equal positions in insertion order
    return deps["fetch_all"]("""
        SELECT id, course_id, title, description, position, is_free, is_published, video_url
          FROM public.chapters
         WHERE course_id = %s AND is_published = TRUE
         ORDER BY position ASC, created_at ASC, id ASC;
    """, (course_id,)) or []


def published_quizzes(deps: Dict[str, Any], course_id: str) -> List[Dict[str, Any]]:
    return deps["fetch_all"]("""
        SELECT id, course_id, title, description, position, timer_minutes, max_attempts, is_published
          FROM public.quizzes
         WHERE course_id = %s AND is_published = TRUE
         ORDER BY position ASC, created_at ASC, id ASC;
    """, (course_id,)) or []


# --------------------------------- quizzes -----------------------------------
def quiz_row(deps: Dict[str, Any], quiz_id: str) -> Optional[Dict[str, Any]]:
    """Published quiz; a course-bound quiz also needs its course published."""
    return deps["fetch_one"]("""
        SELECT q.id, q.course_id, q.title, q.description, q.position,
               q.timer_minutes, q.max_attempts, q.is_published
          FROM public.quizzes q
          LEFT JOIN public.courses c ON c.id = q.course_id
         WHERE q.id = %s
           AND q.is_published = TRUE
           AND (q.course_id IS NULL OR c.is_published = TRUE);
    """, (quiz_id,))


def quiz_questions(deps: Dict[str, Any], quiz_id: str) -> List[Dict[str, Any]]:
    rows = deps["fetch_all"]("""
        SELECT id, quiz_id, text, type, options, correct_answer, points, position
          FROM public.questions
         WHERE quiz_id = %s
         ORDER BY position ASC, id ASC;
    """, (quiz_id,)) or []
    return [_question_from_row(r) for r in rows]


def catalogue_quizzes(deps: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Published standalone quizzes plus published quizzes of published courses."""
    return deps["fetch_all"]("""
        SELECT q.id, q.course_id, q.title, q.description, q.position,
               q.timer_minutes, q.max_attempts,
               c.title AS course_title, c.price AS course_price, c.owner_id AS course_owner_id,
               (SELECT COUNT(*) FROM public.questions qq WHERE qq.quiz_id = q.id) AS question_count
          FROM public.quizzes q
          LEFT JOIN public.courses c ON c.id = q.course_id
         WHERE q.is_published = TRUE
           AND (q.course_id IS NULL OR c.is_published = TRUE)
         ORDER BY q.created_at DESC, q.id ASC;
    """) or []


def public_question(question: Dict[str, Any]) -> Dict[str, Any]:
    """Question as shown while taking a quiz: no reference answer."""
    return {
        "id": question["id"],
        "text": question.get("text"),
        "type": question.get("type"),
        "options": question.get("options"),
        "points": question.get("points"),
        "position": question.get("position"),
    }


# -------------------------------- purchases ----------------------------------
def has_purchased(deps: Dict[str, Any], user_id: Optional[int], course_id: Optional[str]) -> bool:
    if not user_id or not course_id:
        return False
    row = deps["fetch_one"]("""
        SELECT 1 AS ok
          FROM public.purchases
         WHERE user_id = %s AND course_id = %s AND status = 'ACTIVE'
         LIMIT 1;
    """, (user_id, course_id))
    return bool(row)


__all__ = [
    "QUESTION_TYPES", "ensure_schema", "parse_options",
    "course_row", "published_chapters", "published_quizzes",
    "quiz_row", "quiz_questions", "catalogue_quizzes", "public_question",
    "has_purchased",
]
