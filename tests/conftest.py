import sys
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from flask import Flask, g
from psycopg.errors import UniqueViolation

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from course import create_course_blueprint  # noqa: E402
from quiz import create_quiz_blueprint  # noqa: E402


class FakeCursor:
    """Cursor handed out by FakeDB.transaction(); inserts are staged until commit."""

    def __init__(self, db):
        self.db = db
        self._result = None
        self.holds_lock = False
        self.staged_submissions = []
        self.staged_answers = []

    def execute(self, sql, params=()):
        if "pg_advisory_xact_lock" in sql:
            if self.db.honour_advisory_lock:
                self.db.advisory_lock.acquire()
                self.holds_lock = True
            self._result = None
            return
        if "COUNT(*) AS n" in sql and "quiz_submissions" in sql:
            user_id, quiz_id = params
            n = self.db.submission_count(user_id, quiz_id)
            self._result = {"n": n}
            if self.db.after_count_hook:
                self.db.after_count_hook()
            return
        if "INSERT INTO public.quiz_submissions" in sql:
            sub_id, quiz_id, user_id, attempt_number = params
            row = {"id": sub_id, "quiz_id": quiz_id, "user_id": user_id,
                   "attempt_number": attempt_number, "submitted_at": self.db.next_timestamp()}
            self.staged_submissions.append(row)
            self._result = row
            return
        raise AssertionError(f"unexpected SQL in transaction: {sql}")

    def executemany(self, sql, rows):
        assert "INSERT INTO public.quiz_submission_answers" in sql
        for submission_id, question_id, position, answer in rows:
            self.staged_answers.append({
                "submission_id": submission_id, "question_id": question_id,
                "position": position, "student_answer": answer,
            })

    def fetchone(self):
        return self._result

    def commit(self):
        with self.db.mutex:
            for row in self.staged_submissions:
                key = (row["quiz_id"], row["user_id"], row["attempt_number"])
                if any((s["quiz_id"], s["user_id"], s["attempt_number"]) == key for s in self.db.submissions):
                    raise UniqueViolation("duplicate key value violates unique constraint")
            self.db.submissions.extend(self.staged_submissions)
            self.db.answers.extend(self.staged_answers)


class FakeDB:
    """In-memory stand-in for the Postgres tables, answering by SQL fragment."""

    def __init__(self):
        self.courses = {}
        self.chapters = []
        self.quizzes = []
        self.questions = []
        self.purchases = set()
        self.progress = {}
        self.submissions = []
        self.answers = []
        self.executed = []
        self.mutex = threading.RLock()
        self.advisory_lock = threading.Lock()
        self.honour_advisory_lock = True
        self.after_count_hook = None
        self._clock = datetime(2025, 1, 1, tzinfo=timezone.utc)

    # ----------------------------- seeding --------------------------------
    def add_course(self, course_id, price=100, owner_id=None, is_published=True, title=None):
        self.courses[course_id] = {"id": course_id, "title": title or f"Course {course_id}",
                                   "price": price, "owner_id": owner_id, "is_published": is_published}

    def add_chapter(self, chapter_id, course_id, position, is_free=False, is_published=True):
        self.chapters.append({"id": chapter_id, "course_id": course_id, "title": f"Chapter {chapter_id}",
                              "description": "", "position": position, "is_free": is_free,
                              "is_published": is_published, "video_url": f"https://video/{chapter_id}"})

    def add_quiz(self, quiz_id, course_id=None, position=1, max_attempts=1, timer_minutes=None,
                 is_published=True):
        self.quizzes.append({"id": quiz_id, "course_id": course_id, "title": f"Quiz {quiz_id}",
                             "description": "", "position": position, "timer_minutes": timer_minutes,
                             "max_attempts": max_attempts, "is_published": is_published})

    def add_question(self, question_id, quiz_id, qtype="SHORT_ANSWER", options=None,
                     correct_answer=None, points=1, position=1):
        self.questions.append({"id": question_id, "quiz_id": quiz_id, "text": f"Question {question_id}",
                               "type": qtype, "options": options, "correct_answer": correct_answer,
                               "points": points, "position": position})

    def next_timestamp(self):
        with self.mutex:
            self._clock += timedelta(seconds=1)
            return self._clock

    def submission_count(self, user_id, quiz_id):
        with self.mutex:
            return sum(1 for s in self.submissions if s["user_id"] == user_id and s["quiz_id"] == quiz_id)

    # ----------------------------- queries --------------------------------
    def _quiz_visible(self, quiz):
        if not quiz["is_published"]:
            return False
        if quiz["course_id"] is None:
            return True
        course = self.courses.get(quiz["course_id"])
        return bool(course and course["is_published"])

    def fetch_one(self, sql, params=()):
        if "FROM public.courses" in sql:
            course = self.courses.get(params[0])
            return dict(course) if course and course["is_published"] else None
        if "FROM public.quizzes q" in sql:
            for quiz in self.quizzes:
                if quiz["id"] == params[0] and self._quiz_visible(quiz):
                    return dict(quiz)
            return None
        if "FROM public.purchases" in sql:
            return {"ok": 1} if (params[0], params[1]) in self.purchases else None
        if "FROM public.user_progress" in sql:
            key = (params[0], params[1])
            return {"is_completed": self.progress[key]} if key in self.progress else None
        if "COUNT(*) AS n" in sql and "quiz_submissions" in sql:
            return {"n": self.submission_count(params[0], params[1])}
        if "FROM public.quiz_submissions" in sql and "ORDER BY attempt_number DESC" in sql:
            with self.mutex:
                mine = [s for s in self.submissions if s["user_id"] == params[0] and s["quiz_id"] == params[1]]
            if not mine:
                return None
            return dict(max(mine, key=lambda s: (s["attempt_number"], s["submitted_at"])))
        raise AssertionError(f"unexpected fetch_one SQL: {sql}")

    def fetch_all(self, sql, params=()):
        if "FROM public.chapters" in sql:
            rows = [c for c in self.chapters if c["course_id"] == params[0] and c["is_published"]]
            return [dict(r) for r in sorted(rows, key=lambda r: r["position"])]
        if "FROM public.quizzes q" in sql:
            out = []
            for quiz in self.quizzes:
                if not self._quiz_visible(quiz):
                    continue
                course = self.courses.get(quiz["course_id"]) or {}
                out.append({**quiz, "course_title": course.get("title"), "course_price": course.get("price"),
                            "course_owner_id": course.get("owner_id"),
                            "question_count": sum(1 for q in self.questions if q["quiz_id"] == quiz["id"])})
            return out
        if "FROM public.quizzes" in sql:
            rows = [q for q in self.quizzes if q["course_id"] == params[0] and q["is_published"]]
            return [dict(r) for r in sorted(rows, key=lambda r: r["position"])]
        if "FROM public.questions" in sql:
            rows = [q for q in self.questions if q["quiz_id"] == params[0]]
            return [dict(r) for r in sorted(rows, key=lambda r: r["position"])]
        if "FROM public.user_progress" in sql:
            user_id, ids = params
            return [{"chapter_id": cid} for (uid, cid), done in self.progress.items()
                    if uid == user_id and cid in ids and done]
        if "GROUP BY quiz_id" in sql:
            user_id, ids = params
            counts = {}
            with self.mutex:
                for s in self.submissions:
                    if s["user_id"] == user_id and s["quiz_id"] in ids:
                        counts[s["quiz_id"]] = counts.get(s["quiz_id"], 0) + 1
            return [{"quiz_id": k, "n": v} for k, v in counts.items()]
        if "FROM public.quiz_submission_answers a" in sql:
            by_id = {q["id"]: q for q in self.questions}
            rows = []
            for a in self.answers:
                if a["submission_id"] != params[0]:
                    continue
                q = by_id.get(a["question_id"]) or {}
                rows.append({
                    "question_id": a["question_id"], "answer_position": a["position"],
                    "student_answer": a["student_answer"], "q_id": q.get("id"), "text": q.get("text"),
                    "type": q.get("type"), "options": q.get("options"),
                    "correct_answer": q.get("correct_answer"), "points": q.get("points"),
                    "question_position": q.get("position"),
                })
            big = float("inf")
            rows.sort(key=lambda r: (r["question_position"] if r["question_position"] is not None else big,
                                     r["answer_position"]))
            return rows
        raise AssertionError(f"unexpected fetch_all SQL: {sql}")

    def execute(self, sql, params=()):
        self.executed.append((sql, params))
        if "INSERT INTO public.user_progress" in sql:
            self.progress[(params[0], params[1])] = True
            return
        if "DELETE FROM public.user_progress" in sql:
            self.progress.pop((params[0], params[1]), None)
            return
        raise AssertionError(f"unexpected execute SQL: {sql}")

    @contextmanager
    def transaction(self):
        cur = FakeCursor(self)
        try:
            yield cur
            cur.commit()
        finally:
            if cur.holds_lock:
                self.advisory_lock.release()

    def deps(self):
        return {
            "fetch_one": self.fetch_one,
            "fetch_all": self.fetch_all,
            "execute": self.execute,
            "transaction": self.transaction,
            "secret_key": "test-secret",
        }


@pytest.fixture
def db():
    return FakeDB()


@pytest.fixture
def make_client(db):
    """Flask test client for both blueprints; identity comes from the arguments."""

    def _make(user_id=None, role=None):
        app = Flask(__name__)
        app.testing = True
        app.secret_key = "test-secret"

        @app.before_request
        def _set_user():
            g.user_id = user_id
            g.user_role = role

        app.register_blueprint(create_course_blueprint("", db.deps()))
        app.register_blueprint(create_quiz_blueprint("", db.deps()))
        return app.test_client()

    return _make
