# quiz.py
# -----------------------------------------------------------------------------
# Quiz endpoints: catalogue, status, start, submit, latest result.
# - standalone quizzes (no course) are open to every signed-in user
# - course quizzes follow the course gate (purchase / owner / admin / free course)
# - start and submit both enforce max_attempts; submit re-checks atomically
# - the countdown is advisory unless QUIZ_ENFORCE_DEADLINE is on
# -----------------------------------------------------------------------------
from typing import Any, Callable, Dict, Optional, Tuple

from flask import Blueprint, current_app, g, jsonify, request

import attempts
import results
import store
from access import can_access, is_authenticated, make_viewer, required_action
from errors import Locked, NotFound, ValidationFailed, register_error_handlers


def create_quiz_blueprint(base_path: str, deps: Dict[str, Any], name: str = "quiz") -> Blueprint:
    """
    Factory that returns a Blueprint mounted at base_path (default "/api").
    Required deps: fetch_one, fetch_all, execute, transaction
    Optional deps: has_purchased(user_id, course_id) -> bool, secret_key
    """
    url_prefix = base_path or "/api"
    bp = Blueprint(name, __name__, url_prefix=url_prefix)
    register_error_handlers(bp, tag="quiz")

    has_purchased: Callable = deps.get("has_purchased") or (lambda uid, cid: store.has_purchased(deps, uid, cid))

    def _viewer() -> Dict[str, Any]:
        return make_viewer(getattr(g, "user_id", None), getattr(g, "user_role", None))

    def _secret_key() -> Optional[str]:
        return deps.get("secret_key") or current_app.secret_key

    def _require_user(viewer: Dict[str, Any]) -> None:
        if not is_authenticated(viewer):
            raise Locked("Sign in to take quizzes.", action="auth_required")

    def _load_quiz(quiz_id: str) -> Tuple[Dict[str, Any], Optional[Dict[str, Any]]]:
        quiz = store.quiz_row(deps, quiz_id)
        if not quiz:
            raise NotFound("Quiz not found.")
        course = None
        if quiz.get("course_id"):
            course = store.course_row(deps, quiz["course_id"])
            if not course:
                raise NotFound("Quiz not found.")
        return quiz, course

    def _guard(viewer: Dict[str, Any], quiz: Dict[str, Any], course: Optional[Dict[str, Any]]) -> str:
        purchased = bool(course) and bool(has_purchased(viewer["id"], course["id"]))
        return attempts.ensure_quiz_access(viewer, quiz, course, purchased)

    def _quiz_meta(quiz: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "id": str(quiz["id"]),
            "title": quiz.get("title"),
            "description": quiz.get("description"),
            "course_id": quiz.get("course_id"),
            "standalone": not quiz.get("course_id"),
            "max_attempts": attempts.max_attempts_of(quiz),
            "timer_minutes": quiz.get("timer_minutes"),
        }

    # -------------------------------- routes ----------------------------------
    @bp.get("/quizzes")
    def quiz_catalogue():
        viewer = _viewer()
        rows = store.catalogue_quizzes(deps)
        used = attempts.attempt_counts(deps, viewer["id"], [r["id"] for r in rows])

        purchase_cache: Dict[str, bool] = {}
        items = []
        for r in rows:
            course = None
            purchased = False
            if r.get("course_id"):
                course = {"id": r["course_id"], "price": r.get("course_price"), "owner_id": r.get("course_owner_id")}
                if is_authenticated(viewer):
                    cid = str(r["course_id"])
                    if cid not in purchase_cache:
                        purchase_cache[cid] = bool(has_purchased(viewer["id"], cid))
                    purchased = purchase_cache[cid]
            item = {"type": "quiz", "id": str(r["id"]), "course_id": r.get("course_id")}
            allowed, reason = can_access(viewer, course, item, purchased=purchased)
            n = used.get(str(r["id"]), 0)
            items.append({
                **_quiz_meta(r),
                "course_title": r.get("course_title"),
                "question_count": int(r.get("question_count") or 0),
                "allowed": allowed,
                "reason": reason,
                "action": None if allowed else required_action(viewer),
                "attempts_used": n,
                "has_submitted": n > 0,
            })
        return jsonify({"ok": True, "quizzes": items})

    @bp.get("/quizzes/<quiz_id>")
    def quiz_status(quiz_id: str):
        viewer = _viewer()
        _require_user(viewer)
        quiz, course = _load_quiz(quiz_id)
        reason = _guard(viewer, quiz, course)

        used = attempts.count_submissions(deps, viewer["id"], quiz["id"])
        ceiling = attempts.max_attempts_of(quiz)
        questions = store.quiz_questions(deps, quiz["id"])
        return jsonify({
            "ok": True,
            "quiz": _quiz_meta(quiz),
            "reason": reason,
            "questions": [store.public_question(q) for q in questions],
            "attempts_used": used,
            "current_attempt": used + 1,
            "max_attempts": ceiling,
            "can_start": used < ceiling,
            "timer_seconds": attempts.timer_seconds(quiz),
        })

    @bp.post("/quizzes/<quiz_id>/start")
    def quiz_start(quiz_id: str):
        viewer = _viewer()
        _require_user(viewer)
        quiz, course = _load_quiz(quiz_id)
        _guard(viewer, quiz, course)

        questions = store.quiz_questions(deps, quiz["id"])
        started = attempts.start_attempt(deps, viewer, quiz, questions, secret_key=_secret_key())
        return jsonify({"ok": True, **started})

    @bp.post("/quizzes/<quiz_id>/submit")
    def quiz_submit(quiz_id: str):
        viewer = _viewer()
        _require_user(viewer)
        quiz, course = _load_quiz(quiz_id)
        _guard(viewer, quiz, course)

        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            raise ValidationFailed("Expected a JSON object with an 'answers' field.")

        questions = store.quiz_questions(deps, quiz["id"])
        submission = attempts.submit_attempt(
            deps, viewer, quiz, questions, data.get("answers"),
            attempt_token=data.get("attempt_token"),
            secret_key=_secret_key(),
        )
        return jsonify({"ok": True, "submission": submission})

    @bp.get("/quizzes/<quiz_id>/result")
    def quiz_result(quiz_id: str):
        viewer = _viewer()
        _require_user(viewer)
        quiz, _course = _load_quiz(quiz_id)
        return jsonify({"ok": True, "result": results.latest_result(deps, viewer["id"], quiz)})

    return bp
