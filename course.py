# course.py
from typing import Any, Callable, Dict, List, Optional, Tuple

from flask import Blueprint, g, jsonify, request

import progress
import store
from access import can_access, is_authenticated, make_viewer, required_action
from attempts import attempt_counts
from errors import Locked, NotFound, register_error_handlers
from timeline import CHAPTER, QUIZ, build_timeline, chapter_ids, find_item, neighbour_ref, next_of, previous_of


def create_course_blueprint(base_path: str, deps: Dict[str, Any], name: str = "course") -> Blueprint:
    """
    Course timeline, chapter view and progress endpoints, mounted at base_path
    (default "/api"):
      - GET    /courses/<course_id>/timeline
      - GET    /courses/<course_id>/chapters/<chapter_id>
      - GET    /courses/<course_id>/progress
      - GET|PUT|DELETE /courses/<course_id>/chapters/<chapter_id>/progress
      - POST   /courses/<course_id>/chapters/<chapter_id>/progress/video-ended
    Required deps: fetch_one, fetch_all, execute
    Optional deps: has_purchased(user_id, course_id) -> bool
    """
    url_prefix = base_path or "/api"
    bp = Blueprint(name, __name__, url_prefix=url_prefix)
    register_error_handlers(bp)

    has_purchased: Callable = deps.get("has_purchased") or (lambda uid, cid: store.has_purchased(deps, uid, cid))

    # ------------------------------- helpers ----------------------------------
    def _viewer() -> Dict[str, Any]:
        return make_viewer(getattr(g, "user_id", None), getattr(g, "user_role", None))

    def _load(course_id: str) -> Tuple[Dict[str, Any], List[Dict[str, Any]], Dict[str, Dict[str, Any]]]:
        course = store.course_row(deps, course_id)
        if not course:
            raise NotFound("Course not found.")
        chapters = store.published_chapters(deps, course_id)
        quizzes = store.published_quizzes(deps, course_id)
        rows = {str(c["id"]): c for c in chapters}
        return course, build_timeline(chapters, quizzes), rows

    def _purchased(viewer: Dict[str, Any], course: Dict[str, Any]) -> bool:
        return is_authenticated(viewer) and bool(has_purchased(viewer["id"], course["id"]))

    def _require_user(viewer: Dict[str, Any]) -> None:
        if not is_authenticated(viewer):
            raise Locked("Sign in to track your progress.", action="auth_required")

    def _gate_chapter(viewer, course, item, purchased) -> str:
        allowed, reason = can_access(viewer, course, item, purchased=purchased)
        if not allowed:
            raise Locked("This chapter is locked.", action=required_action(viewer),
                         course_id=str(course["id"]), chapter_id=item["id"])
        return reason

    def _chapter_item(timeline, chapter_id: str) -> Dict[str, Any]:
        item = find_item(timeline, chapter_id, CHAPTER)
        if not item:
            raise NotFound("Chapter not found.")
        return item

    def _course_meta(course: Dict[str, Any]) -> Dict[str, Any]:
        price = course.get("price")
        return {
            "id": str(course["id"]),
            "title": course.get("title"),
            "price": float(price) if price is not None else 0.0,
        }

    # -------------------------------- routes ----------------------------------
    @bp.get("/courses/<course_id>/timeline")
    def course_timeline(course_id: str):
        viewer = _viewer()
        course, timeline, _rows = _load(course_id)
        purchased = _purchased(viewer, course)

        done = progress.completed_chapter_ids(deps, viewer["id"], chapter_ids(timeline))
        used = attempt_counts(deps, viewer["id"], [it["id"] for it in timeline if it["type"] == QUIZ])

        items = []
        for it in timeline:
            allowed, reason = can_access(viewer, course, it, purchased=purchased)
            row = dict(it)
            row["allowed"] = allowed
            row["reason"] = reason
            row["action"] = None if allowed else required_action(viewer)
            if it["type"] == CHAPTER:
                row["is_completed"] = it["id"] in done
            else:
                row["attempts_used"] = used.get(it["id"], 0)
            items.append(row)

        pct: Optional[float] = None
        if is_authenticated(viewer):
            pct = progress.progress_percent(len(done), len(chapter_ids(timeline)))

        return jsonify({
            "ok": True,
            "course": _course_meta(course),
            "purchased": purchased,
            "items": items,
            "progress": pct,
        })

    @bp.get("/courses/<course_id>/chapters/<chapter_id>")
    def chapter_view(course_id: str, chapter_id: str):
        viewer = _viewer()
        course, timeline, rows = _load(course_id)
        item = _chapter_item(timeline, chapter_id)
        reason = _gate_chapter(viewer, course, item, _purchased(viewer, course))
        row = rows.get(item["id"]) or {}

        return jsonify({
            "ok": True,
            "course": _course_meta(course),
            "chapter": {
                "id": item["id"],
                "title": item["title"],
                "description": row.get("description"),
                "position": item["position"],
                "is_free": item["is_free"],
                "video_url": row.get("video_url"),
            },
            "reason": reason,
            "is_completed": progress.is_completed(deps, viewer["id"], item["id"]),
            "next": neighbour_ref(next_of(timeline, item["id"], CHAPTER)),
            "previous": neighbour_ref(previous_of(timeline, item["id"], CHAPTER)),
        })

    @bp.get("/courses/<course_id>/progress")
    def course_progress_view(course_id: str):
        viewer = _viewer()
        _require_user(viewer)
        _course, timeline, _rows = _load(course_id)
        ids = chapter_ids(timeline)
        done = progress.completed_chapter_ids(deps, viewer["id"], ids)
        return jsonify({
            "ok": True,
            "course_id": course_id,
            "progress": progress.progress_percent(len(done), len(ids)),
            "completed_chapters": [cid for cid in ids if cid in done],
            "total_chapters": len(ids),
        })

    @bp.route("/courses/<course_id>/chapters/<chapter_id>/progress", methods=["GET", "PUT", "DELETE"])
    def chapter_progress(course_id: str, chapter_id: str):
        viewer = _viewer()
        _require_user(viewer)
        course, timeline, _rows = _load(course_id)
        item = _chapter_item(timeline, chapter_id)

        if request.method != "GET":
            _gate_chapter(viewer, course, item, _purchased(viewer, course))
            if request.method == "PUT":
                progress.mark_completed(deps, viewer["id"], item["id"])
            else:
                progress.mark_incomplete(deps, viewer["id"], item["id"])
            print(f"[progress] {request.method} user={viewer['id']} chapter={item['id']}", flush=True)

        snap = progress.progress_snapshot(deps, viewer["id"], item["id"], chapter_ids(timeline))
        return jsonify({"ok": True, **snap})

    @bp.post("/courses/<course_id>/chapters/<chapter_id>/progress/video-ended")
    def chapter_video_ended(course_id: str, chapter_id: str):
        viewer = _viewer()
        _require_user(viewer)
        course, timeline, _rows = _load(course_id)
        item = _chapter_item(timeline, chapter_id)
        _gate_chapter(viewer, course, item, _purchased(viewer, course))

        if not progress.is_completed(deps, viewer["id"], item["id"]):
            progress.mark_completed(deps, viewer["id"], item["id"])
            print(f"[progress] auto-complete user={viewer['id']} chapter={item['id']}", flush=True)

        snap = progress.progress_snapshot(deps, viewer["id"], item["id"], chapter_ids(timeline))
        return jsonify({"ok": True, **snap})

    return bp
