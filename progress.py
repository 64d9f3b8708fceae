# progress.py
# Per-(user, chapter) completion flags and the course percentage built on them.
# Completing is an upsert and un-completing a delete, so both are safe to call
# again (manual toggle and the video "ended" hook may race on the same row).
from typing import Any, Dict, Iterable, Optional, Set


def mark_completed(deps: Dict[str, Any], user_id: int, chapter_id: str) -> None:
    deps["execute"]("""
        INSERT INTO public.user_progress (user_id, chapter_id, is_completed, updated_at)
        VALUES (%s, %s, TRUE, now())
        ON CONFLICT (user_id, chapter_id) DO UPDATE
           SET is_completed = TRUE,
               updated_at   = now()
         WHERE public.user_progress.is_completed IS DISTINCT FROM TRUE;
    """, (user_id, str(chapter_id)))


def mark_incomplete(deps: Dict[str, Any], user_id: int, chapter_id: str) -> None:
    deps["execute"]("""
        DELETE FROM public.user_progress
         WHERE user_id = %s AND chapter_id = %s;
    """, (user_id, str(chapter_id)))


def is_completed(deps: Dict[str, Any], user_id: Optional[int], chapter_id: str) -> bool:
    if not user_id:
        return False
    row = deps["fetch_one"]("""
        SELECT is_completed
          FROM public.user_progress
         WHERE user_id = %s AND chapter_id = %s;
    """, (user_id, str(chapter_id)))
    return bool(row and row.get("is_completed"))


def completed_chapter_ids(deps: Dict[str, Any], user_id: Optional[int],
                          chapter_ids: Iterable[str]) -> Set[str]:
    ids = [str(c) for c in chapter_ids]
    if not user_id or not ids:
        return set()
    rows = deps["fetch_all"]("""
        SELECT chapter_id
          FROM public.user_progress
         WHERE user_id = %s
           AND chapter_id = ANY(%s)
           AND is_completed = TRUE;
    """, (user_id, ids)) or []
    return {str(r["chapter_id"]) for r in rows}


def progress_percent(completed: int, total: int) -> float:
    """0.0 for a course with no published chapters, never a division error."""
    if total <= 0:
        return 0.0
    return round(100.0 * min(completed, total) / total, 2)


def course_progress(deps: Dict[str, Any], user_id: Optional[int],
                    published_chapter_ids: Iterable[str]) -> float:
    """Share of the course's published chapters this user has completed."""
    ids = list(dict.fromkeys(str(c) for c in published_chapter_ids))
    done = completed_chapter_ids(deps, user_id, ids)
    return progress_percent(len(done), len(ids))


def progress_snapshot(deps: Dict[str, Any], user_id: int, chapter_id: str,
                      published_chapter_ids: Iterable[str]) -> Dict[str, Any]:
    ids = list(published_chapter_ids)
    return {
        "chapter_id": str(chapter_id),
        "is_completed": is_completed(deps, user_id, chapter_id),
        "course_progress": course_progress(deps, user_id, ids),
    }


__all__ = [
    "mark_completed", "mark_incomplete", "is_completed", "completed_chapter_ids",
    "progress_percent", "course_progress", "progress_snapshot",
]
