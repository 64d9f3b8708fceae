# timeline.py
# --------- Course timeline: chapters and quizzes in one position order ---------
# Chapters and quizzes are numbered independently but share one position space.
# Ties on position go chapter-first; within a type the fetched order (creation
# order) is kept, relying on sorted() being stable.
from typing import Any, Dict, Iterable, List, Optional, Sequence

CHAPTER = "chapter"
QUIZ = "quiz"

_TYPE_RANK = {CHAPTER: 0, QUIZ: 1}


def _position(row: Dict[str, Any]) -> int:
    try:
        return int(row.get("position") or 0)
    except (TypeError, ValueError):
        return 0


def _as_item(row: Dict[str, Any], kind: str) -> Dict[str, Any]:
    return {
        "type": kind,
        "id": str(row["id"]),
        "title": row.get("title") or "",
        "position": _position(row),
        # quizzes follow the course rule; they have no free flag of their own
        "is_free": bool(row.get("is_free")) if kind == CHAPTER else False,
        "is_published": bool(row.get("is_published", True)),
        "course_id": row.get("course_id"),
    }


def build_timeline(chapters: Iterable[Dict[str, Any]],
                   quizzes: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Merge published chapters and quizzes into one ordered list of content items."""
    items: List[Dict[str, Any]] = []
    for row in chapters or ():
        if row.get("is_published", True):
            items.append(_as_item(row, CHAPTER))
    for row in quizzes or ():
        if row.get("is_published", True):
            items.append(_as_item(row, QUIZ))
    return sorted(items, key=lambda it: (it["position"], _TYPE_RANK[it["type"]]))


def _index_of(timeline: Sequence[Dict[str, Any]], item_id: str, kind: Optional[str] = None) -> Optional[int]:
    for i, it in enumerate(timeline):
        if it["id"] == str(item_id) and (kind is None or it["type"] == kind):
            return i
    return None


def find_item(timeline: Sequence[Dict[str, Any]], item_id: str,
              kind: Optional[str] = None) -> Optional[Dict[str, Any]]:
    idx = _index_of(timeline, item_id, kind)
    return timeline[idx] if idx is not None else None


def next_of(timeline: Sequence[Dict[str, Any]], current_id: str,
            kind: Optional[str] = None) -> Optional[Dict[str, Any]]:
    idx = _index_of(timeline, current_id, kind)
    if idx is None or idx + 1 >= len(timeline):
        return None
    return timeline[idx + 1]


def previous_of(timeline: Sequence[Dict[str, Any]], current_id: str,
                kind: Optional[str] = None) -> Optional[Dict[str, Any]]:
    idx = _index_of(timeline, current_id, kind)
    if idx is None or idx == 0:
        return None
    return timeline[idx - 1]


def neighbour_ref(item: Optional[Dict[str, Any]]) -> Optional[Dict[str, str]]:
    """{"type", "id"} so the caller knows whether to open a chapter or a quiz page."""
    if not item:
        return None
    return {"type": item["type"], "id": item["id"], "title": item.get("title") or ""}


def chapter_ids(timeline: Sequence[Dict[str, Any]]) -> List[str]:
    return [it["id"] for it in timeline if it["type"] == CHAPTER]


__all__ = [
    "CHAPTER", "QUIZ", "build_timeline", "find_item",
    "next_of", "previous_of", "neighbour_ref", "chapter_ids",
]
