# access.py
# Access Gate: pure allow/deny for a (viewer, course, item). No I/O; the caller
# supplies the purchase fact. Used both to annotate listings and as a guard
# before mutating calls (starting/submitting an attempt, marking progress).
import os
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

from timeline import CHAPTER, QUIZ

FREE = "FREE"
OWNER = "OWNER"
PURCHASED = "PURCHASED"
LOCKED = "LOCKED"

AUTH_REQUIRED = "auth_required"
PURCHASE_REQUIRED = "purchase_required"

ADMIN_ROLES = {r.strip().lower() for r in (os.getenv("ADMIN_ROLES") or "admin").split(",") if r.strip()}

ANONYMOUS: Dict[str, Any] = {"id": None, "role": None}


def make_viewer(user_id: Optional[int], role: Optional[str] = None) -> Dict[str, Any]:
    if not user_id:
        return dict(ANONYMOUS)
    return {"id": user_id, "role": (role or "").strip().lower() or None}


def is_authenticated(viewer: Optional[Dict[str, Any]]) -> bool:
    return bool(viewer and viewer.get("id"))


def is_admin(viewer: Optional[Dict[str, Any]]) -> bool:
    return is_authenticated(viewer) and (viewer.get("role") or "") in ADMIN_ROLES


def is_owner(viewer: Optional[Dict[str, Any]], course: Optional[Dict[str, Any]]) -> bool:
    if not is_authenticated(viewer) or not course:
        return False
    owner_id = course.get("owner_id")
    return owner_id is not None and str(owner_id) == str(viewer["id"])


def is_free_course(course: Optional[Dict[str, Any]]) -> bool:
    if not course:
        return False
    price = course.get("price")
    if price is None:
        return True
    try:
        return Decimal(str(price)) <= 0
    except ArithmeticError:
        return False


def can_access(viewer: Optional[Dict[str, Any]], course: Optional[Dict[str, Any]],
               item: Dict[str, Any], purchased: bool = False) -> Tuple[bool, str]:
    """
    Returns (allowed, reason) with reason one of FREE, OWNER, PURCHASED, LOCKED.

    - free chapters are open to everyone, signed in or not
    - standalone quizzes (no course) are open to everyone
    - owners and admins see everything in their course
    - a purchase (or a zero-price course, for signed-in viewers) opens the rest
    """
    kind = item.get("type")
    if kind == QUIZ and not (course or item.get("course_id")):
        return True, FREE
    if kind == CHAPTER and item.get("is_free"):
        return True, FREE
    if not is_authenticated(viewer):
        return False, LOCKED
    if is_owner(viewer, course) or is_admin(viewer):
        return True, OWNER
    if purchased:
        return True, PURCHASED
    if is_free_course(course):
        return True, FREE
    return False, LOCKED


def required_action(viewer: Optional[Dict[str, Any]]) -> str:
    """What a LOCKED viewer must do next: sign in, or buy the course."""
    return PURCHASE_REQUIRED if is_authenticated(viewer) else AUTH_REQUIRED


__all__ = [
    "FREE", "OWNER", "PURCHASED", "LOCKED", "AUTH_REQUIRED", "PURCHASE_REQUIRED",
    "ANONYMOUS", "make_viewer", "is_authenticated", "is_admin", "is_owner",
    "is_free_course", "can_access", "required_action",
]
