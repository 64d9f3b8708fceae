# errors.py
# Outcomes the sequencing / gating / attempt engine can end in. Every one is
# terminal for the request; none are retried.
from typing import Any, Dict, Optional

from flask import jsonify


class EngineError(Exception):
    code = "error"
    status = 400

    def __init__(self, message: str = "", **extra: Any):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.extra: Dict[str, Any] = extra

    def to_dict(self) -> Dict[str, Any]:
        body = {"ok": False, "error": self.code, "message": self.message}
        body.update(self.extra)
        return body


class NotFound(EngineError):
    """Missing or unpublished course/chapter/quiz. Never says which."""
    code = "not_found"
    status = 404


class Locked(EngineError):
    code = "locked"
    status = 403

    def __init__(self, message: str = "", action: str = "purchase_required", **extra: Any):
        super().__init__(message or "Access to this content is locked.", action=action, **extra)
        self.action = action
        # sign-in first, purchase second
        self.status = 401 if action == "auth_required" else 403


class AttemptsExhausted(EngineError):
    code = "attempts_exhausted"
    status = 403


class ValidationFailed(EngineError):
    code = "validation"
    status = 400


class DeadlinePassed(EngineError):
    code = "deadline_passed"
    status = 400


def _render(err: EngineError):
    return jsonify(err.to_dict()), err.status


def register_error_handlers(target, tag: Optional[str] = None):
    """Attach the JSON renderer to an app or blueprint."""
    def _handle(err: EngineError):
        if tag:
            print(f"[{tag}] {err.code}: {err.message}", flush=True)
        return _render(err)
    target.register_error_handler(EngineError, _handle)
    return target
