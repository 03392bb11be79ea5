"""
Engine exceptions.

Every error carries a stable ``code`` (the class name unless overridden),
a human readable ``message`` and a ``details`` mapping the caller can use
to pick a different slot or reconcile a partial checkout. The HTTP layer
renders them through ``status_code``.
"""

from typing import Any, Dict, Optional


class EngineError(Exception):
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None, code: Optional[str] = None):
        self.message = message
        self.details = details or {}
        self.code = code or self.__class__.__name__
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code, "details": self.details}


# ---------- 400 ----------
class ValidationError(EngineError):
    """Bad input shape; rejected before the store is touched."""
    status_code = 400


class LeadTimeViolation(ValidationError):
    pass


# ---------- 403 ----------
class AuthorizationError(EngineError):
    status_code = 403


class Unauthorized(AuthorizationError):
    """Caller does not own the resource."""


class Forbidden(AuthorizationError):
    pass


# ---------- 404 ----------
class NotFoundError(EngineError):
    status_code = 404


# ---------- 409 ----------
class ConflictError(EngineError):
    status_code = 409


class SlotConflict(ConflictError):
    pass


class SlotUnavailable(ConflictError):
    pass


class StaleCart(ConflictError):
    pass


class InvalidState(ConflictError):
    pass


# ---------- 503 ----------
class Unavailable(EngineError):
    """Persistence layer timed out or refused; the caller decides whether to retry."""
    status_code = 503
