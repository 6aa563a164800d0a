from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class SessionConflict(ConstraintViolation):
    """A session with the same ID already exists."""


class StoreUnavailable(Exception):
    """The backing store failed to answer (connection, timeout, pool exhaustion).

    Callers must not read this as "session absent": an unknown answer is not a
    negative answer.
    """

    def __init__(self, message: str, *, backend: str, operation: str):
        super().__init__(message)
        self.message = message
        self.backend = backend
        self.operation = operation


__all__ = ["ConstraintViolation", "SessionConflict", "StoreUnavailable"]
