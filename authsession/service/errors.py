from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions.

    Each exception class carries an HTTP ``status_code`` and a stable
    ``error_code`` so a request layer can map it to a response without
    inspecting messages:
    - unauthorized (401)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class TokenCollisionError(ServerError):
    """Freshly generated session IDs kept colliding with live sessions.

    One collision is retried; a second means the token source is broken.
    """
    pass


__all__ = [
    "ServiceError",
    "AuthenticationError",
    "ServerError",
    "TokenCollisionError",
]
