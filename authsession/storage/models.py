from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone


def ensure_utc(value: datetime) -> datetime:
    """Normalize a timestamp to timezone-aware UTC; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class Session:
    """A server-side login session.

    ``user_id`` and ``csrf_token`` are fixed for the life of the record; only
    ``expires_at`` is ever updated, and only forward.
    """

    session_id: str
    user_id: str
    csrf_token: str
    expires_at: datetime

    def __post_init__(self) -> None:
        object.__setattr__(self, "expires_at", ensure_utc(self.expires_at))

    @classmethod
    def new(
        cls,
        session_id: str,
        user_id: str,
        csrf_token: str,
        *,
        now: datetime,
        lifetime: timedelta,
    ) -> "Session":
        return cls(
            session_id=session_id,
            user_id=user_id,
            csrf_token=csrf_token,
            expires_at=ensure_utc(now) + lifetime,
        )

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= ensure_utc(now)

    def with_expiration(self, expires_at: datetime) -> "Session":
        """Return a copy expiring at ``expires_at``, never earlier than this one."""
        expires_at = ensure_utc(expires_at)
        if expires_at <= self.expires_at:
            return self
        return replace(self, expires_at=expires_at)
