"""Store contract and helpers shared between the session store backends.

Every backend (memory, postgres, redis) satisfies :class:`SessionStore` and
serializes records through the helpers below so a session written by one
backend reads back identically from another.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol

from authsession.storage.models import Session, ensure_utc


class SessionStore(Protocol):
    """Persistence operations the session lifecycle manager relies on.

    Implementations are strongly consistent per session ID and raise
    :class:`~authsession.storage.errors.StoreUnavailable` when the backing
    service cannot be reached.
    """

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def create_session(self, session: Session) -> None:
        """Persist a new record; raise ``SessionConflict`` if the ID is taken."""
        ...

    def update_session_expiration(self, session_id: str, expires_at: datetime) -> bool:
        """Move expiration forward; return False when no such session exists."""
        ...

    def delete_session(self, session_id: str) -> bool: ...

    def purge_expired_sessions(self, now: datetime) -> int: ...


# ============================================================================
# SERIALIZATION
# ============================================================================

def serialize_datetime(value: datetime) -> str:
    return ensure_utc(value).isoformat()


def deserialize_datetime(raw: Any) -> datetime:
    if isinstance(raw, datetime):
        return ensure_utc(raw)
    if isinstance(raw, (int, float)):
        return datetime.fromtimestamp(raw, tz=timezone.utc)
    return ensure_utc(datetime.fromisoformat(str(raw)))


def serialize_session(session: Session) -> Dict[str, str]:
    return {
        "session_id": session.session_id,
        "user_id": session.user_id,
        "csrf_token": session.csrf_token,
        "expires_at": serialize_datetime(session.expires_at),
    }


def deserialize_session(data: Dict[str, Any]) -> Session:
    return Session(
        session_id=str(data["session_id"]),
        user_id=str(data["user_id"]),
        csrf_token=str(data["csrf_token"]),
        expires_at=deserialize_datetime(data["expires_at"]),
    )


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Read a column from a dict-like or attribute row without raising."""
    if row is None:
        return default
    if isinstance(row, dict):
        return row.get(key, default)
    return getattr(row, key, default)
