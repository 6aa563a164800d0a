from __future__ import annotations

import contextlib
from datetime import datetime
from typing import Iterator, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from authsession.logging import get_logger
from authsession.storage.common import deserialize_datetime, safe_row_value
from authsession.storage.errors import SessionConflict, StoreUnavailable
from authsession.storage.models import Session, ensure_utc


_SCHEMA = """
CREATE TABLE IF NOT EXISTS auth_session (
    session_id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    csrf_token TEXT NOT NULL,
    expires_at TIMESTAMPTZ NOT NULL
)
"""

_EXPIRY_INDEX = """
CREATE INDEX IF NOT EXISTS auth_session_expires_at_idx ON auth_session (expires_at)
"""


class PostgresStore:
    """Postgres-backed session store.

    Each operation is a single statement, so per-row atomicity comes from the
    database. Connection and pool failures surface as ``StoreUnavailable``.
    """

    def __init__(
        self,
        dsn: str,
        *,
        pool: ConnectionPool | None = None,
        connect_timeout: float = 5.0,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.connect_timeout = connect_timeout
        self.pool = pool or ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    @contextlib.contextmanager
    def _connect(self, operation: str) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection(timeout=self.connect_timeout) as conn:
                yield conn
        except psycopg.OperationalError as exc:
            # PoolTimeout is an OperationalError too
            self.logger.error(
                "session_store_unavailable",
                backend="postgres",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise StoreUnavailable(
                "postgres session store unavailable",
                backend="postgres",
                operation=operation,
            ) from exc

    def _ensure_schema(self) -> None:
        """Create the ``auth_session`` table if it is missing."""

        with self._connect("ensure_schema") as conn:
            conn.execute(_SCHEMA)
            conn.execute(_EXPIRY_INDEX)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect("get") as conn:
            row = conn.execute(
                "SELECT session_id, user_id, csrf_token, expires_at "
                "FROM auth_session WHERE session_id = %s",
                (session_id,),
            ).fetchone()
        if not row:
            return None
        return Session(
            session_id=str(safe_row_value(row, "session_id")),
            user_id=str(safe_row_value(row, "user_id")),
            csrf_token=str(safe_row_value(row, "csrf_token")),
            expires_at=deserialize_datetime(safe_row_value(row, "expires_at")),
        )

    def create_session(self, session: Session) -> None:
        try:
            with self._connect("create") as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (session_id, user_id, csrf_token, expires_at)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (
                        session.session_id,
                        session.user_id,
                        session.csrf_token,
                        session.expires_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            raise SessionConflict(
                "session id already exists", {"user_id": session.user_id}
            ) from exc

    def update_session_expiration(self, session_id: str, expires_at: datetime) -> bool:
        # GREATEST keeps a late concurrent refresh from moving expiry backwards
        with self._connect("update_expiration") as conn:
            result = conn.execute(
                "UPDATE auth_session SET expires_at = GREATEST(expires_at, %s) "
                "WHERE session_id = %s",
                (ensure_utc(expires_at), session_id),
            )
            return result.rowcount > 0

    def delete_session(self, session_id: str) -> bool:
        with self._connect("delete") as conn:
            result = conn.execute(
                "DELETE FROM auth_session WHERE session_id = %s", (session_id,)
            )
            return result.rowcount > 0

    def purge_expired_sessions(self, now: datetime) -> int:
        with self._connect("purge") as conn:
            result = conn.execute(
                "DELETE FROM auth_session WHERE expires_at <= %s", (ensure_utc(now),)
            )
            purged = max(result.rowcount, 0)
        if purged:
            self.logger.info("sessions_purged", count=purged, backend="postgres")
        return purged

    def close(self) -> None:
        self.pool.close()
