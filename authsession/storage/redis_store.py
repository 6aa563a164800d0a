from __future__ import annotations

import contextlib
import math
from datetime import datetime
from typing import Iterator, Optional

from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from authsession.logging import get_logger
from authsession.storage.common import deserialize_datetime
from authsession.storage.errors import SessionConflict, StoreUnavailable
from authsession.storage.models import Session, ensure_utc


class RedisSessionStore:
    """Redis-backed session store.

    Sessions are hashes under ``auth:session:<id>`` holding ``user_id``,
    ``csrf_token`` and ``expires_at`` (epoch seconds). ``EXPIREAT`` mirrors the
    session expiry so Redis reaps dead sessions itself.
    """

    KEY_PREFIX = "auth:session:"

    # Atomic create-if-absent: the whole record lands in one step or not at all
    _CREATE_SCRIPT = """
local key = KEYS[1]
if redis.call('EXISTS', key) == 1 then
  return 0
end
redis.call('HSET', key, 'user_id', ARGV[1], 'csrf_token', ARGV[2], 'expires_at', ARGV[3])
redis.call('EXPIREAT', key, ARGV[4])
return 1
"""

    # Forward-only expiry update; returns 0 when the session is gone
    _EXTEND_SCRIPT = """
local key = KEYS[1]
local current = redis.call('HGET', key, 'expires_at')
if not current then
  return 0
end
if tonumber(ARGV[1]) > tonumber(current) then
  redis.call('HSET', key, 'expires_at', ARGV[1])
  redis.call('EXPIREAT', key, ARGV[2])
end
return 1
"""

    def __init__(
        self,
        redis_url: str,
        *,
        client: Redis | None = None,
        socket_timeout: float = 5.0,
    ) -> None:
        self.redis_url = redis_url
        self.logger = get_logger(__name__)
        self.client = client or Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._create_script = self.client.register_script(self._CREATE_SCRIPT)
        self._extend_script = self.client.register_script(self._EXTEND_SCRIPT)

    def _key(self, session_id: str) -> str:
        return f"{self.KEY_PREFIX}{session_id}"

    @staticmethod
    def _epoch(value: datetime) -> float:
        return ensure_utc(value).timestamp()

    @contextlib.contextmanager
    def _guard(self, operation: str) -> Iterator[None]:
        try:
            yield
        except (RedisConnectionError, RedisTimeoutError) as exc:
            self.logger.error(
                "session_store_unavailable",
                backend="redis",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise StoreUnavailable(
                "redis session store unavailable",
                backend="redis",
                operation=operation,
            ) from exc

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving requests."""
        with self._guard("ping"):
            self.client.ping()

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._guard("get"):
            data = self.client.hgetall(self._key(session_id))
        if not data:
            return None
        return Session(
            session_id=session_id,
            user_id=data["user_id"],
            csrf_token=data["csrf_token"],
            expires_at=deserialize_datetime(float(data["expires_at"])),
        )

    def create_session(self, session: Session) -> None:
        expires_ts = self._epoch(session.expires_at)
        with self._guard("create"):
            created = self._create_script(
                keys=[self._key(session.session_id)],
                args=[
                    session.user_id,
                    session.csrf_token,
                    repr(expires_ts),
                    math.ceil(expires_ts),
                ],
            )
        if not int(created):
            raise SessionConflict(
                "session id already exists", {"user_id": session.user_id}
            )

    def update_session_expiration(self, session_id: str, expires_at: datetime) -> bool:
        expires_ts = self._epoch(expires_at)
        with self._guard("update_expiration"):
            found = self._extend_script(
                keys=[self._key(session_id)],
                args=[repr(expires_ts), math.ceil(expires_ts)],
            )
        return bool(int(found))

    def delete_session(self, session_id: str) -> bool:
        with self._guard("delete"):
            return self.client.delete(self._key(session_id)) > 0

    def purge_expired_sessions(self, now: datetime) -> int:
        # Keys carry EXPIREAT; Redis has already dropped anything past its expiry
        return 0

    def close(self) -> None:
        self.client.close()
