"""Session lifecycle: lookup with throttled sliding refresh, creation, removal.

The manager itself holds no per-request state. Whatever session a request has
loaded lives in a :class:`SessionHandle` the caller owns and passes in, so one
manager can serve concurrent requests as long as each has its own handle.
"""

from __future__ import annotations

import hmac
from concurrent.futures import Executor
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, NamedTuple, Optional

from authsession.config import MAX_TOKEN_LENGTH, MIN_TOKEN_LENGTH, Settings
from authsession.logging import get_logger
from authsession.service.errors import AuthenticationError, ServerError, TokenCollisionError
from authsession.service.tokens import SecretsTokenGenerator, TokenGenerator
from authsession.storage.common import SessionStore
from authsession.storage.errors import SessionConflict, StoreUnavailable
from authsession.storage.models import Session, ensure_utc

logger = get_logger(__name__)

Clock = Callable[[], datetime]

# First attempt plus one retry with a fresh ID
_CREATE_ATTEMPTS = 2


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def is_well_formed_session_id(value: Any) -> bool:
    # IDs are opaque; only type and size are checked before the store sees them
    return isinstance(value, str) and 0 < len(value) <= MAX_TOKEN_LENGTH


@dataclass(frozen=True)
class SessionPolicy:
    """Lifetime and refresh throttle for sessions.

    A session is refreshed when its expiry is earlier than
    ``now + lifetime - refresh_throttle``. Since every creation and refresh
    sets the expiry to exactly ``now + lifetime``, this fires once more than
    ``refresh_throttle`` has passed since the last write, bounding store writes
    to one per session per throttle window however busy the session is.
    """

    lifetime: timedelta = timedelta(days=14)
    refresh_throttle: timedelta = timedelta(days=1)
    token_length: int = 32

    def __post_init__(self) -> None:
        if self.refresh_throttle <= timedelta(0):
            raise ValueError("refresh_throttle must be positive")
        if self.lifetime <= self.refresh_throttle:
            raise ValueError("lifetime must exceed refresh_throttle")
        if not MIN_TOKEN_LENGTH <= self.token_length <= MAX_TOKEN_LENGTH:
            raise ValueError(
                f"token_length must be between {MIN_TOKEN_LENGTH} and {MAX_TOKEN_LENGTH}"
            )

    @classmethod
    def from_settings(cls, settings: Settings) -> "SessionPolicy":
        return cls(
            lifetime=settings.session_lifetime,
            refresh_throttle=settings.session_refresh_throttle,
            token_length=settings.session_token_length,
        )

    def expiry_from(self, now: datetime) -> datetime:
        return ensure_utc(now) + self.lifetime

    def should_refresh(self, session: Session, now: datetime) -> bool:
        return session.expires_at < self.expiry_from(now) - self.refresh_throttle


class SessionLookup(NamedTuple):
    user_id: Optional[str]
    found: bool


_NOT_FOUND = SessionLookup(user_id=None, found=False)


@dataclass
class SessionHandle:
    """The session loaded for one unit of work, or nothing."""

    session: Optional[Session] = None

    @property
    def loaded(self) -> bool:
        return self.session is not None

    def clear(self) -> None:
        self.session = None


class SessionManager:
    """Validates, refreshes, creates and removes sessions against a store."""

    def __init__(
        self,
        store: SessionStore,
        *,
        tokens: Optional[TokenGenerator] = None,
        policy: Optional[SessionPolicy] = None,
        clock: Optional[Clock] = None,
        refresh_executor: Optional[Executor] = None,
    ) -> None:
        self.store = store
        self.tokens: TokenGenerator = tokens or SecretsTokenGenerator()
        self.policy = policy or SessionPolicy()
        self.clock: Clock = clock or utc_now
        self.refresh_executor = refresh_executor
        self.logger = logger

    def _now(self) -> datetime:
        return ensure_utc(self.clock())

    def scope(self, handle: Optional[SessionHandle] = None) -> "SessionScope":
        return SessionScope(self, handle or SessionHandle())

    def validate(self, handle: SessionHandle, session_id: Any) -> SessionLookup:
        """Load ``session_id`` into ``handle`` and report its user.

        Unknown, malformed and expired IDs come back as not found. A store
        outage raises ``StoreUnavailable`` instead, with the handle left empty.
        """
        handle.clear()
        if not is_well_formed_session_id(session_id):
            return _NOT_FOUND

        sess = self.store.get_session(session_id)
        now = self._now()
        if sess is None or sess.is_expired(now):
            return _NOT_FOUND

        handle.session = sess
        if self.policy.should_refresh(sess, now):
            self._schedule_refresh(sess, self.policy.expiry_from(now))
        return SessionLookup(user_id=sess.user_id, found=True)

    def _schedule_refresh(self, session: Session, expires_at: datetime) -> None:
        if self.refresh_executor is None:
            self._refresh(session, expires_at)
            return
        try:
            self.refresh_executor.submit(self._refresh, session, expires_at)
        except RuntimeError as exc:
            # Executor already shut down; the session keeps its old expiry
            self.logger.warning(
                "session_refresh_not_scheduled",
                session_id=session.session_id,
                error=str(exc),
            )

    def _refresh(self, session: Session, expires_at: datetime) -> bool:
        try:
            updated = self.store.update_session_expiration(session.session_id, expires_at)
        except Exception as exc:
            # Losing a refresh only shortens the session; never fail the request
            self.logger.warning(
                "session_refresh_failed",
                session_id=session.session_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        if not updated:
            self.logger.debug("session_refresh_missed", session_id=session.session_id)
            return False
        self.logger.debug(
            "session_refreshed",
            session_id=session.session_id,
            user_id=session.user_id,
            expires_at=expires_at.isoformat(),
        )
        return True

    def create(self, handle: SessionHandle, user_id: str) -> str:
        """Mint a session for ``user_id`` unless ``handle`` already holds one."""
        if handle.session is not None:
            return handle.session.session_id
        if not isinstance(user_id, str) or not user_id:
            raise ValueError("user_id must be a non-empty string")

        length = self.policy.token_length
        for attempt in range(1, _CREATE_ATTEMPTS + 1):
            session_id = self.tokens.random(length)
            if not is_well_formed_session_id(session_id):
                raise ServerError("token generator returned an unusable session id")
            sess = Session.new(
                session_id,
                user_id,
                self.tokens.random(length),
                now=self._now(),
                lifetime=self.policy.lifetime,
            )
            try:
                self.store.create_session(sess)
            except SessionConflict:
                self.logger.warning(
                    "session_id_collision", attempt=attempt, user_id=user_id
                )
                continue
            handle.session = sess
            self.logger.info(
                "session_created",
                user_id=user_id,
                expires_at=sess.expires_at.isoformat(),
            )
            return sess.session_id

        self.logger.error("session_id_collision_repeated", user_id=user_id)
        raise TokenCollisionError(
            "could not allocate a unique session id",
            detail={"attempts": _CREATE_ATTEMPTS},
        )

    def remove(self, handle: SessionHandle) -> bool:
        """Delete the loaded session. False when nothing is loaded."""
        sess = handle.session
        if sess is None:
            return False
        self.store.delete_session(sess.session_id)
        handle.clear()
        self.logger.info("session_removed", user_id=sess.user_id)
        return True

    def current_csrf_token(self, handle: SessionHandle) -> Optional[str]:
        if handle.session is None:
            return None
        return handle.session.csrf_token

    def verify_csrf_token(self, handle: SessionHandle, candidate: Any) -> bool:
        expected = self.current_csrf_token(handle)
        if expected is None or not isinstance(candidate, str) or not candidate:
            return False
        return hmac.compare_digest(expected.encode(), candidate.encode())

    def require_user(self, handle: SessionHandle, session_id: Any) -> str:
        """Validate at the request boundary; every failure is one 401.

        Not found and store outages raise the same ``AuthenticationError`` so
        responses never reveal whether a session exists. The difference is only
        visible in the logs.
        """
        try:
            lookup = self.validate(handle, session_id)
        except StoreUnavailable as exc:
            self.logger.error(
                "session_store_unavailable",
                backend=exc.backend,
                operation=exc.operation,
            )
            raise AuthenticationError("session invalid") from exc
        if not lookup.found:
            self.logger.debug("session_not_found")
            raise AuthenticationError("session invalid")
        return lookup.user_id

    def purge_expired(self) -> int:
        return self.store.purge_expired_sessions(self._now())


class SessionScope:
    """One request's view of the manager: a manager bound to its own handle."""

    def __init__(self, manager: SessionManager, handle: SessionHandle) -> None:
        self.manager = manager
        self.handle = handle

    @property
    def session(self) -> Optional[Session]:
        return self.handle.session

    def validate(self, session_id: Any) -> SessionLookup:
        return self.manager.validate(self.handle, session_id)

    def create(self, user_id: str) -> str:
        return self.manager.create(self.handle, user_id)

    def remove(self) -> bool:
        return self.manager.remove(self.handle)

    def csrf_token(self) -> Optional[str]:
        return self.manager.current_csrf_token(self.handle)

    def verify_csrf(self, candidate: Any) -> bool:
        return self.manager.verify_csrf_token(self.handle, candidate)

    def require_user(self, session_id: Any) -> str:
        return self.manager.require_user(self.handle, session_id)
