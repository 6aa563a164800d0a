"""Unit tests for the session lifecycle manager.

Tests for:
- Validation of unknown, malformed, expired and live session IDs
- Throttled sliding refresh of session expiry
- Session creation and the double-creation guard
- Session removal
- CSRF token binding and verification
- Boundary mapping of failures to a single authentication error
"""

from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest

from authsession.config import Settings
from authsession.service.errors import AuthenticationError, ServerError, TokenCollisionError
from authsession.service.sessions import (
    SessionHandle,
    SessionLookup,
    SessionManager,
    SessionPolicy,
)
from authsession.storage.errors import SessionConflict, StoreUnavailable
from authsession.storage.memory import MemoryStore
from authsession.storage.models import Session


class SequenceTokens:
    """Token generator replaying fixed values, for collision scenarios."""

    def __init__(self, values):
        self.values = list(values)
        self.calls = 0

    def random(self, length):
        self.calls += 1
        return self.values.pop(0)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def manager(store, clock):
    return SessionManager(store, clock=clock)


@pytest.fixture
def handle():
    return SessionHandle()


class TestValidate:
    """Tests for validate()."""

    def test_unknown_session_is_not_found(self, manager, handle):
        """IDs never issued are not found and leave the handle empty."""
        lookup = manager.validate(handle, "never-issued-session-id")

        assert lookup == SessionLookup(user_id=None, found=False)
        assert handle.loaded is False

    @pytest.mark.parametrize(
        "candidate",
        [None, "", 42, b"bytes-id", ["list"], "x" * 257, "x" * 1000],
    )
    def test_malformed_ids_are_not_found_without_store_access(self, store, manager, handle, candidate):
        """Untrusted input never reaches the store and never raises."""
        with patch.object(store, "get_session", wraps=store.get_session) as get_session:
            lookup = manager.validate(handle, candidate)

        assert lookup.found is False
        get_session.assert_not_called()

    def test_created_session_validates_with_same_user(self, manager):
        """A freshly created session validates immediately."""
        creator = manager.scope()
        session_id = creator.create("user-1")

        lookup = manager.scope().validate(session_id)

        assert lookup.found is True
        assert lookup.user_id == "user-1"

    def test_ids_outside_urlsafe_alphabet_validate(self, store, clock):
        """Session IDs are opaque; a generator using + and / still round-trips."""
        session_id = "z4zI35M4/ILGbdDcwv5V5btXPnG4h2l8"
        tokens = SequenceTokens([session_id, "q+r/" * 8])
        manager = SessionManager(store, clock=clock, tokens=tokens)

        assert manager.scope().create("user-1") == session_id

        lookup = manager.scope().validate(session_id)
        assert lookup == SessionLookup(user_id="user-1", found=True)

    def test_longest_allowed_token_length_validates(self, store, clock):
        """Sessions minted at the maximum configured length are found again."""
        policy = SessionPolicy.from_settings(Settings(session_token_length=256))
        manager = SessionManager(store, clock=clock, policy=policy)

        session_id = manager.scope().create("user-1")

        assert len(session_id) == 256
        assert manager.scope().validate(session_id).found is True

    def test_lookup_unpacks_as_user_and_found(self, manager):
        """The lookup result reads as a (user_id, found) pair."""
        session_id = manager.scope().create("user-2")

        user_id, found = manager.scope().validate(session_id)

        assert (user_id, found) == ("user-2", True)

    def test_expired_session_is_not_found(self, manager, clock):
        """A record past its expiry counts as absent."""
        session_id = manager.scope().create("user-1")
        clock.advance(timedelta(days=14))

        scope = manager.scope()
        assert scope.validate(session_id).found is False
        assert scope.session is None

    def test_failed_validation_clears_previous_session(self, manager):
        """Validating a bad ID drops whatever the handle held before."""
        scope = manager.scope()
        scope.create("user-1")

        scope.validate("unknown-id")

        assert scope.session is None
        assert scope.csrf_token() is None

    def test_store_unavailable_propagates(self, store, manager, handle):
        """Outages are not reported as not found."""
        store.get_session = MagicMock(
            side_effect=StoreUnavailable("down", backend="memory", operation="get")
        )

        with pytest.raises(StoreUnavailable):
            manager.validate(handle, "some-session-id")
        assert handle.loaded is False


class TestRefreshPolicy:
    """Tests for the throttled sliding refresh."""

    def test_no_refresh_within_throttle_window(self, store, manager, clock):
        """Validation right after creation does not write."""
        session_id = manager.scope().create("user-1")
        clock.advance(timedelta(hours=23))

        with patch.object(
            store, "update_session_expiration", wraps=store.update_session_expiration
        ) as update:
            assert manager.scope().validate(session_id).found is True

        update.assert_not_called()

    def test_refresh_fires_once_throttle_window_has_passed(self, store, manager, clock):
        """Exactly one day after creation nothing happens; an hour later it refreshes."""
        t0 = clock.now
        session_id = manager.scope().create("user-1")
        assert store.get_session(session_id).expires_at == t0 + timedelta(days=14)

        clock.advance(timedelta(days=1))
        with patch.object(
            store, "update_session_expiration", wraps=store.update_session_expiration
        ) as update:
            manager.scope().validate(session_id)
        update.assert_not_called()

        now = clock.advance(timedelta(hours=1))
        with patch.object(
            store, "update_session_expiration", wraps=store.update_session_expiration
        ) as update:
            manager.scope().validate(session_id)
        update.assert_called_once_with(session_id, now + timedelta(days=14))
        assert store.get_session(session_id).expires_at == t0 + timedelta(days=15, hours=1)

    def test_refresh_is_relative_to_now(self, store, manager, clock):
        """A session first seen at t0+13d+1h is extended to that moment plus 14 days."""
        t0 = clock.now
        session_id = manager.scope().create("user-1")

        now = clock.advance(timedelta(days=13, hours=1))
        with patch.object(
            store, "update_session_expiration", wraps=store.update_session_expiration
        ) as update:
            assert manager.scope().validate(session_id).found is True

        update.assert_called_once_with(session_id, now + timedelta(days=14))
        assert store.get_session(session_id).expires_at == t0 + timedelta(days=27, hours=1)

    def test_refresh_is_throttled_after_write(self, store, manager, clock):
        """Once refreshed, repeated validations stay quiet for another window."""
        session_id = manager.scope().create("user-1")
        clock.advance(timedelta(days=2))
        manager.scope().validate(session_id)

        with patch.object(
            store, "update_session_expiration", wraps=store.update_session_expiration
        ) as update:
            for _ in range(50):
                clock.advance(timedelta(minutes=20))
                manager.scope().validate(session_id)

        update.assert_not_called()

    def test_refresh_failure_does_not_fail_validation(self, store, manager, clock):
        """A failing refresh write is logged and swallowed."""
        session_id = manager.scope().create("user-1")
        clock.advance(timedelta(days=3))
        store.update_session_expiration = MagicMock(
            side_effect=StoreUnavailable("down", backend="memory", operation="update_expiration")
        )

        lookup = manager.scope().validate(session_id)

        assert lookup.found is True
        store.update_session_expiration.assert_called_once()

    def test_refresh_runs_on_executor(self, store, clock):
        """With an executor the refresh write happens off the calling thread."""
        with ThreadPoolExecutor(max_workers=1) as executor:
            manager = SessionManager(store, clock=clock, refresh_executor=executor)
            session_id = manager.scope().create("user-1")
            now = clock.advance(timedelta(days=5))
            assert manager.scope().validate(session_id).found is True
        # Leaving the with-block waits for the submitted refresh
        assert store.get_session(session_id).expires_at == now + timedelta(days=14)

    def test_validate_does_not_change_user_or_csrf(self, store, manager, clock):
        """Refresh touches only the expiry."""
        scope = manager.scope()
        session_id = scope.create("user-1")
        token = scope.csrf_token()
        clock.advance(timedelta(days=4))

        again = manager.scope()
        again.validate(session_id)

        assert again.csrf_token() == token
        stored = store.get_session(session_id)
        assert stored.user_id == "user-1"
        assert stored.csrf_token == token

    def test_custom_policy_window(self, store, clock):
        """Lifetime and throttle are configurable."""
        policy = SessionPolicy(lifetime=timedelta(hours=2), refresh_throttle=timedelta(minutes=10))
        manager = SessionManager(store, clock=clock, policy=policy)
        session_id = manager.scope().create("user-1")

        clock.advance(timedelta(minutes=10))
        manager.scope().validate(session_id)
        assert store.get_session(session_id).expires_at == clock.now + timedelta(minutes=110)

        now = clock.advance(timedelta(minutes=1))
        manager.scope().validate(session_id)
        assert store.get_session(session_id).expires_at == now + timedelta(hours=2)

    @pytest.mark.parametrize(
        "lifetime,throttle",
        [
            (timedelta(days=1), timedelta(days=1)),
            (timedelta(hours=1), timedelta(days=1)),
            (timedelta(days=14), timedelta(0)),
        ],
    )
    def test_policy_rejects_inconsistent_windows(self, lifetime, throttle):
        with pytest.raises(ValueError):
            SessionPolicy(lifetime=lifetime, refresh_throttle=throttle)

    @pytest.mark.parametrize("length", [21, 257])
    def test_policy_rejects_token_length_out_of_range(self, length):
        with pytest.raises(ValueError):
            SessionPolicy(token_length=length)


class TestCreate:
    """Tests for create()."""

    def test_create_persists_full_record(self, store, manager, handle, clock):
        session_id = manager.create(handle, "user-1")

        stored = store.get_session(session_id)
        assert stored == handle.session
        assert stored.user_id == "user-1"
        assert stored.csrf_token
        assert stored.csrf_token != session_id
        assert stored.expires_at == clock.now + timedelta(days=14)

    def test_double_create_returns_same_session(self, store, manager, handle):
        """A second create on the same handle does not write a second record."""
        first = manager.create(handle, "user-1")
        second = manager.create(handle, "user-1")

        assert first == second
        assert len(store.sessions) == 1

    def test_double_create_ignores_different_user(self, store, manager, handle):
        """The guard is on the loaded handle, not a lookup by user."""
        first = manager.create(handle, "user-1")
        second = manager.create(handle, "user-2")

        assert first == second
        assert handle.session.user_id == "user-1"

    def test_separate_handles_get_separate_sessions(self, store, manager):
        first = manager.scope().create("user-1")
        second = manager.scope().create("user-1")

        assert first != second
        assert len(store.sessions) == 2

    @pytest.mark.parametrize("user_id", ["", None, 7])
    def test_create_rejects_invalid_user(self, manager, handle, user_id):
        with pytest.raises(ValueError):
            manager.create(handle, user_id)

    def test_collision_is_retried_once(self, store, clock):
        """A colliding ID is replaced by a freshly generated one."""
        taken = "T" * 32
        store.create_session(
            Session.new(taken, "other", "c" * 32, now=clock.now, lifetime=timedelta(days=1))
        )
        tokens = SequenceTokens([taken, "a" * 32, "B" * 32, "b" * 32])
        manager = SessionManager(store, clock=clock, tokens=tokens)

        session_id = manager.scope().create("user-1")

        assert session_id == "B" * 32
        assert store.get_session(session_id).csrf_token == "b" * 32
        assert store.get_session(taken).user_id == "other"

    def test_repeated_collision_is_fatal(self, clock):
        """Two collisions in a row mean the token source is broken."""
        store = MagicMock()
        store.create_session.side_effect = SessionConflict("duplicate")
        manager = SessionManager(store, clock=clock)
        handle = SessionHandle()

        with pytest.raises(TokenCollisionError) as exc_info:
            manager.create(handle, "user-1")

        assert store.create_session.call_count == 2
        assert exc_info.value.status_code == 500
        assert handle.loaded is False

    def test_unusable_generated_id_is_refused(self, store, clock):
        """An ID that validate would reject is never stored."""
        tokens = SequenceTokens(["x" * 300, "c" * 32])
        manager = SessionManager(store, clock=clock, tokens=tokens)
        handle = SessionHandle()

        with pytest.raises(ServerError):
            manager.create(handle, "user-1")

        assert store.sessions == {}
        assert handle.loaded is False

    def test_store_outage_on_create_propagates(self, clock):
        store = MagicMock()
        store.create_session.side_effect = StoreUnavailable(
            "down", backend="postgres", operation="create"
        )
        manager = SessionManager(store, clock=clock)

        with pytest.raises(StoreUnavailable):
            manager.scope().create("user-1")


class TestRemove:
    """Tests for remove()."""

    def test_remove_loaded_session(self, manager):
        scope = manager.scope()
        session_id = scope.create("user-1")

        assert scope.remove() is True
        assert manager.scope().validate(session_id).found is False

    def test_remove_twice_returns_true_then_false(self, manager):
        scope = manager.scope()
        scope.create("user-1")

        assert scope.remove() is True
        assert scope.remove() is False

    def test_remove_without_session_skips_store(self, store, manager, handle):
        with patch.object(store, "delete_session") as delete:
            assert manager.remove(handle) is False
        delete.assert_not_called()

    def test_remove_after_validate(self, manager):
        session_id = manager.scope().create("user-1")

        scope = manager.scope()
        scope.validate(session_id)

        assert scope.remove() is True
        assert manager.scope().validate(session_id).found is False

    def test_remove_when_record_already_gone(self, store, manager):
        """A record deleted elsewhere still counts as removed for the caller."""
        scope = manager.scope()
        session_id = scope.create("user-1")
        store.delete_session(session_id)

        assert scope.remove() is True
        assert scope.session is None


class TestCsrfToken:
    """Tests for CSRF token access and verification."""

    def test_no_token_without_session(self, manager, handle):
        assert manager.current_csrf_token(handle) is None

    def test_token_matches_bound_token(self, store, manager):
        scope = manager.scope()
        session_id = scope.create("user-1")

        assert scope.csrf_token() == store.get_session(session_id).csrf_token

    def test_token_stable_across_validations(self, manager, clock):
        creator = manager.scope()
        session_id = creator.create("user-1")
        token = creator.csrf_token()

        for _ in range(3):
            clock.advance(timedelta(days=2))
            scope = manager.scope()
            scope.validate(session_id)
            assert scope.csrf_token() == token

    def test_verify_csrf(self, manager):
        scope = manager.scope()
        scope.create("user-1")
        token = scope.csrf_token()

        assert scope.verify_csrf(token) is True
        assert scope.verify_csrf(token[:-1] + ("A" if token[-1] != "A" else "B")) is False
        assert scope.verify_csrf("") is False
        assert scope.verify_csrf(None) is False

    def test_verify_csrf_without_session(self, manager):
        assert manager.scope().verify_csrf("anything") is False


class TestRequireUser:
    """Tests for the request boundary helper."""

    def test_returns_user_for_live_session(self, manager):
        session_id = manager.scope().create("user-1")

        assert manager.scope().require_user(session_id) == "user-1"

    def test_not_found_and_outage_look_identical(self, store, manager):
        with pytest.raises(AuthenticationError) as missing:
            manager.scope().require_user("unknown-id")

        store.get_session = MagicMock(
            side_effect=StoreUnavailable("down", backend="memory", operation="get")
        )
        with pytest.raises(AuthenticationError) as outage:
            manager.scope().require_user("unknown-id")

        assert missing.value.message == outage.value.message
        assert missing.value.status_code == outage.value.status_code == 401
        assert missing.value.error_code == outage.value.error_code == "unauthorized"


class TestPurge:
    def test_purge_expired_removes_only_dead_sessions(self, store, manager, clock):
        old = manager.scope().create("user-1")
        clock.advance(timedelta(days=10))
        fresh = manager.scope().create("user-2")
        clock.advance(timedelta(days=5))

        assert manager.purge_expired() == 1
        assert store.get_session(old) is None
        assert store.get_session(fresh) is not None
