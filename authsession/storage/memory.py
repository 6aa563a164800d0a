from __future__ import annotations

import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

from authsession.logging import get_logger
from authsession.storage.common import deserialize_session, serialize_session
from authsession.storage.errors import SessionConflict, StoreUnavailable
from authsession.storage.models import Session, ensure_utc


class MemoryStore:
    """In-process session store, optionally snapshotted to a JSON file.

    Without ``fs_root`` sessions live only as long as the process. With it, every
    write rewrites ``<fs_root>/state/sessions.json`` and a new store reloads it.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.sessions: Dict[str, Session] = {}
        # RLock for all data operations; per-key atomicity comes from holding it
        # across each read-modify-write
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "sessions.json"

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def create_session(self, session: Session) -> None:
        with self._data_lock:
            if session.session_id in self.sessions:
                raise SessionConflict(
                    "session id already exists", {"user_id": session.user_id}
                )
            self.sessions[session.session_id] = session
            try:
                self._persist_state("create_session")
            except StoreUnavailable:
                del self.sessions[session.session_id]
                raise

    def update_session_expiration(self, session_id: str, expires_at: datetime) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return False
            updated = sess.with_expiration(expires_at)
            if updated is not sess:
                self.sessions[session_id] = updated
                try:
                    self._persist_state("update_session_expiration")
                except StoreUnavailable:
                    self.sessions[session_id] = sess
                    raise
            return True

    def delete_session(self, session_id: str) -> bool:
        with self._data_lock:
            removed = self.sessions.pop(session_id, None)
            if removed is None:
                return False
            try:
                self._persist_state("delete_session")
            except StoreUnavailable:
                self.sessions[session_id] = removed
                raise
            return True

    def purge_expired_sessions(self, now: datetime) -> int:
        now = ensure_utc(now)
        with self._data_lock:
            stale = {sid: sess for sid, sess in self.sessions.items() if sess.is_expired(now)}
            for sid in stale:
                del self.sessions[sid]
            if stale:
                try:
                    self._persist_state("purge_expired_sessions")
                except StoreUnavailable:
                    self.sessions.update(stale)
                    raise
        if stale:
            self.logger.info("sessions_purged", count=len(stale), backend="memory")
        return len(stale)

    def _persist_state(self, operation: str) -> None:
        if self.fs_root is None:
            return
        state = {
            "sessions": [serialize_session(s) for s in self.sessions.values()],
        }
        try:
            path = self._state_path()
            tmp_path = path.with_suffix(".tmp")
            tmp_path.write_text(json.dumps(state, indent=2))
            tmp_path.replace(path)
        except OSError as exc:
            self.logger.error(
                "session_store_unavailable",
                backend="memory",
                operation=operation,
                error=str(exc),
            )
            raise StoreUnavailable(
                f"failed to persist session state: {exc}",
                backend="memory",
                operation=operation,
            ) from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        # Use try-except instead of exists() to avoid TOCTOU race condition
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.sessions = {
            s["session_id"]: deserialize_session(s) for s in data.get("sessions", [])
        }
        self.logger.debug("memory_store_loaded", sessions=len(self.sessions))
        return True
