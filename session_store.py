"""In-memory owner of Session and RosterEntry records.

Records handed out by the store are copies; the only way to change state is
through ``add_session``, ``set_session_status`` and ``save_entry``. Roster
mutation for one student is serialized with a per-``(sessionId, userId)``
lock taken via ``entry_lock``; the registry lock only guards dictionary
bookkeeping and is never held while a caller runs protocol steps.
"""
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator, List, Optional, Tuple

from errors import SessionNotFound
from schemas import RosterEntry, Session, SessionStatus

EntryKey = Tuple[str, str]


class SessionStore:
    def __init__(self):
        self._registry_lock = threading.Lock()
        self._sessions: Dict[str, Session] = {}
        self._entries: Dict[EntryKey, RosterEntry] = {}
        self._entry_locks: Dict[EntryKey, threading.Lock] = {}
        # insertion order of roster keys per session, for stable snapshots
        self._roster_index: Dict[str, List[str]] = {}

    # ----------------------
    # Sessions
    # ----------------------

    def add_session(self, session: Session) -> Session:
        with self._registry_lock:
            if session.sessionId in self._sessions:
                raise ValueError(f"duplicate sessionId {session.sessionId}")
            self._sessions[session.sessionId] = session.model_copy(deep=True)
            self._roster_index[session.sessionId] = []
        return session.model_copy(deep=True)

    def get_session(self, session_id: str) -> Session:
        with self._registry_lock:
            sess = self._sessions.get(session_id)
            if sess is None:
                raise SessionNotFound(f"Session {session_id} not found")
            return sess.model_copy(deep=True)

    def list_sessions(self, status: Optional[SessionStatus] = None) -> List[Session]:
        with self._registry_lock:
            return [
                s.model_copy(deep=True)
                for s in self._sessions.values()
                if status is None or s.status == status
            ]

    def set_session_status(self, session_id: str, status: SessionStatus,
                           expected: Optional[SessionStatus] = None,
                           at: Optional[datetime] = None) -> bool:
        """Compare-and-set the session status.

        Returns False without writing when ``expected`` is given and does not
        match the current status.
        """
        with self._registry_lock:
            sess = self._sessions.get(session_id)
            if sess is None:
                raise SessionNotFound(f"Session {session_id} not found")
            if expected is not None and sess.status != expected:
                return False
            update = {"status": status}
            if status == SessionStatus.closed:
                update["closedAt"] = at
            self._sessions[session_id] = sess.model_copy(update=update)
            return True

    # ----------------------
    # Roster entries
    # ----------------------

    @contextmanager
    def entry_lock(self, session_id: str, user_id: str) -> Iterator[None]:
        key = (session_id, user_id)
        with self._registry_lock:
            lock = self._entry_locks.get(key)
            if lock is None:
                lock = self._entry_locks[key] = threading.Lock()
        with lock:
            yield

    def get_entry(self, session_id: str, user_id: str) -> Optional[RosterEntry]:
        with self._registry_lock:
            entry = self._entries.get((session_id, user_id))
            return entry.model_copy(deep=True) if entry is not None else None

    def save_entry(self, entry: RosterEntry) -> RosterEntry:
        key = (entry.sessionId, entry.userId)
        with self._registry_lock:
            if entry.sessionId not in self._sessions:
                raise SessionNotFound(f"Session {entry.sessionId} not found")
            if key not in self._entries:
                self._roster_index[entry.sessionId].append(entry.userId)
            self._entries[key] = entry.model_copy(deep=True)
        return entry.model_copy(deep=True)

    def roster(self, session_id: str) -> List[RosterEntry]:
        with self._registry_lock:
            if session_id not in self._sessions:
                raise SessionNotFound(f"Session {session_id} not found")
            return [
                self._entries[(session_id, uid)].model_copy(deep=True)
                for uid in self._roster_index[session_id]
            ]
