from __future__ import annotations

import threading
from typing import Dict, List, Optional, Set

from sessionguard.logging import get_logger
from sessionguard.storage.models import RevocationEntry, Session, UserRecord

logger = get_logger(__name__)


class MemorySessionStore:
    """In-process session maps kept coherent under a single re-entrant lock.

    Callers that need several operations to be atomic (create + index,
    rotate, invalidate) hold ``lock`` around the whole sequence; every
    method also takes it so single calls are safe on their own.
    """

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self._sessions: Dict[str, Session] = {}
        self._token_index: Dict[str, str] = {}
        self._user_index: Dict[str, Set[str]] = {}

    def add_session(self, session: Session) -> None:
        with self.lock:
            self._sessions[session.id] = session
            self._user_index.setdefault(session.user_id, set()).add(session.id)
            for tracked in session.tracked():
                self._token_index[tracked.token_hash] = session.id

    def get_session(self, session_id: str) -> Optional[Session]:
        with self.lock:
            return self._sessions.get(session_id)

    def remove_session(self, session_id: str) -> Optional[Session]:
        with self.lock:
            session = self._sessions.pop(session_id, None)
            if session is None:
                return None
            for tracked in session.tracked():
                if self._token_index.get(tracked.token_hash) == session_id:
                    del self._token_index[tracked.token_hash]
            owned = self._user_index.get(session.user_id)
            if owned is not None:
                owned.discard(session_id)
                if not owned:
                    del self._user_index[session.user_id]
            return session

    def index_token(self, token_hash: str, session_id: str) -> None:
        with self.lock:
            self._token_index[token_hash] = session_id

    def unindex_token(self, token_hash: str) -> Optional[str]:
        with self.lock:
            return self._token_index.pop(token_hash, None)

    def session_id_for_token(self, token_hash: str) -> Optional[str]:
        with self.lock:
            return self._token_index.get(token_hash)

    def session_ids_for_user(self, user_id: str) -> List[str]:
        with self.lock:
            return sorted(self._user_index.get(user_id, ()))

    def list_sessions(self) -> List[Session]:
        with self.lock:
            return list(self._sessions.values())

    def session_count(self) -> int:
        with self.lock:
            return len(self._sessions)

    def user_count(self) -> int:
        with self.lock:
            return len(self._user_index)


class MemoryRevocationStore:
    """Deny-list of token hashes with a secondary jti index."""

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self._entries: Dict[str, RevocationEntry] = {}
        self._jti_index: Dict[str, str] = {}

    def add(self, entry: RevocationEntry) -> bool:
        """Record a revocation; returns False when the hash was already present."""
        with self.lock:
            if entry.token_hash in self._entries:
                return False
            self._entries[entry.token_hash] = entry
            if entry.jti:
                self._jti_index[entry.jti] = entry.token_hash
            return True

    def contains_hash(self, token_hash: str) -> bool:
        with self.lock:
            return token_hash in self._entries

    def contains_jti(self, jti: str) -> bool:
        with self.lock:
            return jti in self._jti_index

    def _drop(self, token_hash: str) -> None:
        entry = self._entries.pop(token_hash, None)
        if entry is not None and entry.jti and self._jti_index.get(entry.jti) == token_hash:
            del self._jti_index[entry.jti]

    def purge_expired(self, now: float) -> int:
        """Drop entries whose underlying token could no longer verify anyway."""
        with self.lock:
            expired = [h for h, e in self._entries.items() if e.expires_at <= now]
            for token_hash in expired:
                self._drop(token_hash)
            return len(expired)

    def trim(self, max_entries: int, batch: int) -> int:
        """Bound memory once the ledger exceeds ``max_entries``.

        Entries closest to their own expiry are dropped first.
        """
        with self.lock:
            if len(self._entries) <= max_entries:
                return 0
            count = max(batch, len(self._entries) - max_entries)
            victims = sorted(self._entries.values(), key=lambda e: (e.expires_at, e.revoked_at))[:count]
            for entry in victims:
                self._drop(entry.token_hash)
            logger.warning(
                "revocation_ledger_trimmed",
                dropped=len(victims),
                remaining=len(self._entries),
            )
            return len(victims)

    def __len__(self) -> int:
        with self.lock:
            return len(self._entries)


class MemoryUserDirectory:
    """Minimal user store used by tests and local development."""

    def __init__(self) -> None:
        self._data_lock = threading.RLock()
        self._users: Dict[str, UserRecord] = {}
        self._by_email: Dict[str, str] = {}

    def add_user(self, user: UserRecord) -> UserRecord:
        with self._data_lock:
            self._users[user.id] = user
            self._by_email[user.email.lower()] = user.id
            return user

    def create_user(self, email: str, name: str, **kwargs) -> UserRecord:
        return self.add_user(UserRecord.new(email, name, **kwargs))

    def find_user_by_id(self, user_id: str) -> Optional[UserRecord]:
        with self._data_lock:
            return self._users.get(user_id)

    def find_user_by_email(self, email: str) -> Optional[UserRecord]:
        with self._data_lock:
            user_id = self._by_email.get(email.lower())
            return self._users.get(user_id) if user_id else None

    def set_verified(self, user_id: str, verified: bool) -> None:
        with self._data_lock:
            user = self._users.get(user_id)
            if user:
                user.is_verified = verified

    def set_active(self, user_id: str, active: bool) -> None:
        with self._data_lock:
            user = self._users.get(user_id)
            if user:
                user.is_active = active
