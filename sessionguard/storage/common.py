"""Storage contracts shared by the in-memory and shared-cache backends.

The session registry talks to its maps only through ``SessionStore`` and
``RevocationStore``. The three session access patterns (by session id, by
token hash, by user id) map onto three key namespaces when a shared key-value
store replaces the in-process dictionaries.
"""

from __future__ import annotations

import hashlib
from typing import TYPE_CHECKING, Any, List, Optional, Protocol

if TYPE_CHECKING:
    from sessionguard.storage.models import RevocationEntry, Session


def hash_token(token: str) -> str:
    """SHA-256 hex digest of a raw token; the only form in which tokens are stored."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class SessionStore(Protocol):
    lock: Any

    def add_session(self, session: "Session") -> None: ...

    def get_session(self, session_id: str) -> Optional["Session"]: ...

    def remove_session(self, session_id: str) -> Optional["Session"]: ...

    def index_token(self, token_hash: str, session_id: str) -> None: ...

    def unindex_token(self, token_hash: str) -> Optional[str]: ...

    def session_id_for_token(self, token_hash: str) -> Optional[str]: ...

    def session_ids_for_user(self, user_id: str) -> List[str]: ...

    def list_sessions(self) -> List["Session"]: ...

    def session_count(self) -> int: ...

    def user_count(self) -> int: ...


class RevocationStore(Protocol):
    lock: Any

    def add(self, entry: "RevocationEntry") -> bool: ...

    def contains_hash(self, token_hash: str) -> bool: ...

    def contains_jti(self, jti: str) -> bool: ...

    def purge_expired(self, now: float) -> int: ...

    def trim(self, max_entries: int, batch: int) -> int: ...

    def __len__(self) -> int: ...
