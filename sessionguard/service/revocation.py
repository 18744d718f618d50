from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional, Tuple

from sessionguard.logging import get_logger
from sessionguard.storage.common import RevocationStore, hash_token
from sessionguard.storage.memory import MemoryRevocationStore
from sessionguard.storage.models import RevocationEntry
from sessionguard.storage.redis_cache import RedisRevocationMirror

logger = get_logger(__name__)


class RevocationLedger:
    """Deny-list consulted before any token is trusted.

    The in-process store is authoritative for this process. An optional
    Redis mirror shares revocations across processes: writes to it are
    best-effort and asynchronous, reads fail closed when it is unreachable.
    """

    def __init__(
        self,
        store: Optional[RevocationStore] = None,
        *,
        mirror: Optional[RedisRevocationMirror] = None,
        clock: Optional[Callable[[], float]] = None,
        max_entries: int = 10_000,
        trim_batch: int = 1_000,
        default_ttl_seconds: int = 7 * 24 * 60 * 60,
    ) -> None:
        self.store: RevocationStore = store if store is not None else MemoryRevocationStore()
        self.mirror = mirror
        self._clock = clock or time.time
        self.max_entries = max_entries
        self.trim_batch = trim_batch
        # Used when the caller cannot say when the denied token expires
        self.default_ttl_seconds = default_ttl_seconds
        self._mirror_executor: Optional[ThreadPoolExecutor] = (
            ThreadPoolExecutor(max_workers=1, thread_name_prefix="revocation-mirror")
            if mirror is not None
            else None
        )

    @property
    def lock(self):
        return self.store.lock

    @property
    def has_mirror(self) -> bool:
        return self.mirror is not None

    def revoke(
        self,
        token_hash: str,
        *,
        expires_at: Optional[float] = None,
        jti: Optional[str] = None,
        reason: str = "revoked",
    ) -> bool:
        """Deny a token hash until ``expires_at``; returns False if already denied."""
        now = self._clock()
        entry = RevocationEntry(
            token_hash=token_hash,
            jti=jti,
            expires_at=float(expires_at) if expires_at is not None else now + self.default_ttl_seconds,
            revoked_at=now,
            reason=reason,
        )
        added = self.store.add(entry)
        if added and self._mirror_executor is not None:
            try:
                self._mirror_executor.submit(self._mirror_write, entry, now)
            except RuntimeError:
                self._mirror_write(entry, now)
        return added

    def revoke_token(
        self,
        token: str,
        *,
        expires_at: Optional[float] = None,
        jti: Optional[str] = None,
        reason: str = "revoked",
    ) -> bool:
        return self.revoke(hash_token(token), expires_at=expires_at, jti=jti, reason=reason)

    def is_revoked(self, token_hash: Optional[str] = None, *, jti: Optional[str] = None) -> bool:
        if token_hash and self.store.contains_hash(token_hash):
            return True
        if jti and self.store.contains_jti(jti):
            return True
        if self.mirror is None:
            return False
        try:
            return self.mirror.is_revoked(token_hash, jti)
        except Exception as exc:
            # Unreachable mirror: deny rather than risk accepting a revoked token
            logger.warning(
                "revocation_mirror_read_failed_defaulting_to_revoked",
                token_hash=token_hash,
                jti=jti,
                error=str(exc),
            )
            return True

    def sweep(self) -> Tuple[int, int]:
        """Purge expired entries, then trim if still oversized. Returns (expired, trimmed)."""
        expired = self.store.purge_expired(self._clock())
        trimmed = self.store.trim(self.max_entries, self.trim_batch)
        return expired, trimmed

    def close(self) -> None:
        if self._mirror_executor is not None:
            self._mirror_executor.shutdown(wait=True)
        if self.mirror is not None:
            self.mirror.close()

    def __len__(self) -> int:
        return len(self.store)

    def _mirror_write(self, entry: RevocationEntry, now: float) -> None:
        try:
            self.mirror.mark_revoked(entry.token_hash, entry.expires_at, jti=entry.jti, now=now)
        except Exception as exc:
            logger.warning(
                "revocation_mirror_write_failed",
                token_hash=entry.token_hash,
                jti=entry.jti,
                error=str(exc),
            )
