from __future__ import annotations

import time
from typing import List, Optional

from redis import Redis


class RedisRevocationMirror:
    """Shared TTL-keyed mirror of the revocation ledger.

    Lets several processes see each other's revocations. Keys expire together
    with the token they deny, so the mirror never needs sweeping:

    - ``auth:revoked:hash:{sha256}``
    - ``auth:revoked:jti:{jti}``
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Optional[Redis] = None,
    ):
        self.redis_url = redis_url
        self.client = client or Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _ttl_seconds(expires_at: float, now: Optional[float] = None) -> int:
        """Clamp to at least 1 second; Redis rejects zero or negative TTLs."""
        current = time.time() if now is None else now
        return max(1, int(expires_at - current))

    @staticmethod
    def _keys(token_hash: Optional[str], jti: Optional[str]) -> List[str]:
        keys = []
        if token_hash:
            keys.append(f"auth:revoked:hash:{token_hash}")
        if jti:
            keys.append(f"auth:revoked:jti:{jti}")
        return keys

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling the mirror."""
        self.client.ping()

    def mark_revoked(
        self,
        token_hash: str,
        expires_at: float,
        *,
        jti: Optional[str] = None,
        now: Optional[float] = None,
    ) -> None:
        ttl = self._ttl_seconds(expires_at, now)
        pipe = self.client.pipeline()
        for key in self._keys(token_hash, jti):
            pipe.set(key, "1", ex=ttl)
        pipe.execute()

    def is_revoked(self, token_hash: Optional[str] = None, jti: Optional[str] = None) -> bool:
        keys = self._keys(token_hash, jti)
        if not keys:
            return False
        return bool(self.client.exists(*keys))

    def close(self) -> None:
        self.client.close()
