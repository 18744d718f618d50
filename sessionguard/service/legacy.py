"""Deprecated single-token helpers kept for callers that predate token pairs.

Nothing in the core depends on this module; delete it once the last caller
has moved to ``AuthService.issue_pair`` / ``AuthService.validate``.
"""

from __future__ import annotations

import warnings
from typing import Any, Dict, Mapping, Optional

from sessionguard.logging import get_logger
from sessionguard.service.errors import TokenError
from sessionguard.service.revocation import RevocationLedger
from sessionguard.service.tokens import TokenIssuer
from sessionguard.storage.common import hash_token
from sessionguard.storage.models import TokenClaims, TokenKind

logger = get_logger(__name__)


class LegacyTokenAdapter:
    def __init__(self, issuer: TokenIssuer, ledger: Optional[RevocationLedger] = None) -> None:
        self.issuer = issuer
        self.ledger = ledger

    def generate_token(self, payload: Mapping[str, Any]) -> str:
        """Return only the access half of a fresh pair."""
        _deprecated("generate_token", "AuthService.issue_pair")
        try:
            claims = TokenClaims.from_payload(dict(payload))
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"legacy payload is missing identity fields: {exc}") from exc
        return self.issuer.issue_pair(claims.identity()).access_token

    def verify_token(self, token: str) -> Optional[Dict[str, Any]]:
        """Return the access token's payload, or None for any rejection."""
        _deprecated("verify_token", "AuthService.validate")
        if self.ledger is not None and self.ledger.is_revoked(hash_token(token)):
            return None
        try:
            claims = self.issuer.verify(token, TokenKind.ACCESS)
        except TokenError:
            return None
        if self.ledger is not None and claims.jti and self.ledger.is_revoked(jti=claims.jti):
            return None
        return claims.to_payload()


def _deprecated(name: str, replacement: str) -> None:
    warnings.warn(
        f"{name} is deprecated; use {replacement}",
        DeprecationWarning,
        stacklevel=3,
    )
    logger.warning("deprecated_auth_call", function=name, replacement=replacement)
