from __future__ import annotations

import base64
import dataclasses
import hashlib
import hmac
import json
import re
import secrets
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from sessionguard.config import (
    DEFAULT_ACCESS_SECRET,
    DEFAULT_REFRESH_SECRET,
    MIN_SECRET_LENGTH,
    Settings,
)
from sessionguard.logging import get_logger
from sessionguard.service.errors import (
    ConfigurationError,
    ExpiredTokenError,
    MalformedTokenError,
    WrongTokenKindError,
)
from sessionguard.storage.models import TokenClaims, TokenKind

logger = get_logger(__name__)

Clock = Callable[[], float]

DEFAULT_LIFETIME_SECONDS = 30 * 60
_LIFETIME_PATTERN = re.compile(r"^\s*(\d+)\s*([smhd])\s*$")
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 60 * 60, "d": 24 * 60 * 60}


def parse_lifetime(value: Any) -> int:
    """Convert ``"30m"``/``"7d"``-style lifetimes (or bare seconds) into seconds.

    Anything unparseable falls back to 30 minutes.
    """
    if isinstance(value, bool):
        return DEFAULT_LIFETIME_SECONDS
    if isinstance(value, (int, float)):
        return int(value) if value > 0 else DEFAULT_LIFETIME_SECONDS
    text = str(value or "")
    if text.strip().isdigit() and int(text) > 0:
        return int(text)
    match = _LIFETIME_PATTERN.match(text)
    if not match:
        logger.warning("token_lifetime_unparseable", value=text, fallback=DEFAULT_LIFETIME_SECONDS)
        return DEFAULT_LIFETIME_SECONDS
    amount, unit = match.groups()
    return int(amount) * _UNIT_SECONDS[unit]


def check_secrets(settings: Settings) -> None:
    """Fail fast on key material that must never serve traffic."""
    access = settings.jwt_access_secret
    refresh = settings.jwt_refresh_secret
    if not access or not refresh:
        raise ConfigurationError("JWT_ACCESS_SECRET and JWT_REFRESH_SECRET must both be set")
    if hmac.compare_digest(access.encode(), refresh.encode()):
        raise ConfigurationError("access and refresh tokens must be signed with different secrets")
    if settings.is_production and (
        access == DEFAULT_ACCESS_SECRET or refresh == DEFAULT_REFRESH_SECRET
    ):
        raise ConfigurationError("default JWT secrets are not allowed in production")
    short = [
        name
        for name, value in (("JWT_ACCESS_SECRET", access), ("JWT_REFRESH_SECRET", refresh))
        if len(value) < MIN_SECRET_LENGTH
    ]
    if short:
        if settings.is_production:
            raise ConfigurationError(
                f"{', '.join(short)} must be at least {MIN_SECRET_LENGTH} characters in production"
            )
        logger.critical(
            "jwt_secret_too_short",
            secrets_named=short,
            min_length=MIN_SECRET_LENGTH,
        )


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    refresh_expires_in: int
    session_id: str
    token_type: str = "bearer"

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


@dataclass
class RefreshOutcome:
    """A freshly minted pair plus the claims of the refresh token it consumed.

    The caller owns blacklisting ``consumed``.
    """

    pair: TokenPair
    consumed: TokenClaims


class TokenIssuer:
    """Signs and verifies HS256 access/refresh tokens with per-kind secrets.

    Verification is pure: it never consults the revocation ledger.
    """

    ALGORITHM = "HS256"

    def __init__(self, settings: Settings, *, clock: Optional[Clock] = None) -> None:
        check_secrets(settings)
        self.settings = settings
        self._clock: Clock = clock or time.time
        self._secrets: Dict[TokenKind, bytes] = {
            TokenKind.ACCESS: settings.jwt_access_secret.encode(),
            TokenKind.REFRESH: settings.jwt_refresh_secret.encode(),
        }
        self._lifetimes: Dict[TokenKind, int] = {
            TokenKind.ACCESS: parse_lifetime(settings.access_token_lifetime),
            TokenKind.REFRESH: parse_lifetime(settings.refresh_token_lifetime),
        }
        self._skew = settings.clock_skew_seconds

    def now(self) -> int:
        return int(self._clock())

    def lifetime(self, kind: TokenKind) -> int:
        return self._lifetimes[TokenKind(kind)]

    def remaining_lifetime(self, claims: TokenClaims) -> int:
        return int(claims.exp or 0) - self.now()

    def issue(
        self, kind: TokenKind, claims: TokenClaims, session_id: Optional[str] = None
    ) -> str:
        kind = TokenKind(kind)
        now = self.now()
        stamped = dataclasses.replace(
            claims,
            jti=secrets.token_hex(16),
            iss=self.settings.jwt_issuer,
            aud=self.settings.jwt_audience,
            iat=now,
            exp=now + self._lifetimes[kind],
            nbf=now - self._skew,
            session_id=session_id or claims.session_id or secrets.token_hex(24),
            token_type=kind,
        )
        try:
            return self._encode_jwt(stamped.to_payload(), self._secrets[kind])
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"unable to sign {kind.value} token: {exc}") from exc

    def issue_pair(
        self, claims: TokenClaims, session_id: Optional[str] = None
    ) -> TokenPair:
        sid = session_id or claims.session_id or secrets.token_hex(24)
        base = claims.identity()
        return TokenPair(
            access_token=self.issue(TokenKind.ACCESS, base, sid),
            refresh_token=self.issue(TokenKind.REFRESH, base, sid),
            expires_in=self._lifetimes[TokenKind.ACCESS],
            refresh_expires_in=self._lifetimes[TokenKind.REFRESH],
            session_id=sid,
        )

    def refresh(self, refresh_token: str) -> RefreshOutcome:
        """Mint a new pair on the same session; raises the same errors as ``verify``.

        Revocation must be checked by the caller before this is invoked.
        """
        consumed = self.verify(refresh_token, TokenKind.REFRESH)
        pair = self.issue_pair(consumed, session_id=consumed.session_id)
        return RefreshOutcome(pair=pair, consumed=consumed)

    def verify(self, token: str, expected_kind: TokenKind) -> TokenClaims:
        expected_kind = TokenKind(expected_kind)
        header_b64, payload_b64, sig_b64 = self._split(token)
        header = self._decode_json(header_b64)
        if header.get("alg") != self.ALGORITHM:
            # Rejects "none" and asymmetric algorithm confusion
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise MalformedTokenError("unsupported token algorithm")
        payload = self._decode_json(payload_b64)

        # The unverified kind only selects which rejection to report
        presented_kind = payload.get("tokenType")
        if presented_kind != expected_kind.value:
            raise WrongTokenKindError(
                f"expected {expected_kind.value} token",
                detail={"presented": str(presented_kind)},
            )

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", self._secrets[expected_kind])
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise MalformedTokenError("token signature is invalid")

        if payload.get("iss") != self.settings.jwt_issuer:
            raise MalformedTokenError("token issuer mismatch")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise MalformedTokenError("token audience mismatch")

        try:
            claims = TokenClaims.from_payload(payload)
        except (KeyError, TypeError, ValueError) as exc:
            raise MalformedTokenError(f"token claims are incomplete: {exc}") from exc
        if claims.exp is None or claims.iat is None:
            raise MalformedTokenError("token is missing exp or iat")

        now = self.now()
        if now >= claims.exp:
            raise ExpiredTokenError("token has expired", detail={"expired_at": claims.exp})
        if claims.nbf is not None and now < claims.nbf:
            raise MalformedTokenError("token is not yet valid")
        return claims

    def peek(self, token: str) -> Optional[Dict[str, Any]]:
        """Decode the payload without verifying it; diagnostics only."""
        try:
            _, payload_b64, _ = self._split(token)
            return self._decode_json(payload_b64)
        except MalformedTokenError:
            return None

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, secret: bytes) -> str:
        return self._encode_segment(
            hmac.new(secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: Dict[str, Any], secret: bytes) -> str:
        header = {"alg": self.ALGORITHM, "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, secret)}"

    def _split(self, token: str) -> Tuple[str, str, str]:
        if not isinstance(token, str):
            raise MalformedTokenError("token is not a string")
        if not token.isascii():
            raise MalformedTokenError("token contains non-ASCII characters")
        parts = token.split(".")
        if len(parts) != 3 or not all(parts):
            raise MalformedTokenError("token is malformed")
        return parts[0], parts[1], parts[2]

    def _decode_json(self, segment: str) -> Dict[str, Any]:
        try:
            decoded = json.loads(self._decode_segment(segment))
        except ValueError as exc:
            raise MalformedTokenError("token segment is not valid JSON") from exc
        if not isinstance(decoded, dict):
            raise MalformedTokenError("token segment is not an object")
        return decoded
