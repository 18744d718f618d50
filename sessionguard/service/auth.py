from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sessionguard.logging import get_logger
from sessionguard.service.audit import AuditTrail, Severity
from sessionguard.service.context import RequestContext
from sessionguard.service.errors import (
    ErrorCode,
    ExpiredTokenError,
    RevokedTokenError,
    SessionNotFoundError,
    TokenError,
    WrongTokenKindError,
)
from sessionguard.service.interfaces import UserDirectory
from sessionguard.service.passwords import PasswordVerifier
from sessionguard.service.sessions import SessionRegistry
from sessionguard.service.tokens import TokenIssuer, TokenPair
from sessionguard.service.validator import SecurityValidator, ValidationResult
from sessionguard.storage.common import hash_token
from sessionguard.storage.models import (
    SecurityLevel,
    Session,
    SessionStats,
    SweepReport,
    TokenClaims,
    TokenKind,
    UserRecord,
)

logger = get_logger(__name__)


@dataclass
class LoginResult:
    ok: bool
    user: Optional[UserRecord] = None
    pair: Optional[TokenPair] = None
    error: Optional[ErrorCode] = None


@dataclass
class RefreshResult:
    ok: bool
    pair: Optional[TokenPair] = None
    error: Optional[ErrorCode] = None
    session_id: Optional[str] = None
    user_id: Optional[str] = None


class AuthService:
    """Entry point for route handlers: login, refresh, validate and logout.

    Expected rejections come back as result objects; nothing here raises
    for a bad, expired or replayed credential.
    """

    def __init__(
        self,
        issuer: TokenIssuer,
        registry: SessionRegistry,
        validator: SecurityValidator,
        *,
        users: Optional[UserDirectory] = None,
        passwords: Optional[PasswordVerifier] = None,
        audit: Optional[AuditTrail] = None,
    ) -> None:
        self.issuer = issuer
        self.registry = registry
        self.ledger = registry.ledger
        self.validator = validator
        self.users = users
        self.passwords = passwords or PasswordVerifier()
        self.audit = audit or registry.audit

    # -- issuance -----------------------------------------------------------

    async def login(self, email: str, password: str, context: RequestContext) -> LoginResult:
        if self.users is None:
            logger.error("login_without_user_directory")
            return LoginResult(ok=False, error=ErrorCode.INVALID_CREDENTIALS)
        user = await asyncio.to_thread(self.users.find_user_by_email, email)
        password_ok = False
        if user is not None and user.password_hash:
            password_ok = await asyncio.to_thread(self.passwords.verify, user.password_hash, password)
        if not password_ok:
            self.audit.record(
                "login_failed",
                Severity.MEDIUM,
                "invalid credentials",
                email=email,
                client_ip=context.client_ip,
            )
            return LoginResult(ok=False, error=ErrorCode.INVALID_CREDENTIALS)
        if not user.is_active:
            return LoginResult(ok=False, error=ErrorCode.USER_INACTIVE)
        if not user.is_verified:
            return LoginResult(ok=False, error=ErrorCode.USER_NOT_VERIFIED)
        pair = self.issue_pair(user, context)
        return LoginResult(ok=True, user=user, pair=pair)

    def issue_pair(self, user: UserRecord, context: RequestContext) -> TokenPair:
        """Open a session bound to the caller's device and IP and mint its first pair."""
        session = self.registry.create_session(user.id, context)
        claims = TokenClaims.for_user(
            user,
            device_id=context.device_id,
            ip_address=context.client_ip if context.ip_known else None,
        )
        pair = self.issuer.issue_pair(claims, session_id=session.id)
        self._track(session.id, pair.access_token, TokenKind.ACCESS)
        self._track(session.id, pair.refresh_token, TokenKind.REFRESH)
        self.audit.record(
            "login_succeeded",
            Severity.LOW,
            "token pair issued",
            user_id=user.id,
            session_id=session.id,
            role=user.role,
            client_ip=context.client_ip,
        )
        return pair

    def _track(self, session_id: str, token: str, kind: TokenKind) -> None:
        payload = self.issuer.peek(token) or {}
        self.registry.track_token(
            session_id,
            hash_token(token),
            kind,
            jti=payload.get("jti"),
            expires_at=payload.get("exp"),
        )

    # -- refresh ------------------------------------------------------------

    async def refresh(
        self, refresh_token: str, context: Optional[RequestContext] = None
    ) -> RefreshResult:
        """Single-use rotation: the presented refresh token is denied once consumed.

        Two concurrent calls with the same token yield exactly one success.
        """
        token_hash = hash_token(refresh_token)
        if await self._is_revoked(token_hash):
            return self._refresh_rejected(RevokedTokenError("refresh token has been revoked"), token_hash)
        try:
            claims = self.issuer.verify(refresh_token, TokenKind.REFRESH)
        except TokenError as exc:
            return self._refresh_rejected(exc, token_hash)
        if not claims.session_id:
            return self._refresh_rejected(SessionNotFoundError("refresh token has no session"), token_hash)
        try:
            pair = await asyncio.to_thread(self._rotate, refresh_token, token_hash, claims.session_id)
        except TokenError as exc:
            return self._refresh_rejected(exc, token_hash, claims)

        if context is not None:
            self.registry.record_activity(claims.session_id, context)
        self.audit.record(
            "token_refreshed",
            Severity.LOW,
            "token pair rotated",
            user_id=claims.user_id,
            session_id=claims.session_id,
            old_jti=claims.jti,
        )
        return RefreshResult(
            ok=True, pair=pair, session_id=claims.session_id, user_id=claims.user_id
        )

    def _rotate(self, refresh_token: str, token_hash: str, session_id: str) -> TokenPair:
        with self.registry.rotation_guard(session_id):
            # Re-check under the guard: a racing refresh may have consumed it
            if self.ledger.is_revoked(token_hash):
                raise RevokedTokenError("refresh token has already been used")
            outcome = self.issuer.refresh(refresh_token)
            new_refresh = outcome.pair.refresh_token
            new_payload = self.issuer.peek(new_refresh) or {}
            self.registry.rotate_refresh_token(
                session_id,
                token_hash,
                hash_token(new_refresh),
                new_jti=new_payload.get("jti"),
                new_expires_at=new_payload.get("exp"),
            )
            self._track(session_id, outcome.pair.access_token, TokenKind.ACCESS)
            return outcome.pair

    def _refresh_rejected(
        self,
        exc: TokenError,
        token_hash: str,
        claims: Optional[TokenClaims] = None,
    ) -> RefreshResult:
        if isinstance(exc, (RevokedTokenError, SessionNotFoundError)):
            self.audit.record(
                "refresh_token_reuse",
                Severity.HIGH,
                "a consumed or revoked refresh token was presented",
                token_hash=token_hash,
                user_id=claims.user_id if claims else None,
                session_id=claims.session_id if claims else None,
            )
        else:
            logger.info("refresh_rejected", error_code=exc.code.value, reason=exc.message)
        return RefreshResult(
            ok=False,
            error=exc.code,
            session_id=claims.session_id if claims else None,
        )

    # -- validation ---------------------------------------------------------

    async def validate(
        self,
        context: RequestContext,
        token: Optional[str],
        security_level: SecurityLevel | str = SecurityLevel.MEDIUM,
    ) -> ValidationResult:
        result = await self.validator.validate(context, token, security_level)
        if result.valid and result.claims is not None and result.claims.session_id:
            self.registry.record_activity(result.claims.session_id, context)
        return result

    async def security_report(self, context: RequestContext, token: Optional[str]) -> Dict[str, Any]:
        return await self.validator.security_report(context, token)

    # -- revocation ---------------------------------------------------------

    def revoke_token(self, token: str, reason: str = "revoked") -> bool:
        """Deny one token we issued. Unverifiable input is ignored (returns False)."""
        claims = self._verified_claims(token)
        if claims is None:
            return False
        return self.registry.blacklist_token(
            hash_token(token),
            jti=claims.jti,
            expires_at=claims.exp,
            reason=reason,
        )

    def logout(self, access_token: str) -> bool:
        """End the session the access token belongs to."""
        claims = self._verified_claims(access_token)
        if claims is None or not claims.session_id:
            return False
        return self.invalidate_session(claims.session_id, "logout")

    def invalidate_session(
        self, session_id: str, reason: str = "logout", *, severity: Severity | str = Severity.LOW
    ) -> bool:
        return self.registry.invalidate_session(session_id, reason, severity=severity)

    def invalidate_all_for_user(
        self,
        user_id: str,
        reason: str = "logout_all",
        *,
        except_session_id: Optional[str] = None,
        severity: Severity | str = Severity.MEDIUM,
    ) -> int:
        return self.registry.invalidate_all_for_user(
            user_id, reason, except_session_id=except_session_id, severity=severity
        )

    def list_user_sessions(self, user_id: str) -> List[Session]:
        return self.registry.list_user_sessions(user_id)

    def session_stats(self) -> SessionStats:
        return self.registry.stats()

    def sweep(self) -> SweepReport:
        return self.registry.sweep()

    async def _is_revoked(self, token_hash: str) -> bool:
        if self.ledger.has_mirror:
            return await asyncio.to_thread(self.ledger.is_revoked, token_hash)
        return self.ledger.is_revoked(token_hash)

    def _verified_claims(self, token: str) -> Optional[TokenClaims]:
        for kind in (TokenKind.ACCESS, TokenKind.REFRESH):
            try:
                return self.issuer.verify(token, kind)
            except WrongTokenKindError:
                continue
            except ExpiredTokenError:
                # Already unusable; nothing to deny
                return None
            except TokenError:
                return None
        return None
