from __future__ import annotations

import asyncio
import dataclasses
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional

from sessionguard.logging import get_logger
from sessionguard.service.audit import AuditTrail, Severity
from sessionguard.service.context import RequestContext, looks_like_bot
from sessionguard.service.errors import (
    ErrorCode,
    ExpiredTokenError,
    TokenError,
    WrongTokenKindError,
)
from sessionguard.service.interfaces import UserDirectory
from sessionguard.service.revocation import RevocationLedger
from sessionguard.service.tokens import TokenIssuer
from sessionguard.storage.common import hash_token
from sessionguard.storage.models import SecurityFlag, SecurityLevel, TokenClaims, TokenKind

if TYPE_CHECKING:
    from sessionguard.service.sessions import SessionRegistry

logger = get_logger(__name__)


class CheckMode(str, Enum):
    OFF = "off"
    FLAG = "flag"  # record the flag, keep the request valid
    ENFORCE = "enforce"  # record the flag and fail validation


@dataclass(frozen=True)
class SecurityPolicy:
    ip_binding: CheckMode
    device_binding: CheckMode
    user_agent: CheckMode
    max_token_age_seconds: Optional[int]
    require_fresh: bool = False
    user_status: CheckMode = CheckMode.ENFORCE
    fresh_window_seconds: int = 60 * 60


DEFAULT_POLICIES: Dict[SecurityLevel, SecurityPolicy] = {
    SecurityLevel.LOW: SecurityPolicy(
        ip_binding=CheckMode.FLAG,
        device_binding=CheckMode.FLAG,
        user_agent=CheckMode.OFF,
        max_token_age_seconds=24 * 60 * 60,
    ),
    SecurityLevel.MEDIUM: SecurityPolicy(
        ip_binding=CheckMode.FLAG,
        device_binding=CheckMode.ENFORCE,
        user_agent=CheckMode.FLAG,
        max_token_age_seconds=12 * 60 * 60,
    ),
    SecurityLevel.HIGH: SecurityPolicy(
        ip_binding=CheckMode.ENFORCE,
        device_binding=CheckMode.ENFORCE,
        user_agent=CheckMode.FLAG,
        max_token_age_seconds=6 * 60 * 60,
    ),
    SecurityLevel.CRITICAL: SecurityPolicy(
        ip_binding=CheckMode.ENFORCE,
        device_binding=CheckMode.ENFORCE,
        user_agent=CheckMode.ENFORCE,
        max_token_age_seconds=60 * 60,
        require_fresh=True,
    ),
}

# Diagnostic policy for security reports: every check runs, none fails
REPORT_POLICY = SecurityPolicy(
    ip_binding=CheckMode.FLAG,
    device_binding=CheckMode.FLAG,
    user_agent=CheckMode.FLAG,
    max_token_age_seconds=24 * 60 * 60,
    user_status=CheckMode.FLAG,
)

REAUTH_FLAGS = frozenset(
    {
        SecurityFlag.IP_MISMATCH.value,
        SecurityFlag.DEVICE_MISMATCH.value,
        SecurityFlag.TOKEN_BLACKLISTED.value,
    }
)

_FLAG_ERRORS: Dict[str, ErrorCode] = {
    SecurityFlag.TOKEN_BLACKLISTED.value: ErrorCode.REVOKED_TOKEN,
    SecurityFlag.IP_MISMATCH.value: ErrorCode.CONTEXT_MISMATCH,
    SecurityFlag.DEVICE_MISMATCH.value: ErrorCode.CONTEXT_MISMATCH,
    SecurityFlag.MISSING_USER_AGENT.value: ErrorCode.CONTEXT_MISMATCH,
    SecurityFlag.TOKEN_TOO_OLD.value: ErrorCode.TOKEN_TOO_OLD,
    SecurityFlag.TOKEN_NOT_FRESH.value: ErrorCode.NOT_FRESH,
    SecurityFlag.USER_NOT_FOUND.value: ErrorCode.USER_NOT_FOUND,
    SecurityFlag.USER_NOT_VERIFIED.value: ErrorCode.USER_NOT_VERIFIED,
    SecurityFlag.USER_INACTIVE.value: ErrorCode.USER_INACTIVE,
    SecurityFlag.USER_STATUS_CHECK_FAILED.value: ErrorCode.USER_STATUS_CHECK_TIMEOUT,
}


def _verify_flag(exc: TokenError) -> str:
    if isinstance(exc, ExpiredTokenError):
        return SecurityFlag.TOKEN_EXPIRED.value
    if isinstance(exc, WrongTokenKindError):
        return SecurityFlag.WRONG_TOKEN_KIND.value
    return SecurityFlag.INVALID_TOKEN.value


def extract_bearer(header: Optional[str]) -> Optional[str]:
    """Pull the token out of an ``Authorization: Bearer ...`` header."""
    if not header:
        return None
    scheme, _, value = header.strip().partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


@dataclass
class ValidationResult:
    valid: bool
    claims: Optional[TokenClaims] = None
    flags: List[str] = field(default_factory=list)
    error: Optional[ErrorCode] = None
    should_refresh: bool = False
    require_reauth: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "flags": list(self.flags),
            "error": self.error.value if self.error else None,
            "should_refresh": self.should_refresh,
            "require_reauth": self.require_reauth,
        }


class SecurityValidator:
    """Layers contextual checks over cryptographic verification.

    Per-request failures come back as a ``ValidationResult`` carrying a
    specific flag; nothing here raises for an expected rejection.
    """

    def __init__(
        self,
        issuer: TokenIssuer,
        ledger: RevocationLedger,
        *,
        users: Optional[UserDirectory] = None,
        sessions: Optional["SessionRegistry"] = None,
        audit: Optional[AuditTrail] = None,
        policies: Optional[Mapping[SecurityLevel, SecurityPolicy]] = None,
        refresh_threshold_seconds: int = 300,
        user_status_timeout_seconds: float = 2.0,
    ) -> None:
        self.issuer = issuer
        self.ledger = ledger
        self.users = users
        self.sessions = sessions
        self.audit = audit or AuditTrail()
        self.policies: Dict[SecurityLevel, SecurityPolicy] = dict(policies or DEFAULT_POLICIES)
        self.refresh_threshold_seconds = refresh_threshold_seconds
        self.user_status_timeout_seconds = user_status_timeout_seconds

    def policy_for(self, level: SecurityLevel | str) -> SecurityPolicy:
        return self.policies[SecurityLevel(level)]

    async def validate(
        self,
        context: RequestContext,
        token: Optional[str],
        security_level: SecurityLevel | str = SecurityLevel.MEDIUM,
        *,
        policy: Optional[SecurityPolicy] = None,
    ) -> ValidationResult:
        policy = policy or self.policy_for(security_level)
        if not token:
            return ValidationResult(
                valid=False,
                flags=[SecurityFlag.NO_AUTHORIZATION_TOKEN.value],
                error=ErrorCode.MISSING_TOKEN,
            )

        token_hash = hash_token(token)
        if await self._is_revoked(token_hash):
            return self._blacklisted(context, token_hash, None)

        try:
            claims = self.issuer.verify(token, TokenKind.ACCESS)
        except TokenError as exc:
            logger.info("token_verification_failed", error_code=exc.code.value, reason=exc.message)
            return ValidationResult(valid=False, flags=[_verify_flag(exc)], error=exc.code)

        if claims.jti and await self._is_revoked(None, jti=claims.jti):
            return self._blacklisted(context, token_hash, claims)
        if self.sessions is not None and (
            not claims.session_id or self.sessions.get_session(claims.session_id) is None
        ):
            # Session ended (logout, sweep, restart); its pruned tokens die with it
            return ValidationResult(
                valid=False,
                claims=claims,
                flags=[SecurityFlag.SESSION_NOT_FOUND.value],
                error=ErrorCode.SESSION_NOT_FOUND,
            )

        flags: List[str] = []
        failures: List[str] = []

        def note(flag: SecurityFlag, mode: CheckMode) -> None:
            if mode is CheckMode.OFF:
                return
            flags.append(flag.value)
            if mode is CheckMode.ENFORCE:
                failures.append(flag.value)

        if (
            policy.ip_binding is not CheckMode.OFF
            and claims.ip_address
            and context.ip_known
            and claims.ip_address != context.client_ip
        ):
            note(SecurityFlag.IP_MISMATCH, policy.ip_binding)
            self.audit.record(
                "token_ip_mismatch",
                Severity.HIGH,
                "token presented from a different IP address",
                user_id=claims.user_id,
                jti=claims.jti,
                token_ip=claims.ip_address,
                current_ip=context.client_ip,
            )

        if policy.device_binding is not CheckMode.OFF and claims.device_id:
            current_device = context.device_id
            if current_device != claims.device_id:
                note(SecurityFlag.DEVICE_MISMATCH, policy.device_binding)
                self.audit.record(
                    "token_device_mismatch",
                    Severity.HIGH,
                    "token presented from a different device fingerprint",
                    user_id=claims.user_id,
                    jti=claims.jti,
                    token_device=claims.device_id,
                    current_device=current_device,
                )

        if policy.user_agent is not CheckMode.OFF:
            if not context.user_agent:
                note(SecurityFlag.MISSING_USER_AGENT, policy.user_agent)
            elif looks_like_bot(context.user_agent):
                note(SecurityFlag.SUSPICIOUS_USER_AGENT, CheckMode.FLAG)

        age = self.issuer.now() - int(claims.iat or 0)
        if policy.max_token_age_seconds is not None and age > policy.max_token_age_seconds:
            note(SecurityFlag.TOKEN_TOO_OLD, CheckMode.ENFORCE)
            self.audit.record(
                "token_age_exceeded",
                Severity.MEDIUM,
                f"token age {age}s exceeds {policy.max_token_age_seconds}s",
                user_id=claims.user_id,
                jti=claims.jti,
                token_age=age,
                max_age=policy.max_token_age_seconds,
            )
        if policy.require_fresh and age > policy.fresh_window_seconds:
            note(SecurityFlag.TOKEN_NOT_FRESH, CheckMode.ENFORCE)

        if policy.user_status is not CheckMode.OFF and self.users is not None:
            status_flag = await self._check_user_status(claims.user_id)
            if status_flag is not None:
                note(status_flag, policy.user_status)

        should_refresh = self.issuer.remaining_lifetime(claims) < self.refresh_threshold_seconds
        require_reauth = any(flag in REAUTH_FLAGS for flag in failures)
        result = ValidationResult(
            valid=not failures,
            claims=claims,
            flags=flags,
            error=_FLAG_ERRORS.get(failures[0]) if failures else None,
            should_refresh=should_refresh,
            require_reauth=require_reauth,
        )
        if failures:
            logger.info(
                "token_validation_rejected",
                user_id=claims.user_id,
                session_id=claims.session_id,
                flags=flags,
                require_reauth=require_reauth,
            )
        return result

    async def security_report(self, context: RequestContext, token: Optional[str]) -> Dict[str, Any]:
        """Run every check in flag-only mode and suggest follow-ups."""
        result = await self.validate(context, token, policy=REPORT_POLICY)
        recommendations: List[str] = []
        if SecurityFlag.IP_MISMATCH.value in result.flags:
            recommendations.append("Consider implementing IP binding for sensitive operations")
        if SecurityFlag.DEVICE_MISMATCH.value in result.flags:
            recommendations.append("User may be using token from different device")
        if result.should_refresh:
            recommendations.append("Token should be refreshed soon")

        token_info = None
        if result.claims is not None:
            claims = result.claims
            token_info = {
                "user_id": claims.user_id,
                "email": claims.email,
                "role": claims.role,
                "issued_at": _iso(claims.iat),
                "expires_at": _iso(claims.exp),
                "jti": claims.jti,
            }
        return {
            "token_info": token_info,
            "security_flags": list(result.flags),
            "recommendations": recommendations,
        }

    async def _is_revoked(self, token_hash: Optional[str], *, jti: Optional[str] = None) -> bool:
        if self.ledger.has_mirror:
            return await asyncio.to_thread(self.ledger.is_revoked, token_hash, jti=jti)
        return self.ledger.is_revoked(token_hash, jti=jti)

    def _blacklisted(
        self, context: RequestContext, token_hash: str, claims: Optional[TokenClaims]
    ) -> ValidationResult:
        self.audit.record(
            "revoked_token_presented",
            Severity.HIGH,
            "a revoked access token was presented",
            token_hash=token_hash,
            user_id=claims.user_id if claims else None,
            client_ip=context.client_ip,
        )
        return ValidationResult(
            valid=False,
            claims=None,
            flags=[SecurityFlag.TOKEN_BLACKLISTED.value],
            error=ErrorCode.REVOKED_TOKEN,
            require_reauth=True,
        )

    async def _check_user_status(self, user_id: str) -> Optional[SecurityFlag]:
        try:
            user = await asyncio.wait_for(
                asyncio.to_thread(self.users.find_user_by_id, user_id),
                timeout=self.user_status_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "user_status_check_timeout",
                user_id=user_id,
                timeout_seconds=self.user_status_timeout_seconds,
            )
            return SecurityFlag.USER_STATUS_CHECK_FAILED
        except Exception as exc:
            logger.error("user_status_check_failed", user_id=user_id, error=str(exc))
            return SecurityFlag.USER_STATUS_CHECK_FAILED
        if user is None:
            return SecurityFlag.USER_NOT_FOUND
        if not user.is_verified:
            return SecurityFlag.USER_NOT_VERIFIED
        if not user.is_active:
            return SecurityFlag.USER_INACTIVE
        return None


def with_overrides(policy: SecurityPolicy, **changes: Any) -> SecurityPolicy:
    """Derive a policy variant, e.g. for a route that needs IP binding at medium."""
    return dataclasses.replace(policy, **changes)


def _iso(timestamp: Optional[int]) -> Optional[str]:
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()
