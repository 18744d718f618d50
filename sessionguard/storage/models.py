from __future__ import annotations

import dataclasses
import secrets
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class UserRole(str, Enum):
    TEACHER = "teacher"
    LAWYER = "lawyer"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"


ADMIN_ROLES = frozenset({UserRole.ADMIN.value, UserRole.SUPER_ADMIN.value})


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


class SecurityLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class SecurityFlag(str, Enum):
    """Short anomaly codes attached to validation results and sessions."""

    INVALID_TOKEN = "INVALID_TOKEN"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    WRONG_TOKEN_KIND = "WRONG_TOKEN_KIND"
    TOKEN_BLACKLISTED = "TOKEN_BLACKLISTED"
    NO_AUTHORIZATION_TOKEN = "NO_AUTHORIZATION_TOKEN"
    IP_MISMATCH = "IP_MISMATCH"
    DEVICE_MISMATCH = "DEVICE_MISMATCH"
    MISSING_USER_AGENT = "MISSING_USER_AGENT"
    SUSPICIOUS_USER_AGENT = "SUSPICIOUS_USER_AGENT"
    BOT_USER_AGENT = "BOT_USER_AGENT"
    UNKNOWN_IP = "UNKNOWN_IP"
    TOKEN_TOO_OLD = "TOKEN_TOO_OLD"
    TOKEN_NOT_FRESH = "TOKEN_NOT_FRESH"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    USER_NOT_VERIFIED = "USER_NOT_VERIFIED"
    USER_INACTIVE = "USER_INACTIVE"
    USER_STATUS_CHECK_FAILED = "USER_STATUS_CHECK_FAILED"
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    IP_CHANGE = "IP_CHANGE"
    RAPID_ACTIVITY = "RAPID_ACTIVITY"


@dataclass
class UserRecord:
    id: str
    email: str
    name: str
    role: str = UserRole.TEACHER.value
    association_id: Optional[str] = None
    is_verified: bool = True
    is_active: bool = True
    password_hash: Optional[str] = None
    created_at: float = field(default_factory=time.time)

    @classmethod
    def new(
        cls,
        email: str,
        name: str,
        *,
        role: str = UserRole.TEACHER.value,
        association_id: Optional[str] = None,
        password_hash: Optional[str] = None,
        is_verified: bool = True,
        is_active: bool = True,
    ) -> "UserRecord":
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            name=name,
            role=UserRole(role).value,
            association_id=association_id,
            password_hash=password_hash,
            is_verified=is_verified,
            is_active=is_active,
        )

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES


# Attribute name -> payload key. Payload keys stay compatible with tokens
# minted by the previous web frontend.
_CLAIM_WIRE_NAMES: Dict[str, str] = {
    "user_id": "userId",
    "email": "email",
    "name": "name",
    "role": "role",
    "association_id": "association_id",
    "device_id": "deviceId",
    "ip_address": "ipAddress",
    "is_admin": "isAdmin",
    "session_id": "sessionId",
    "token_type": "tokenType",
    "jti": "jti",
    "iss": "iss",
    "aud": "aud",
    "iat": "iat",
    "exp": "exp",
    "nbf": "nbf",
}
_INT_CLAIMS = ("iat", "exp", "nbf")


@dataclass
class TokenClaims:
    """Identity plus security metadata carried by both token kinds."""

    user_id: str
    email: str
    name: str
    role: str
    association_id: Optional[str] = None
    device_id: Optional[str] = None
    ip_address: Optional[str] = None
    is_admin: bool = False
    session_id: Optional[str] = None
    token_type: Optional[TokenKind] = None
    jti: Optional[str] = None
    iss: Optional[str] = None
    aud: Optional[str] = None
    iat: Optional[int] = None
    exp: Optional[int] = None
    nbf: Optional[int] = None

    @classmethod
    def for_user(
        cls,
        user: UserRecord,
        *,
        device_id: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> "TokenClaims":
        return cls(
            user_id=user.id,
            email=user.email,
            name=user.name,
            role=user.role,
            association_id=user.association_id,
            device_id=device_id,
            ip_address=ip_address,
            is_admin=user.is_admin,
        )

    def identity(self) -> "TokenClaims":
        """Copy without the per-token security stamps, ready to be re-issued."""
        return dataclasses.replace(
            self,
            session_id=None,
            token_type=None,
            jti=None,
            iss=None,
            aud=None,
            iat=None,
            exp=None,
            nbf=None,
        )

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {}
        for attr, wire in _CLAIM_WIRE_NAMES.items():
            value = getattr(self, attr)
            if value is None:
                continue
            if isinstance(value, Enum):
                value = value.value
            payload[wire] = value
        return payload

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "TokenClaims":
        """Build claims from a decoded payload.

        Raises KeyError, TypeError or ValueError when required fields are
        missing or have the wrong shape.
        """
        values: Dict[str, Any] = {}
        for attr, wire in _CLAIM_WIRE_NAMES.items():
            if wire in payload and payload[wire] is not None:
                values[attr] = payload[wire]
        for required in ("user_id", "email", "role"):
            if not isinstance(values.get(required), str):
                raise KeyError(required)
        values.setdefault("name", "")
        if "token_type" in values:
            values["token_type"] = TokenKind(values["token_type"])
        for attr in _INT_CLAIMS:
            if attr in values:
                if isinstance(values[attr], bool) or not isinstance(values[attr], (int, float)):
                    raise TypeError(f"{attr} must be numeric")
                values[attr] = int(values[attr])
        values["is_admin"] = bool(values.get("is_admin", False))
        return cls(**values)


@dataclass
class DeviceDescriptor:
    device_id: str
    user_agent: Optional[str] = None
    platform: str = "Unknown"
    browser: str = "Unknown"


@dataclass
class TrackedToken:
    token_hash: str
    kind: TokenKind
    jti: Optional[str] = None
    expires_at: Optional[float] = None


@dataclass
class Session:
    id: str
    user_id: str
    device: DeviceDescriptor
    ip_address: str
    created_at: float
    last_activity: float
    access_tokens: List[TrackedToken] = field(default_factory=list)
    refresh_tokens: List[TrackedToken] = field(default_factory=list)
    risk_score: int = 0
    flags: List[str] = field(default_factory=list)

    @classmethod
    def new(
        cls,
        user_id: str,
        device: DeviceDescriptor,
        ip_address: str,
        *,
        now: float,
        risk_score: int = 0,
        flags: Optional[List[str]] = None,
    ) -> "Session":
        return cls(
            id=secrets.token_hex(24),
            user_id=user_id,
            device=device,
            ip_address=ip_address,
            created_at=now,
            last_activity=now,
            risk_score=risk_score,
            flags=list(flags or []),
        )

    def tracked(self) -> List[TrackedToken]:
        return [*self.access_tokens, *self.refresh_tokens]

    @property
    def token_count(self) -> int:
        return len(self.access_tokens) + len(self.refresh_tokens)

    def add_flag(self, flag: str) -> None:
        if flag not in self.flags:
            self.flags.append(flag)

    def to_public_dict(self, *, current_session_id: Optional[str] = None) -> Dict[str, Any]:
        """Listing view for the owning user; never includes token hashes."""
        return {
            "session_id": self.id,
            "platform": self.device.platform,
            "browser": self.device.browser,
            "ip_address": self.ip_address,
            "created_at": self.created_at,
            "last_activity": self.last_activity,
            "risk_score": self.risk_score,
            "is_current": self.id == current_session_id,
        }


@dataclass
class RevocationEntry:
    token_hash: str
    expires_at: float
    revoked_at: float
    jti: Optional[str] = None
    reason: str = "revoked"


@dataclass
class SessionStats:
    total_active_sessions: int
    total_active_users: int
    blacklisted_tokens_count: int
    average_risk_score: int
    high_risk_sessions: int

    def to_dict(self) -> Dict[str, int]:
        return dataclasses.asdict(self)


@dataclass
class SweepReport:
    sessions_invalidated: int = 0
    revocations_expired: int = 0
    revocations_trimmed: int = 0
