from __future__ import annotations

import contextlib
import threading
import time
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from sessionguard.config import Settings
from sessionguard.logging import get_logger
from sessionguard.service.audit import AuditTrail, Severity
from sessionguard.service.context import (
    UNKNOWN_IP,
    RequestContext,
    is_suspicious_user_agent,
    looks_like_bot,
)
from sessionguard.service.errors import RevokedTokenError, SessionNotFoundError
from sessionguard.service.revocation import RevocationLedger
from sessionguard.storage.common import SessionStore
from sessionguard.storage.memory import MemorySessionStore
from sessionguard.storage.models import (
    SecurityFlag,
    Session,
    SessionStats,
    SweepReport,
    TokenKind,
    TrackedToken,
)

logger = get_logger(__name__)

RISK_BASE = 10
RISK_SUSPICIOUS_USER_AGENT = 30
RISK_BOT_USER_AGENT = 40
RISK_UNKNOWN_IP = 20
RISK_IP_CHANGE = 20
RISK_RAPID_ACTIVITY = 5
RISK_MAX = 100
HIGH_RISK_THRESHOLD = 70
RAPID_ACTIVITY_SECONDS = 1.0


def initial_risk(context: RequestContext) -> Tuple[int, List[str]]:
    """Score a new login from its request headers alone."""
    score = RISK_BASE
    flags: List[str] = []
    if is_suspicious_user_agent(context.user_agent):
        score += RISK_SUSPICIOUS_USER_AGENT
        flags.append(SecurityFlag.SUSPICIOUS_USER_AGENT.value)
    if looks_like_bot(context.user_agent):
        score += RISK_BOT_USER_AGENT
        flags.append(SecurityFlag.BOT_USER_AGENT.value)
    if not context.ip_known:
        score += RISK_UNKNOWN_IP
        flags.append(SecurityFlag.UNKNOWN_IP.value)
    return min(score, RISK_MAX), flags


def _raise_risk(session: Session, amount: int) -> None:
    session.risk_score = min(RISK_MAX, session.risk_score + amount)


class SessionRegistry:
    """Tracks logins, the token hashes issued under them, and their risk.

    Every mutation runs under the store lock so create/track/rotate/
    invalidate/sweep are atomic with respect to each other. Invalidation
    removes the session before anything else can observe it, so a racing
    rotation finds no session and fails closed.
    """

    def __init__(
        self,
        store: Optional[SessionStore] = None,
        ledger: Optional[RevocationLedger] = None,
        *,
        settings: Optional[Settings] = None,
        audit: Optional[AuditTrail] = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        settings = settings or Settings()
        self._clock = clock or time.time
        self.store: SessionStore = store if store is not None else MemorySessionStore()
        self.ledger = ledger if ledger is not None else RevocationLedger(
            clock=self._clock,
            max_entries=settings.revocation_max_entries,
            trim_batch=settings.revocation_trim_batch,
        )
        self.audit = audit or AuditTrail()
        self.max_tracked_access_tokens = settings.max_tracked_access_tokens
        self.session_max_age_seconds = settings.session_max_age_seconds
        self.sweep_batch_size = settings.sweep_batch_size
        self._rotation_locks: Dict[str, threading.Lock] = {}
        self._rotation_locks_guard = threading.Lock()

    @property
    def lock(self):
        return self.store.lock

    def _now(self) -> float:
        return self._clock()

    # -- creation and tracking -------------------------------------------------

    def create_session(self, user_id: str, context: RequestContext) -> Session:
        risk, flags = initial_risk(context)
        session = Session.new(
            user_id,
            context.describe_device(),
            context.client_ip,
            now=self._now(),
            risk_score=risk,
            flags=flags,
        )
        self.store.add_session(session)
        logger.info(
            "session_created",
            session_id=session.id,
            user_id=user_id,
            risk_score=risk,
            platform=session.device.platform,
            browser=session.device.browser,
        )
        if risk > HIGH_RISK_THRESHOLD:
            self.audit.record(
                "session_high_risk",
                Severity.MEDIUM,
                "new session opened with a high initial risk score",
                session_id=session.id,
                user_id=user_id,
                risk_score=risk,
                flags=list(flags),
            )
        return session

    def track_token(
        self,
        session_id: str,
        token_hash: str,
        kind: TokenKind,
        *,
        jti: Optional[str] = None,
        expires_at: Optional[float] = None,
    ) -> Session:
        kind = TokenKind(kind)
        with self.lock:
            session = self.store.get_session(session_id)
            if session is None:
                raise SessionNotFoundError("session has been invalidated")
            owner = self.store.session_id_for_token(token_hash)
            if owner == session_id:
                return session
            if owner is not None:
                raise ValueError("token hash is already tracked by another session")
            tracked = TrackedToken(token_hash=token_hash, kind=kind, jti=jti, expires_at=expires_at)
            if kind is TokenKind.ACCESS:
                session.access_tokens.append(tracked)
                while len(session.access_tokens) > self.max_tracked_access_tokens:
                    pruned = session.access_tokens.pop(0)
                    self.store.unindex_token(pruned.token_hash)
            else:
                session.refresh_tokens.append(tracked)
            self.store.index_token(token_hash, session_id)
            return session

    @contextlib.contextmanager
    def rotation_guard(self, session_id: str) -> Iterator[None]:
        """Serialise refresh-token rotation for one session."""
        with self._rotation_locks_guard:
            lock = self._rotation_locks.setdefault(session_id, threading.Lock())
        with lock:
            try:
                yield
            finally:
                # Sessions gone before or during rotation leave no lock behind
                if self.store.get_session(session_id) is None:
                    with self._rotation_locks_guard:
                        self._rotation_locks.pop(session_id, None)

    def rotate_refresh_token(
        self,
        session_id: str,
        old_hash: str,
        new_hash: str,
        *,
        new_jti: Optional[str] = None,
        new_expires_at: Optional[float] = None,
    ) -> Session:
        """Atomically retire ``old_hash`` (into the ledger) and track ``new_hash``.

        Raises SessionNotFoundError if the session was invalidated and
        RevokedTokenError if the old token is no longer tracked.
        """
        with self.lock:
            session = self.store.get_session(session_id)
            if session is None:
                raise SessionNotFoundError("session has been invalidated")
            old = next((t for t in session.refresh_tokens if t.token_hash == old_hash), None)
            if old is None or self.store.session_id_for_token(old_hash) != session_id:
                raise RevokedTokenError("refresh token is no longer active")
            session.refresh_tokens.remove(old)
            self.store.unindex_token(old_hash)
            self.ledger.revoke(old_hash, expires_at=old.expires_at, jti=old.jti, reason="rotated")
            session.refresh_tokens.append(
                TrackedToken(
                    token_hash=new_hash,
                    kind=TokenKind.REFRESH,
                    jti=new_jti,
                    expires_at=new_expires_at,
                )
            )
            self.store.index_token(new_hash, session_id)
            session.last_activity = self._now()
            return session

    # -- lookup -------------------------------------------------------------

    def get_session(self, session_id: str) -> Optional[Session]:
        return self.store.get_session(session_id)

    def session_for_token(self, token_hash: str) -> Optional[Session]:
        with self.lock:
            session_id = self.store.session_id_for_token(token_hash)
            return self.store.get_session(session_id) if session_id else None

    def list_user_sessions(self, user_id: str) -> List[Session]:
        with self.lock:
            sessions = [
                s for s in (self.store.get_session(sid) for sid in self.store.session_ids_for_user(user_id))
                if s is not None
            ]
        return sorted(sessions, key=lambda s: s.last_activity, reverse=True)

    # -- revocation ---------------------------------------------------------

    def blacklist_token(
        self,
        token_hash: str,
        *,
        jti: Optional[str] = None,
        expires_at: Optional[float] = None,
        reason: str = "blacklisted",
    ) -> bool:
        """Deny one token; a session left with no tokens is invalidated.

        Returns True when the token was not already denied.
        """
        emptied: Optional[Session] = None
        with self.lock:
            tracked: Optional[TrackedToken] = None
            session_id = self.store.unindex_token(token_hash)
            session = self.store.get_session(session_id) if session_id else None
            if session is not None:
                for bucket in (session.access_tokens, session.refresh_tokens):
                    for candidate in bucket:
                        if candidate.token_hash == token_hash:
                            tracked = candidate
                            bucket.remove(candidate)
                            break
            added = self.ledger.revoke(
                token_hash,
                expires_at=expires_at if expires_at is not None else (tracked.expires_at if tracked else None),
                jti=jti or (tracked.jti if tracked else None),
                reason=reason,
            )
            if session is not None and session.token_count == 0:
                emptied = self._invalidate_locked(session.id, "no_active_tokens")
        logger.info(
            "token_blacklisted",
            token_hash=token_hash,
            session_id=session_id,
            reason=reason,
            newly_revoked=added,
        )
        if emptied is not None:
            self._emit_invalidated(emptied, "no_active_tokens", Severity.LOW)
        return added

    def invalidate_session(
        self,
        session_id: str,
        reason: str = "logout",
        *,
        severity: Severity | str = Severity.LOW,
    ) -> bool:
        """Remove a session and deny every token it tracks.

        Idempotent: returns False for unknown or already-invalidated ids.
        """
        with self.lock:
            session = self._invalidate_locked(session_id, reason)
        if session is None:
            logger.debug("session_invalidate_noop", session_id=session_id, reason=reason)
            return False
        self._emit_invalidated(session, reason, severity)
        return True

    def invalidate_all_for_user(
        self,
        user_id: str,
        reason: str = "logout_all",
        *,
        except_session_id: Optional[str] = None,
        severity: Severity | str = Severity.MEDIUM,
    ) -> int:
        invalidated: List[Session] = []
        with self.lock:
            for session_id in self.store.session_ids_for_user(user_id):
                if session_id == except_session_id:
                    continue
                session = self._invalidate_locked(session_id, reason)
                if session is not None:
                    invalidated.append(session)
        for session in invalidated:
            self._emit_invalidated(session, reason, severity)
        self.audit.record(
            "user_sessions_invalidated",
            severity,
            f"invalidated {len(invalidated)} session(s)",
            user_id=user_id,
            reason=reason,
            count=len(invalidated),
            kept_session_id=except_session_id,
        )
        return len(invalidated)

    def _invalidate_locked(self, session_id: str, reason: str) -> Optional[Session]:
        session = self.store.remove_session(session_id)
        if session is None:
            return None
        for tracked in session.tracked():
            self.ledger.revoke(
                tracked.token_hash,
                expires_at=tracked.expires_at,
                jti=tracked.jti,
                reason=f"session_{reason}",
            )
        with self._rotation_locks_guard:
            self._rotation_locks.pop(session_id, None)
        return session

    def _emit_invalidated(self, session: Session, reason: str, severity: Severity | str) -> None:
        duration = max(0, int(self._now() - session.created_at))
        logger.info(
            "session_invalidated",
            session_id=session.id,
            user_id=session.user_id,
            reason=reason,
            duration_seconds=duration,
        )
        self.audit.record(
            "session_invalidated",
            severity,
            f"session invalidated: {reason}",
            session_id=session.id,
            user_id=session.user_id,
            reason=reason,
            duration_seconds=duration,
        )

    # -- activity and risk --------------------------------------------------

    def record_activity(self, session_id: str, context: RequestContext) -> Optional[Session]:
        """Update last-activity and raise risk on IP changes or sub-second repeats."""
        previous_ip: Optional[str] = None
        with self.lock:
            session = self.store.get_session(session_id)
            if session is None:
                return None
            now = self._now()
            if context.ip_known and context.client_ip != session.ip_address:
                if session.ip_address != UNKNOWN_IP:
                    previous_ip = session.ip_address
                    session.add_flag(SecurityFlag.IP_CHANGE.value)
                    _raise_risk(session, RISK_IP_CHANGE)
                session.ip_address = context.client_ip
            if now - session.last_activity < RAPID_ACTIVITY_SECONDS:
                session.add_flag(SecurityFlag.RAPID_ACTIVITY.value)
                _raise_risk(session, RISK_RAPID_ACTIVITY)
            session.last_activity = now
            risk = session.risk_score
        if previous_ip is not None:
            self.audit.record(
                "session_ip_changed",
                Severity.MEDIUM,
                "session used from a new IP address",
                session_id=session_id,
                user_id=session.user_id,
                previous_ip=previous_ip,
                current_ip=context.client_ip,
                risk_score=risk,
            )
        return session

    # -- maintenance --------------------------------------------------------

    def sweep(self) -> SweepReport:
        """Invalidate over-age sessions in batches, then prune the ledger.

        The lock is released between batches so request handling is never
        starved by a large sweep.
        """
        report = SweepReport()
        cutoff = self._now() - self.session_max_age_seconds
        with self.lock:
            stale = [s.id for s in self.store.list_sessions() if s.created_at < cutoff]
        for start in range(0, len(stale), self.sweep_batch_size):
            removed: List[Session] = []
            with self.lock:
                for session_id in stale[start:start + self.sweep_batch_size]:
                    session = self._invalidate_locked(session_id, "expired")
                    if session is not None:
                        removed.append(session)
            for session in removed:
                self._emit_invalidated(session, "expired", Severity.LOW)
            report.sessions_invalidated += len(removed)
        report.revocations_expired, report.revocations_trimmed = self.ledger.sweep()
        logger.info(
            "session_sweep_complete",
            sessions_invalidated=report.sessions_invalidated,
            revocations_expired=report.revocations_expired,
            revocations_trimmed=report.revocations_trimmed,
            active_sessions=self.store.session_count(),
        )
        return report

    def stats(self) -> SessionStats:
        with self.lock:
            sessions = self.store.list_sessions()
            users = self.store.user_count()
        total = len(sessions)
        average = int(sum(s.risk_score for s in sessions) / total + 0.5) if total else 0
        return SessionStats(
            total_active_sessions=total,
            total_active_users=users,
            blacklisted_tokens_count=len(self.ledger),
            average_risk_score=average,
            high_risk_sessions=sum(1 for s in sessions if s.risk_score > HIGH_RISK_THRESHOLD),
        )
