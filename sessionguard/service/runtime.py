from __future__ import annotations

import asyncio
import contextlib
import threading
from typing import Callable, Iterable, Optional
from urllib.parse import urlparse, urlunparse

from sessionguard.config import Settings, get_settings, reset_settings_cache
from sessionguard.logging import get_logger
from sessionguard.service.audit import AuditTrail
from sessionguard.service.auth import AuthService
from sessionguard.service.interfaces import AuditSink, UserDirectory
from sessionguard.service.legacy import LegacyTokenAdapter
from sessionguard.service.passwords import PasswordVerifier
from sessionguard.service.revocation import RevocationLedger
from sessionguard.service.sessions import SessionRegistry
from sessionguard.service.tokens import TokenIssuer
from sessionguard.service.validator import SecurityValidator
from sessionguard.storage.memory import (
    MemoryRevocationStore,
    MemorySessionStore,
    MemoryUserDirectory,
)
from sessionguard.storage.models import TokenKind
from sessionguard.storage.redis_cache import RedisRevocationMirror

logger = get_logger(__name__)

# Never sweep more often than this, whatever the configuration says
MIN_SWEEP_INTERVAL_SECONDS = 30


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        netloc = f"{parsed.username or ''}:***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


async def run_periodic_sweep(registry: SessionRegistry, interval_seconds: int) -> None:
    """Background loop invoking ``registry.sweep`` off the event loop."""

    interval = max(interval_seconds, MIN_SWEEP_INTERVAL_SECONDS)
    try:
        while True:
            await asyncio.sleep(interval)
            try:
                await asyncio.to_thread(registry.sweep)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("session_sweep_failed", error=str(exc))
    except asyncio.CancelledError:
        logger.info("session_sweep_task_cancelled")
        raise


class Runtime:
    """Builds and owns the auth object graph for one process.

    Construction fails with ConfigurationError on bad key material, which
    keeps the process from ever serving traffic.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        users: Optional[UserDirectory] = None,
        audit_sinks: Optional[Iterable[AuditSink]] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            environment=self.settings.environment.value,
            test_mode=self.settings.test_mode,
        )
        self.issuer = TokenIssuer(self.settings, clock=clock)

        self.mirror: Optional[RedisRevocationMirror] = None
        if self.settings.redis_url:
            try:
                mirror = RedisRevocationMirror(self.settings.redis_url)
                mirror.verify_connection()
                self.mirror = mirror
                logger.info(
                    "revocation_mirror_connected",
                    redis_url=_mask_url_password(self.settings.redis_url),
                )
            except Exception as exc:
                logger.error(
                    "revocation_mirror_unavailable",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                )
                if self.settings.is_production:
                    raise RuntimeError(
                        "REDIS_URL is set but Redis is unreachable; revocations would not be shared"
                    ) from exc

        self.audit = AuditTrail(
            audit_sinks,
            background=self.settings.audit_background and not self.settings.test_mode,
        )
        self.ledger = RevocationLedger(
            MemoryRevocationStore(),
            mirror=self.mirror,
            clock=clock,
            max_entries=self.settings.revocation_max_entries,
            trim_batch=self.settings.revocation_trim_batch,
            default_ttl_seconds=self.issuer.lifetime(TokenKind.REFRESH),
        )
        self.users: UserDirectory = users if users is not None else MemoryUserDirectory()
        self.passwords = PasswordVerifier()
        self.registry = SessionRegistry(
            MemorySessionStore(),
            self.ledger,
            settings=self.settings,
            audit=self.audit,
            clock=clock,
        )
        self.validator = SecurityValidator(
            self.issuer,
            self.ledger,
            users=self.users,
            sessions=self.registry,
            audit=self.audit,
            refresh_threshold_seconds=self.settings.refresh_threshold_seconds,
            user_status_timeout_seconds=self.settings.user_status_timeout_seconds,
        )
        self.auth = AuthService(
            self.issuer,
            self.registry,
            self.validator,
            users=self.users,
            passwords=self.passwords,
            audit=self.audit,
        )
        self.legacy = LegacyTokenAdapter(self.issuer, self.ledger)
        self._sweep_task: Optional[asyncio.Task] = None
        logger.info(
            "runtime_init_complete",
            revocation_mirror=self.mirror is not None,
            access_lifetime_seconds=self.issuer.lifetime(TokenKind.ACCESS),
            refresh_lifetime_seconds=self.issuer.lifetime(TokenKind.REFRESH),
        )

    def start_sweeper(self) -> asyncio.Task:
        """Schedule the periodic sweep on the running loop (idempotent)."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(
                run_periodic_sweep(self.registry, self.settings.sweep_interval_seconds)
            )
        return self._sweep_task

    async def stop_sweeper(self) -> None:
        task, self._sweep_task = self._sweep_task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def close(self) -> None:
        await self.stop_sweeper()
        self.audit.close()
        self.ledger.close()
        logger.info("runtime_closed")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the process-wide Runtime (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from a fresh environment read; TEST_MODE only."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.audit.close()
            runtime.ledger.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
