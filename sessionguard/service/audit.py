from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from sessionguard.logging import get_logger
from sessionguard.service.interfaces import AuditSink

logger = get_logger(__name__)


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class StructlogAuditSink:
    """Writes security events to the structured log stream."""

    _LEVELS = {
        Severity.LOW.value: "info",
        Severity.MEDIUM.value: "warning",
        Severity.HIGH.value: "warning",
        Severity.CRITICAL.value: "error",
    }

    def __init__(self, name: str = "security") -> None:
        self._logger = get_logger(name)

    def record(
        self, event_type: str, severity: str, message: str, metadata: Dict[str, Any]
    ) -> None:
        log_fn = getattr(self._logger, self._LEVELS.get(severity, "warning"))
        log_fn(
            "security_event",
            event_type=event_type,
            severity=severity,
            message=message,
            metadata=metadata,
        )


class AuditTrail:
    """Fans security events out to sinks without ever failing the caller.

    With ``background=True`` sinks run on a single worker thread so a slow
    audit store cannot stall request handling.
    """

    def __init__(
        self,
        sinks: Optional[Iterable[AuditSink]] = None,
        *,
        background: bool = False,
    ) -> None:
        self._sinks: List[AuditSink] = (
            list(sinks) if sinks is not None else [StructlogAuditSink()]
        )
        self._executor: Optional[ThreadPoolExecutor] = (
            ThreadPoolExecutor(max_workers=1, thread_name_prefix="audit")
            if background
            else None
        )

    def add_sink(self, sink: AuditSink) -> None:
        self._sinks.append(sink)

    def record(
        self,
        event_type: str,
        severity: Severity | str,
        message: str,
        **metadata: Any,
    ) -> None:
        level = Severity(severity).value
        if self._executor is not None:
            try:
                self._executor.submit(self._dispatch, event_type, level, message, metadata)
                return
            except RuntimeError:
                # Executor already shut down; deliver inline instead
                pass
        self._dispatch(event_type, level, message, metadata)

    def _dispatch(
        self, event_type: str, severity: str, message: str, metadata: Dict[str, Any]
    ) -> None:
        for sink in list(self._sinks):
            try:
                sink.record(event_type, severity, message, dict(metadata))
            except Exception as exc:
                logger.warning(
                    "audit_sink_failed",
                    sink=type(sink).__name__,
                    event_type=event_type,
                    error=str(exc),
                )

    def close(self) -> None:
        """Drain pending events."""
        if self._executor is not None:
            self._executor.shutdown(wait=True)
