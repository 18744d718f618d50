from __future__ import annotations

from typing import Any, Dict, Optional, Protocol

from sessionguard.storage.models import UserRecord


class UserDirectory(Protocol):
    """Lookup contract for the relational user store."""

    def find_user_by_id(self, user_id: str) -> Optional[UserRecord]: ...

    def find_user_by_email(self, email: str) -> Optional[UserRecord]: ...


class AuditSink(Protocol):
    """Receives security events; implementations may be slow or fail."""

    def record(
        self,
        event_type: str,
        severity: str,
        message: str,
        metadata: Dict[str, Any],
    ) -> None: ...
