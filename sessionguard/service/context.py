from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from typing import Mapping, Optional, Tuple

from sessionguard.storage.models import DeviceDescriptor

UNKNOWN_IP = "unknown"

_BOT_PATTERN = re.compile(r"bot|crawler|spider", re.IGNORECASE)
_MIN_USER_AGENT_LENGTH = 10

# First match wins, so more specific markers come before the ones they contain
# (an Android UA also says "Linux", an Edge UA also says "Chrome").
_PLATFORM_MARKERS = (
    ("Windows", "Windows"),
    ("Android", "Android"),
    ("iPhone", "iOS"),
    ("iPad", "iOS"),
    ("iOS", "iOS"),
    ("Mac", "macOS"),
    ("Linux", "Linux"),
)
_BROWSER_MARKERS = (
    ("Edg", "Edge"),
    ("Firefox", "Firefox"),
    ("Chrome", "Chrome"),
    ("Safari", "Safari"),
)


def device_fingerprint(
    user_agent: Optional[str],
    accept_language: Optional[str],
    accept_encoding: Optional[str],
) -> str:
    """Weak device binding: sha256 over the three headers, truncated to 16 hex chars."""
    digest = hashlib.sha256()
    for part in (user_agent, accept_language, accept_encoding):
        digest.update((part or "").encode("utf-8"))
    return digest.hexdigest()[:16]


def parse_user_agent(user_agent: Optional[str]) -> Tuple[str, str]:
    """Return ``(platform, browser)``; either is ``"Unknown"`` when unrecognised."""
    ua = user_agent or ""
    platform = next((name for marker, name in _PLATFORM_MARKERS if marker in ua), "Unknown")
    browser = next((name for marker, name in _BROWSER_MARKERS if marker in ua), "Unknown")
    return platform, browser


def looks_like_bot(user_agent: Optional[str]) -> bool:
    return bool(user_agent) and bool(_BOT_PATTERN.search(user_agent))


def is_suspicious_user_agent(user_agent: Optional[str]) -> bool:
    return not user_agent or len(user_agent) < _MIN_USER_AGENT_LENGTH


def resolve_client_ip(headers: Mapping[str, str], peer_ip: Optional[str] = None) -> str:
    """First hop of X-Forwarded-For, then X-Real-IP, then the socket peer."""
    lowered = {k.lower(): v for k, v in headers.items()}
    forwarded = lowered.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = (lowered.get("x-real-ip") or "").strip()
    if real_ip:
        return real_ip
    return peer_ip or UNKNOWN_IP


@dataclass(frozen=True)
class RequestContext:
    """The request attributes the security core is allowed to see."""

    user_agent: Optional[str] = None
    accept_language: Optional[str] = None
    accept_encoding: Optional[str] = None
    client_ip: str = UNKNOWN_IP

    @classmethod
    def from_headers(
        cls, headers: Mapping[str, str], peer_ip: Optional[str] = None
    ) -> "RequestContext":
        lowered = {k.lower(): v for k, v in headers.items()}
        return cls(
            user_agent=lowered.get("user-agent") or None,
            accept_language=lowered.get("accept-language") or None,
            accept_encoding=lowered.get("accept-encoding") or None,
            client_ip=resolve_client_ip(lowered, peer_ip),
        )

    @property
    def device_id(self) -> str:
        return device_fingerprint(self.user_agent, self.accept_language, self.accept_encoding)

    @property
    def ip_known(self) -> bool:
        return bool(self.client_ip) and self.client_ip != UNKNOWN_IP

    def describe_device(self) -> DeviceDescriptor:
        platform, browser = parse_user_agent(self.user_agent)
        return DeviceDescriptor(
            device_id=self.device_id,
            user_agent=self.user_agent,
            platform=platform,
            browser=browser,
        )
