import pytest

from conftest import DESKTOP_UA, PHONE_UA
from sessionguard.logging import _redact_pii, token_fingerprint
from sessionguard.service.context import (
    UNKNOWN_IP,
    RequestContext,
    device_fingerprint,
    is_suspicious_user_agent,
    looks_like_bot,
    parse_user_agent,
    resolve_client_ip,
)


class TestUserAgentParsing:
    @pytest.mark.parametrize(
        "ua,expected",
        [
            (DESKTOP_UA, ("Windows", "Chrome")),
            (PHONE_UA, ("iOS", "Safari")),
            (
                "Mozilla/5.0 (Linux; Android 14; Pixel 8) AppleWebKit/537.36 "
                "(KHTML, like Gecko) Chrome/120.0 Mobile Safari/537.36",
                ("Android", "Chrome"),
            ),
            (
                "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_1) Gecko/20100101 Firefox/121.0",
                ("macOS", "Firefox"),
            ),
            (
                "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
                "(KHTML, like Gecko) Chrome/120.0 Safari/537.36 Edg/120.0",
                ("Windows", "Edge"),
            ),
            ("curl/8.4.0", ("Unknown", "Unknown")),
            (None, ("Unknown", "Unknown")),
        ],
    )
    def test_platform_and_browser(self, ua, expected):
        assert parse_user_agent(ua) == expected

    def test_bot_detection_is_case_insensitive(self):
        assert looks_like_bot("Googlebot/2.1 (+http://www.google.com/bot.html)")
        assert looks_like_bot("SomeCrawler/1.0")
        assert looks_like_bot("Spider")
        assert not looks_like_bot(DESKTOP_UA)
        assert not looks_like_bot(None)

    def test_short_or_missing_user_agent_is_suspicious(self):
        assert is_suspicious_user_agent(None)
        assert is_suspicious_user_agent("")
        assert is_suspicious_user_agent("curl/8")
        assert not is_suspicious_user_agent("curl/8.4.0")


class TestDeviceFingerprint:
    def test_is_sixteen_hex_chars_and_stable(self):
        fp = device_fingerprint(DESKTOP_UA, "en-US", "gzip")
        assert len(fp) == 16
        int(fp, 16)
        assert fp == device_fingerprint(DESKTOP_UA, "en-US", "gzip")

    def test_any_header_change_changes_fingerprint(self):
        base = device_fingerprint(DESKTOP_UA, "en-US", "gzip")
        assert base != device_fingerprint(PHONE_UA, "en-US", "gzip")
        assert base != device_fingerprint(DESKTOP_UA, "ko-KR", "gzip")
        assert base != device_fingerprint(DESKTOP_UA, "en-US", "br")

    def test_missing_headers_hash_as_empty(self):
        assert device_fingerprint(None, None, None) == device_fingerprint("", "", "")


class TestClientIp:
    def test_first_forwarded_hop_wins(self):
        headers = {"X-Forwarded-For": "198.51.100.7, 10.0.0.1", "X-Real-IP": "10.0.0.2"}
        assert resolve_client_ip(headers, "10.0.0.3") == "198.51.100.7"

    def test_real_ip_then_peer(self):
        assert resolve_client_ip({"x-real-ip": " 198.51.100.8 "}, "10.0.0.3") == "198.51.100.8"
        assert resolve_client_ip({}, "10.0.0.3") == "10.0.0.3"

    def test_unknown_when_nothing_available(self):
        assert resolve_client_ip({}, None) == UNKNOWN_IP

    def test_context_from_headers(self):
        ctx = RequestContext.from_headers(
            {
                "User-Agent": PHONE_UA,
                "Accept-Language": "ko-KR",
                "Accept-Encoding": "gzip",
                "X-Forwarded-For": "198.51.100.9",
            },
            "127.0.0.1",
        )
        assert ctx.client_ip == "198.51.100.9"
        assert ctx.ip_known
        assert ctx.device_id == device_fingerprint(PHONE_UA, "ko-KR", "gzip")
        device = ctx.describe_device()
        assert (device.platform, device.browser) == ("iOS", "Safari")
        assert device.user_agent == PHONE_UA

    def test_context_without_peer_has_unknown_ip(self):
        ctx = RequestContext.from_headers({})
        assert not ctx.ip_known
        assert ctx.user_agent is None


class TestLogRedaction:
    def test_credentials_are_masked(self):
        event = _redact_pii(
            None,
            "info",
            {"password": "hunter2hunter2", "refresh_token": "eyJhbGciOi.abc.def", "email": "a@b.co"},
        )
        assert event["password"] == "hu***r2"
        assert event["refresh_token"].startswith("ey***")
        assert event["email"] == "a@***co"

    def test_digest_fields_pass_through(self):
        digest = "a" * 64
        event = _redact_pii(None, "info", {"token_hash": digest, "session_id": "s-1"})
        assert event["token_hash"] == digest
        assert event["session_id"] == "s-1"

    def test_token_fingerprint(self):
        assert token_fingerprint(None) is None
        assert len(token_fingerprint("abc.def.ghi")) == 12
