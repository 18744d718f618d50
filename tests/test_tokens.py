"""Tests for token issuance and verification.

Covers lifetime parsing, start-up secret checks, signing, the per-kind
secrets and every verification failure the issuer distinguishes.
"""

import base64
import json

import pytest

from conftest import ACCESS_SECRET, REFRESH_SECRET, FakeClock, make_settings
from sessionguard.config import DEFAULT_ACCESS_SECRET, DEFAULT_REFRESH_SECRET
from sessionguard.service.errors import (
    ConfigurationError,
    ErrorCode,
    ExpiredTokenError,
    MalformedTokenError,
    WrongTokenKindError,
)
from sessionguard.service.tokens import TokenIssuer, check_secrets, parse_lifetime
from sessionguard.storage.models import TokenClaims, TokenKind, UserRecord


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def issuer(clock):
    return TokenIssuer(make_settings(), clock=clock)


@pytest.fixture
def claims():
    user = UserRecord.new("lawyer@example.com", "Lee Lawyer", role="lawyer", association_id="assoc-7")
    return TokenClaims.for_user(user, device_id="0123456789abcdef", ip_address="198.51.100.4")


def _b64(data: dict) -> str:
    raw = json.dumps(data, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


class TestParseLifetime:
    @pytest.mark.parametrize(
        "value,expected",
        [
            ("30m", 1800),
            ("7d", 604800),
            ("2h", 7200),
            ("45s", 45),
            ("900", 900),
            (120, 120),
        ],
    )
    def test_known_units(self, value, expected):
        assert parse_lifetime(value) == expected

    @pytest.mark.parametrize("value", ["", "abc", "10w", "-5m", None, 0])
    def test_unparseable_falls_back_to_thirty_minutes(self, value):
        assert parse_lifetime(value) == 1800


class TestSecretChecks:
    def test_missing_secret_is_fatal(self):
        with pytest.raises(ConfigurationError):
            check_secrets(make_settings(jwt_refresh_secret=None))

    def test_blank_secret_is_treated_as_missing(self):
        with pytest.raises(ConfigurationError):
            TokenIssuer(make_settings(jwt_access_secret="   "))

    def test_identical_secrets_are_fatal(self):
        with pytest.raises(ConfigurationError):
            check_secrets(make_settings(jwt_refresh_secret=ACCESS_SECRET))

    def test_default_secrets_rejected_in_production(self):
        settings = make_settings(
            environment="production",
            jwt_access_secret=DEFAULT_ACCESS_SECRET,
            jwt_refresh_secret=REFRESH_SECRET,
        )
        with pytest.raises(ConfigurationError):
            check_secrets(settings)

    def test_short_secrets_only_warn_outside_production(self):
        settings = make_settings(
            jwt_access_secret=DEFAULT_ACCESS_SECRET,
            jwt_refresh_secret=DEFAULT_REFRESH_SECRET,
        )
        check_secrets(settings)

    def test_short_secrets_rejected_in_production(self):
        settings = make_settings(
            environment="production",
            jwt_access_secret="short-access",
            jwt_refresh_secret="short-refresh",
        )
        with pytest.raises(ConfigurationError):
            check_secrets(settings)


class TestIssueAndVerify:
    def test_access_round_trip_preserves_identity(self, issuer, claims):
        token = issuer.issue(TokenKind.ACCESS, claims)
        verified = issuer.verify(token, TokenKind.ACCESS)

        assert verified.user_id == claims.user_id
        assert verified.email == "lawyer@example.com"
        assert verified.role == "lawyer"
        assert verified.association_id == "assoc-7"
        assert verified.device_id == "0123456789abcdef"
        assert verified.ip_address == "198.51.100.4"
        assert verified.token_type is TokenKind.ACCESS
        assert verified.iss == "kyokwon119.app"
        assert verified.aud == "kyokwon119.users"

    def test_exp_iat_nbf_follow_lifetime_and_skew(self, issuer, claims, clock):
        token = issuer.issue(TokenKind.ACCESS, claims)
        verified = issuer.verify(token, TokenKind.ACCESS)

        now = int(clock.now)
        assert verified.iat == now
        assert verified.exp == now + 1800
        assert verified.nbf == now - 30

    def test_pair_shares_session_and_has_distinct_jtis(self, issuer, claims):
        pair = issuer.issue_pair(claims)
        access = issuer.verify(pair.access_token, TokenKind.ACCESS)
        refresh = issuer.verify(pair.refresh_token, TokenKind.REFRESH)

        assert access.session_id == refresh.session_id == pair.session_id
        assert access.jti != refresh.jti
        assert pair.expires_in == 1800
        assert pair.refresh_expires_in == 7 * 24 * 3600
        assert pair.to_dict()["token_type"] == "bearer"

    def test_explicit_session_id_is_used(self, issuer, claims):
        pair = issuer.issue_pair(claims, session_id="sess-123")
        assert issuer.verify(pair.access_token, TokenKind.ACCESS).session_id == "sess-123"

    def test_access_token_rejected_as_refresh(self, issuer, claims):
        token = issuer.issue(TokenKind.ACCESS, claims)
        with pytest.raises(WrongTokenKindError) as excinfo:
            issuer.verify(token, TokenKind.REFRESH)
        assert excinfo.value.code is ErrorCode.WRONG_TOKEN_KIND

    def test_refresh_token_rejected_as_access(self, issuer, claims):
        token = issuer.issue(TokenKind.REFRESH, claims)
        with pytest.raises(WrongTokenKindError):
            issuer.verify(token, TokenKind.ACCESS)

    def test_expiry_boundary(self, issuer, claims, clock):
        token = issuer.issue(TokenKind.ACCESS, claims)
        clock.advance(1799)
        issuer.verify(token, TokenKind.ACCESS)

        clock.advance(1)
        with pytest.raises(ExpiredTokenError) as excinfo:
            issuer.verify(token, TokenKind.ACCESS)
        assert excinfo.value.code is ErrorCode.EXPIRED_TOKEN

    def test_not_yet_valid_token_rejected(self, issuer, claims, clock):
        token = issuer.issue(TokenKind.ACCESS, claims)
        clock.advance(-31)
        with pytest.raises(MalformedTokenError):
            issuer.verify(token, TokenKind.ACCESS)

    def test_tampered_payload_rejected(self, issuer, claims):
        token = issuer.issue(TokenKind.ACCESS, claims)
        header, payload, sig = token.split(".")
        body = json.loads(base64.urlsafe_b64decode(payload + "=" * (-len(payload) % 4)))
        body["role"] = "super_admin"
        with pytest.raises(MalformedTokenError):
            issuer.verify(f"{header}.{_b64(body)}.{sig}", TokenKind.ACCESS)

    def test_token_signed_with_other_kind_secret_rejected(self, issuer, claims):
        # An access payload signed with the refresh secret must not verify
        token = issuer.issue(TokenKind.ACCESS, claims)
        header, payload, _ = token.split(".")
        forged_sig = issuer._sign(f"{header}.{payload}", REFRESH_SECRET.encode())
        with pytest.raises(MalformedTokenError):
            issuer.verify(f"{header}.{payload}.{forged_sig}", TokenKind.ACCESS)

    def test_alg_none_rejected(self, issuer, claims):
        token = issuer.issue(TokenKind.ACCESS, claims)
        _, payload, sig = token.split(".")
        header = _b64({"alg": "none", "typ": "JWT"})
        with pytest.raises(MalformedTokenError):
            issuer.verify(f"{header}.{payload}.{sig}", TokenKind.ACCESS)

    def test_foreign_issuer_rejected(self, claims, clock):
        other = TokenIssuer(make_settings(jwt_issuer="someone.else"), clock=clock)
        token = other.issue(TokenKind.ACCESS, claims)
        issuer = TokenIssuer(make_settings(), clock=clock)
        with pytest.raises(MalformedTokenError):
            issuer.verify(token, TokenKind.ACCESS)

    @pytest.mark.parametrize("garbage", ["", "abc", "a.b", "a.b.c.d", "!!!.@@@.###", None])
    def test_malformed_input_rejected(self, issuer, garbage):
        with pytest.raises(MalformedTokenError):
            issuer.verify(garbage, TokenKind.ACCESS)

    @pytest.mark.parametrize("kind", [TokenKind.ACCESS, TokenKind.REFRESH])
    def test_non_ascii_signature_rejected(self, issuer, kind):
        header = _b64({"alg": "HS256", "typ": "JWT"})
        payload = _b64({"tokenType": kind.value})
        with pytest.raises(MalformedTokenError):
            issuer.verify(f"{header}.{payload}.é", kind)
        assert issuer.peek(f"{header}.{payload}.é") is None

    def test_missing_identity_claims_rejected(self, issuer):
        header = _b64({"alg": "HS256", "typ": "JWT"})
        payload = _b64(
            {
                "tokenType": "access",
                "iss": "kyokwon119.app",
                "aud": "kyokwon119.users",
                "iat": 1,
                "exp": 4_000_000_000,
            }
        )
        sig = issuer._sign(f"{header}.{payload}", ACCESS_SECRET.encode())
        with pytest.raises(MalformedTokenError):
            issuer.verify(f"{header}.{payload}.{sig}", TokenKind.ACCESS)

    def test_refresh_issues_new_pair_on_same_session(self, issuer, claims, clock):
        pair = issuer.issue_pair(claims)
        clock.advance(60)
        outcome = issuer.refresh(pair.refresh_token)

        assert outcome.pair.session_id == pair.session_id
        assert outcome.pair.refresh_token != pair.refresh_token
        assert outcome.consumed.session_id == pair.session_id
        renewed = issuer.verify(outcome.pair.access_token, TokenKind.ACCESS)
        assert renewed.device_id == claims.device_id
        assert renewed.ip_address == claims.ip_address

    def test_peek_does_not_verify(self, issuer, claims):
        token = issuer.issue(TokenKind.REFRESH, claims)
        assert issuer.peek(token)["tokenType"] == "refresh"
        assert issuer.peek("not-a-token") is None
