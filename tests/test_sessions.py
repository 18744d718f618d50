"""Tests for the session registry.

Covers token tracking and pruning, invalidation semantics, risk scoring,
the periodic sweep and aggregate stats.
"""

import threading

import pytest

from conftest import FakeClock, RecordingSink, make_context, make_settings
from sessionguard.service.audit import AuditTrail, Severity
from sessionguard.service.context import UNKNOWN_IP
from sessionguard.service.errors import RevokedTokenError, SessionNotFoundError
from sessionguard.service.revocation import RevocationLedger
from sessionguard.service.sessions import RISK_MAX, SessionRegistry, initial_risk
from sessionguard.storage.memory import MemorySessionStore
from sessionguard.storage.models import SecurityFlag, TokenKind


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def registry(clock, sink):
    settings = make_settings(session_max_age_seconds=3600, sweep_batch_size=2)
    ledger = RevocationLedger(clock=clock)
    return SessionRegistry(
        MemorySessionStore(), ledger, settings=settings, audit=AuditTrail([sink]), clock=clock
    )


def _track_pair(registry, session, clock, suffix=""):
    expires = clock.now + 600
    registry.track_token(session.id, f"access{suffix}", TokenKind.ACCESS, jti=f"ja{suffix}", expires_at=expires)
    registry.track_token(session.id, f"refresh{suffix}", TokenKind.REFRESH, jti=f"jr{suffix}", expires_at=expires)


class TestInitialRisk:
    def test_clean_login_scores_base(self):
        score, flags = initial_risk(make_context())
        assert score == 10
        assert flags == []

    def test_missing_user_agent_and_unknown_ip(self):
        score, flags = initial_risk(make_context(ip=UNKNOWN_IP, user_agent=None))
        assert score == 60
        assert flags == [SecurityFlag.SUSPICIOUS_USER_AGENT.value, SecurityFlag.UNKNOWN_IP.value]

    def test_bot_user_agent(self):
        score, flags = initial_risk(make_context(user_agent="Googlebot/2.1 (+http://www.google.com/bot.html)"))
        assert score == 50
        assert flags == [SecurityFlag.BOT_USER_AGENT.value]

    def test_score_is_capped(self):
        score, _ = initial_risk(make_context(ip=UNKNOWN_IP, user_agent="bot"))
        assert score == RISK_MAX


class TestTracking:
    def test_create_session_records_device_and_ip(self, registry):
        session = registry.create_session("u1", make_context(ip="198.51.100.1"))

        assert registry.get_session(session.id) is session
        assert session.ip_address == "198.51.100.1"
        assert session.device.platform == "Windows"
        assert session.risk_score == 10
        assert len(session.id) == 48

    def test_high_risk_login_is_audited(self, registry, sink):
        registry.create_session("u1", make_context(ip=UNKNOWN_IP, user_agent="bot"))
        assert len(sink.of_type("session_high_risk")) == 1

    def test_track_is_idempotent_and_indexed(self, registry, clock):
        session = registry.create_session("u1", make_context())
        _track_pair(registry, session, clock)
        registry.track_token(session.id, "access", TokenKind.ACCESS)

        assert len(session.access_tokens) == 1
        assert registry.session_for_token("access") is session
        assert registry.session_for_token("refresh") is session

    def test_track_on_unknown_session_raises(self, registry):
        with pytest.raises(SessionNotFoundError):
            registry.track_token("missing", "h", TokenKind.ACCESS)

    def test_hash_owned_by_other_session_rejected(self, registry):
        a = registry.create_session("u1", make_context())
        b = registry.create_session("u1", make_context())
        registry.track_token(a.id, "shared", TokenKind.ACCESS)
        with pytest.raises(ValueError):
            registry.track_token(b.id, "shared", TokenKind.ACCESS)

    def test_access_tokens_pruned_to_three_newest(self, registry):
        session = registry.create_session("u1", make_context())
        for i in range(5):
            registry.track_token(session.id, f"a{i}", TokenKind.ACCESS)

        assert [t.token_hash for t in session.access_tokens] == ["a2", "a3", "a4"]
        assert registry.session_for_token("a0") is None
        # Pruning only stops tracking; it does not deny the token
        assert not registry.ledger.is_revoked("a0")


class TestRotation:
    def test_rotation_denies_old_and_tracks_new(self, registry, clock):
        session = registry.create_session("u1", make_context())
        _track_pair(registry, session, clock)

        registry.rotate_refresh_token(session.id, "refresh", "refresh2", new_jti="jr2")

        assert registry.ledger.is_revoked("refresh")
        assert registry.ledger.is_revoked(jti="jr")
        assert [t.token_hash for t in session.refresh_tokens] == ["refresh2"]
        assert registry.session_for_token("refresh2") is session

    def test_rotating_consumed_token_fails(self, registry, clock):
        session = registry.create_session("u1", make_context())
        _track_pair(registry, session, clock)
        registry.rotate_refresh_token(session.id, "refresh", "refresh2")

        with pytest.raises(RevokedTokenError):
            registry.rotate_refresh_token(session.id, "refresh", "refresh3")

    def test_rotating_on_invalidated_session_fails(self, registry, clock):
        session = registry.create_session("u1", make_context())
        _track_pair(registry, session, clock)
        registry.invalidate_session(session.id)

        with pytest.raises(SessionNotFoundError):
            registry.rotate_refresh_token(session.id, "refresh", "refresh2")

    def test_rotation_lock_for_missing_session_is_released(self, registry):
        with registry.rotation_guard("gone-before-restart"):
            pass

        assert "gone-before-restart" not in registry._rotation_locks

    def test_rotation_lock_kept_while_session_lives(self, registry, clock):
        session = registry.create_session("u1", make_context())
        with registry.rotation_guard(session.id):
            pass

        assert session.id in registry._rotation_locks
        registry.invalidate_session(session.id)
        assert session.id not in registry._rotation_locks


class TestInvalidation:
    def test_invalidate_denies_every_tracked_token(self, registry, clock, sink):
        session = registry.create_session("u1", make_context())
        _track_pair(registry, session, clock)

        assert registry.invalidate_session(session.id, "logout") is True

        assert registry.get_session(session.id) is None
        assert registry.ledger.is_revoked("access")
        assert registry.ledger.is_revoked("refresh")
        assert registry.session_for_token("access") is None
        events = sink.of_type("session_invalidated")
        assert events[-1][3]["reason"] == "logout"
        assert "duration_seconds" in events[-1][3]

    def test_invalidate_is_idempotent(self, registry, clock):
        session = registry.create_session("u1", make_context())
        _track_pair(registry, session, clock)

        assert registry.invalidate_session(session.id) is True
        assert registry.invalidate_session(session.id) is False
        assert registry.invalidate_session("never-existed") is False

    def test_concurrent_invalidation_succeeds_once(self, registry, clock):
        session = registry.create_session("u1", make_context())
        _track_pair(registry, session, clock)
        results = []
        barrier = threading.Barrier(6)

        def worker():
            barrier.wait()
            results.append(registry.invalidate_session(session.id))

        threads = [threading.Thread(target=worker) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1

    def test_invalidate_all_for_user(self, registry, clock):
        sessions = [registry.create_session("u1", make_context()) for _ in range(3)]
        for i, s in enumerate(sessions):
            _track_pair(registry, s, clock, suffix=str(i))
        other = registry.create_session("u2", make_context())

        assert registry.invalidate_all_for_user("u1") == 3
        assert registry.list_user_sessions("u1") == []
        assert registry.get_session(other.id) is other
        assert all(registry.ledger.is_revoked(f"refresh{i}") for i in range(3))
        assert registry.invalidate_all_for_user("u1") == 0

    def test_invalidate_all_audits_each_session_at_given_severity(self, registry, sink):
        for _ in range(2):
            registry.create_session("u1", make_context())

        registry.invalidate_all_for_user("u1", "compromise", severity=Severity.HIGH)

        events = sink.of_type("session_invalidated")
        assert len(events) == 2
        assert {e[1] for e in events} == {Severity.HIGH.value}
        assert sink.of_type("user_sessions_invalidated")[0][1] == Severity.HIGH.value

    def test_invalidate_all_can_keep_current_session(self, registry, clock):
        sessions = [registry.create_session("u1", make_context()) for _ in range(3)]
        keep = sessions[1]

        assert registry.invalidate_all_for_user("u1", except_session_id=keep.id) == 2
        assert registry.list_user_sessions("u1") == [keep]

    def test_blacklisting_last_token_ends_session(self, registry, clock):
        session = registry.create_session("u1", make_context())
        _track_pair(registry, session, clock)

        assert registry.blacklist_token("access") is True
        assert registry.get_session(session.id) is session
        assert registry.blacklist_token("refresh") is True
        assert registry.get_session(session.id) is None
        assert registry.blacklist_token("refresh") is False

    def test_blacklisting_untracked_hash_still_denies(self, registry):
        assert registry.blacklist_token("stray", jti="j-stray") is True
        assert registry.ledger.is_revoked("stray")
        assert registry.ledger.is_revoked(jti="j-stray")


class TestActivity:
    def test_ip_change_flags_and_raises_risk(self, registry, clock, sink):
        session = registry.create_session("u1", make_context(ip="198.51.100.1"))
        clock.advance(10)
        registry.record_activity(session.id, make_context(ip="198.51.100.2"))

        assert session.ip_address == "198.51.100.2"
        assert session.risk_score == 30
        assert SecurityFlag.IP_CHANGE.value in session.flags
        assert sink.of_type("session_ip_changed")[0][3]["previous_ip"] == "198.51.100.1"

    def test_first_known_ip_after_unknown_is_not_a_change(self, registry, clock):
        session = registry.create_session("u1", make_context(ip=UNKNOWN_IP))
        clock.advance(10)
        registry.record_activity(session.id, make_context(ip="198.51.100.1"))

        assert session.ip_address == "198.51.100.1"
        assert SecurityFlag.IP_CHANGE.value not in session.flags
        assert session.risk_score == 30

    def test_rapid_activity(self, registry, clock):
        session = registry.create_session("u1", make_context())
        clock.advance(0.5)
        registry.record_activity(session.id, make_context())

        assert session.risk_score == 15
        assert session.flags == [SecurityFlag.RAPID_ACTIVITY.value]
        assert session.last_activity == clock.now

    def test_risk_is_monotonic_and_capped(self, registry):
        session = registry.create_session("u1", make_context(ip="198.51.100.1"))
        scores = [session.risk_score]
        for i in range(10):
            registry.record_activity(session.id, make_context(ip=f"198.51.100.{i % 2 + 2}"))
            scores.append(session.risk_score)

        assert scores == sorted(scores)
        assert scores[-1] == RISK_MAX
        assert session.flags.count(SecurityFlag.IP_CHANGE.value) == 1

    def test_activity_on_missing_session_is_noop(self, registry):
        assert registry.record_activity("missing", make_context()) is None

    def test_sessions_listed_newest_activity_first(self, registry, clock):
        first = registry.create_session("u1", make_context())
        clock.advance(5)
        second = registry.create_session("u1", make_context())
        clock.advance(5)
        registry.record_activity(first.id, make_context())

        assert registry.list_user_sessions("u1") == [first, second]


class TestSweepAndStats:
    def test_sweep_invalidates_over_age_sessions_in_batches(self, registry, clock):
        old = [registry.create_session(f"u{i}", make_context()) for i in range(5)]
        clock.advance(3601)
        fresh = registry.create_session("u9", make_context())

        report = registry.sweep()

        assert report.sessions_invalidated == 5
        assert all(registry.get_session(s.id) is None for s in old)
        assert registry.get_session(fresh.id) is fresh

    def test_sweep_purges_expired_revocations(self, registry, clock):
        registry.blacklist_token("h-short", expires_at=clock.now + 10)
        registry.blacklist_token("h-long", expires_at=clock.now + 10_000)
        clock.advance(11)

        report = registry.sweep()

        assert report.revocations_expired == 1
        assert not registry.ledger.is_revoked("h-short")
        assert registry.ledger.is_revoked("h-long")

    def test_stats(self, registry, clock):
        registry.create_session("u1", make_context())
        rapid = registry.create_session("u1", make_context())
        registry.record_activity(rapid.id, make_context())
        registry.create_session("u2", make_context(ip=UNKNOWN_IP, user_agent="bot"))
        registry.blacklist_token("stray")

        stats = registry.stats()

        assert stats.total_active_sessions == 3
        assert stats.total_active_users == 2
        assert stats.blacklisted_tokens_count == 1
        # (10 + 15 + 100) / 3 = 41.67
        assert stats.average_risk_score == 42
        assert stats.high_risk_sessions == 1

    def test_average_rounds_half_up(self, registry):
        registry.create_session("u1", make_context())
        rapid = registry.create_session("u1", make_context())
        registry.record_activity(rapid.id, make_context())

        assert registry.stats().average_risk_score == 13

    def test_empty_stats(self, registry):
        assert registry.stats().to_dict() == {
            "total_active_sessions": 0,
            "total_active_users": 0,
            "blacklisted_tokens_count": 0,
            "average_risk_score": 0,
            "high_risk_sessions": 0,
        }
