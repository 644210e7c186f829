"""Session lifecycle tests: issue, rotate, revoke, cap and prune."""

import threading
from datetime import timedelta

import pytest

from authcore.service import sessions as sessions_module
from authcore.service.errors import (
    InvalidAccessToken,
    InvalidRefreshToken,
    NotFoundError,
)
from authcore.service.sessions import SessionManager
from authcore.storage.models import UserStatus


class RecordingLogger:
    def __init__(self):
        self.events = []

    def _record(self, level, event, **fields):
        self.events.append((level, event, fields))

    def info(self, event, **fields):
        self._record("info", event, **fields)

    def warning(self, event, **fields):
        self._record("warning", event, **fields)

    def reasons(self):
        return [f.get("reason") for _, e, f in self.events if e == "refresh_rejected"]


@pytest.fixture
def log(monkeypatch):
    recorder = RecordingLogger()
    monkeypatch.setattr(sessions_module, "logger", recorder)
    return recorder


@pytest.fixture
def capped_manager(memory_store, codec, clock):
    return SessionManager(memory_store, codec, clock=clock, max_sessions_per_user=3)


class TestIssue:
    def test_pair_and_stored_session(self, session_manager, memory_store, local_user):
        pair = session_manager.issue_initial_session(
            local_user.id, local_user.email, device_info="ios", ip_address="10.0.0.1"
        )

        assert pair.token_type == "bearer"
        assert pair.expires_in == 3600
        claims = session_manager.authenticate_access_token(pair.access_token)
        assert claims["sub"] == local_user.id

        stored = memory_store.get_session_by_token(pair.refresh_token)
        assert stored.user_id == local_user.id
        assert stored.device_info == "ios"
        assert stored.ip_address == "10.0.0.1"
        assert stored.is_active

    def test_session_expiry_matches_refresh_claim(self, session_manager, memory_store, codec, local_user):
        pair = session_manager.issue_initial_session(local_user.id, local_user.email)
        stored = memory_store.get_session_by_token(pair.refresh_token)
        claims = codec.decode_unsafe(pair.refresh_token)
        assert int(stored.expires_at.timestamp()) == claims["exp"]
        assert stored.token_id == claims["jti"]


class TestRefresh:
    def test_rotation_consumes_old_token(self, session_manager, memory_store, local_user, clock):
        first = session_manager.issue_initial_session(
            local_user.id, local_user.email, device_info="ios", ip_address="10.0.0.1"
        )
        clock.advance(minutes=10)

        second = session_manager.refresh(first.refresh_token)
        assert second.refresh_token != first.refresh_token

        old = memory_store.get_session_by_token(first.refresh_token)
        new = memory_store.get_session_by_token(second.refresh_token)
        assert not old.is_active
        assert old.last_used_at == clock.now()
        assert new.is_active
        assert new.device_info == "ios"
        assert new.ip_address == "10.0.0.1"
        assert new.expires_at == clock.now() + timedelta(days=7)

        with pytest.raises(InvalidRefreshToken):
            session_manager.refresh(first.refresh_token)

    def test_reused_token_logged(self, session_manager, local_user, log):
        pair = session_manager.issue_initial_session(local_user.id, local_user.email)
        session_manager.refresh(pair.refresh_token)

        with pytest.raises(InvalidRefreshToken):
            session_manager.refresh(pair.refresh_token)
        assert "refresh_token_reused" in [e for _, e, _ in log.events]
        assert log.reasons() == ["session_invalid"]

    def test_expiry_boundary(self, session_manager, local_user, clock, log):
        pair = session_manager.issue_initial_session(local_user.id, local_user.email)
        clock.advance(days=7)

        with pytest.raises(InvalidRefreshToken):
            session_manager.refresh(pair.refresh_token)
        assert log.reasons() == ["token_invalid"]

    def test_one_second_before_expiry_succeeds(self, session_manager, local_user, clock):
        pair = session_manager.issue_initial_session(local_user.id, local_user.email)
        clock.advance(days=7, seconds=-1)
        assert session_manager.refresh(pair.refresh_token).refresh_token

    def test_access_token_not_accepted(self, session_manager, local_user):
        pair = session_manager.issue_initial_session(local_user.id, local_user.email)
        with pytest.raises(InvalidRefreshToken):
            session_manager.refresh(pair.access_token)

    def test_token_without_session_rejected(self, session_manager, codec, local_user, log):
        token, _ = codec.issue_refresh(local_user.id)
        with pytest.raises(InvalidRefreshToken):
            session_manager.refresh(token)
        assert log.reasons() == ["session_unknown"]

    @pytest.mark.parametrize("status", [UserStatus.INACTIVE, UserStatus.SUSPENDED])
    def test_inactive_user_cannot_refresh(self, session_manager, memory_store, local_user, status, log):
        pair = session_manager.issue_initial_session(local_user.id, local_user.email)
        local_user.status = status
        memory_store.save_user(local_user)

        with pytest.raises(InvalidRefreshToken):
            session_manager.refresh(pair.refresh_token)
        assert log.reasons() == ["user_ineligible"]
        assert memory_store.get_session_by_token(pair.refresh_token).is_active

    def test_pending_verification_user_can_refresh(self, session_manager, memory_store, local_user):
        local_user.status = UserStatus.PENDING_VERIFICATION
        local_user.email_verified = False
        memory_store.save_user(local_user)
        pair = session_manager.issue_initial_session(local_user.id, local_user.email)
        assert session_manager.refresh(pair.refresh_token).access_token

    def test_deleted_user_cannot_refresh(self, session_manager, memory_store, local_user, clock):
        pair = session_manager.issue_initial_session(local_user.id, local_user.email)
        memory_store.soft_delete_user(local_user.id, clock.now())
        with pytest.raises(InvalidRefreshToken):
            session_manager.refresh(pair.refresh_token)

    def test_concurrent_refresh_has_one_winner(self, session_manager, local_user):
        pair = session_manager.issue_initial_session(local_user.id, local_user.email)
        barrier = threading.Barrier(2)
        outcomes = []
        outcomes_lock = threading.Lock()

        def worker():
            barrier.wait()
            try:
                session_manager.refresh(pair.refresh_token)
                result = "ok"
            except InvalidRefreshToken:
                result = "rejected"
            with outcomes_lock:
                outcomes.append(result)

        threads = [threading.Thread(target=worker) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        assert sorted(outcomes) == ["ok", "rejected"]
        assert len(session_manager.list_sessions(local_user.id)) == 1


class TestRevocation:
    def test_logout_is_idempotent(self, session_manager, local_user):
        pair = session_manager.issue_initial_session(local_user.id, local_user.email)
        session_manager.logout(pair.refresh_token)
        session_manager.logout(pair.refresh_token)
        session_manager.logout("never-issued")

        with pytest.raises(InvalidRefreshToken):
            session_manager.refresh(pair.refresh_token)

    def test_logout_all_counts_and_blocks_refresh(self, session_manager, local_user):
        pairs = [
            session_manager.issue_initial_session(local_user.id, local_user.email)
            for _ in range(3)
        ]
        assert session_manager.logout_all(local_user.id) == 3
        assert session_manager.logout_all(local_user.id) == 0
        for pair in pairs:
            with pytest.raises(InvalidRefreshToken):
                session_manager.refresh(pair.refresh_token)

    def test_access_token_still_valid_after_logout_all(self, session_manager, local_user):
        pair = session_manager.issue_initial_session(local_user.id, local_user.email)
        session_manager.logout_all(local_user.id)
        assert session_manager.authenticate_access_token(pair.access_token)["sub"] == local_user.id

    def test_authenticate_rejects_refresh_token(self, session_manager, local_user):
        pair = session_manager.issue_initial_session(local_user.id, local_user.email)
        with pytest.raises(InvalidAccessToken):
            session_manager.authenticate_access_token(pair.refresh_token)

    def test_list_and_revoke(self, session_manager, local_user, clock):
        session_manager.issue_initial_session(local_user.id, local_user.email, device_info="ios")
        clock.advance(seconds=1)
        session_manager.issue_initial_session(local_user.id, local_user.email, device_info="web")

        listed = session_manager.list_sessions(local_user.id)
        assert [s.device_info for s in listed] == ["web", "ios"]

        session_manager.revoke_session(local_user.id, listed[0].id)
        assert [s.device_info for s in session_manager.list_sessions(local_user.id)] == ["ios"]

    def test_revoke_foreign_session_not_found(self, session_manager, local_user):
        session_manager.issue_initial_session(local_user.id, local_user.email)
        session_id = session_manager.list_sessions(local_user.id)[0].id

        with pytest.raises(NotFoundError) as exc_info:
            session_manager.revoke_session("someone-else", session_id)
        assert exc_info.value.error_code == "session_not_found"
        assert session_manager.list_sessions(local_user.id)


class TestCap:
    def test_oldest_session_evicted(self, capped_manager, local_user, clock):
        pairs = []
        for _ in range(4):
            pairs.append(capped_manager.issue_initial_session(local_user.id, local_user.email))
            clock.advance(seconds=1)

        assert len(capped_manager.list_sessions(local_user.id)) == 3
        with pytest.raises(InvalidRefreshToken):
            capped_manager.refresh(pairs[0].refresh_token)
        assert capped_manager.refresh(pairs[3].refresh_token).access_token

    def test_same_instant_issues_respect_cap(self, capped_manager, memory_store, local_user):
        for _ in range(10):
            memory_store.deactivate_user_sessions(local_user.id)
            pairs = [
                capped_manager.issue_initial_session(local_user.id, local_user.email)
                for _ in range(4)
            ]

            assert len(capped_manager.list_sessions(local_user.id)) == 3
            with pytest.raises(InvalidRefreshToken):
                capped_manager.refresh(pairs[0].refresh_token)
            assert capped_manager.refresh(pairs[3].refresh_token).access_token

    def test_cap_is_per_device(self, capped_manager, local_user, clock):
        for _ in range(3):
            capped_manager.issue_initial_session(local_user.id, local_user.email, device_info="ios")
            clock.advance(seconds=1)
        capped_manager.issue_initial_session(local_user.id, local_user.email, device_info="web")

        assert len(capped_manager.list_sessions(local_user.id)) == 4

    def test_invalid_cap_rejected(self, memory_store, codec):
        with pytest.raises(ValueError):
            SessionManager(memory_store, codec, max_sessions_per_user=0)


class TestMaintenance:
    def test_prune_expired(self, session_manager, local_user, clock):
        session_manager.issue_initial_session(local_user.id, local_user.email)
        pair = session_manager.issue_initial_session(local_user.id, local_user.email)
        session_manager.logout(pair.refresh_token)

        assert session_manager.prune_expired() == 1
        clock.advance(days=8)
        assert session_manager.prune_expired() == 1
        assert session_manager.prune_expired() == 0

    def test_token_hints(self, session_manager, local_user, clock):
        pair = session_manager.issue_initial_session(local_user.id, local_user.email)
        assert session_manager.get_remaining_time(pair.access_token) == 3600
        assert not session_manager.is_expiring_soon(pair.access_token)

        clock.advance(minutes=56)
        assert session_manager.get_remaining_time(pair.access_token) == 240
        assert session_manager.is_expiring_soon(pair.access_token)

    def test_token_hints_tolerate_crafted_expiry(self, session_manager):
        crafted = "eyJhbGciOiAiSFMyNTYifQ.eyJleHAiOiAxZTQwMH0.x"
        assert session_manager.get_remaining_time(crafted) == 0
        assert not session_manager.is_expiring_soon(crafted)
