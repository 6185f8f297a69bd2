"""Unit tests for the refresh-session registry."""

from datetime import timedelta
from unittest.mock import patch

import pytest

from nexora.service.sessions import SessionRegistry, token_digest
from nexora.storage.errors import MissingUser
from nexora.storage.memory import MemoryStore
from nexora.storage.models import DeviceInfo


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), mfa_encryption_key="unit-test-key", persist=False)


@pytest.fixture
def registry(memory_store, clock):
    return SessionRegistry(memory_store, clock=clock)


@pytest.fixture
def user(memory_store):
    return memory_store.create_user("sessions@example.com", "Session User", password_hash="hash")


class TestCreateAndFind:
    def test_create_then_find(self, registry, user):
        created = registry.create(user.id, "refresh-abc", timedelta(days=30))

        found = registry.find_by_token("refresh-abc")
        assert found is not None
        assert found.id == created.id
        assert found.user_id == user.id

    def test_raw_token_is_never_stored(self, registry, memory_store, user):
        registry.create(user.id, "refresh-abc", timedelta(days=30))

        stored = list(memory_store.sessions.values())[0]
        assert stored.refresh_token_digest == token_digest("refresh-abc")
        assert stored.refresh_token_digest != "refresh-abc"

    def test_device_metadata_recorded(self, registry, user):
        device = DeviceInfo.from_user_agent(
            "Mozilla/5.0 (iPhone) AppleWebKit Safari/604.1", "203.0.113.7"
        )
        sess = registry.create(user.id, "refresh-abc", timedelta(days=1), device=device)

        assert sess.device_type == "mobile"
        assert sess.device_name == "Safari"
        assert sess.ip_address == "203.0.113.7"

    def test_unknown_token_not_found(self, registry):
        assert registry.find_by_token("never-issued") is None
        assert registry.find_by_token("") is None

    def test_expired_session_hidden_before_sweep(self, registry, user, clock):
        registry.create(user.id, "refresh-abc", timedelta(hours=1))
        clock.advance(hours=1)

        assert registry.find_by_token("refresh-abc") is None

    def test_create_for_missing_user_fails(self, registry):
        with pytest.raises(MissingUser):
            registry.create("no-such-user", "refresh-abc", timedelta(days=1))


class TestDelete:
    def test_delete_is_idempotent(self, registry, user):
        registry.create(user.id, "refresh-abc", timedelta(days=30))

        registry.delete("refresh-abc")
        registry.delete("refresh-abc")

        assert registry.find_by_token("refresh-abc") is None

    def test_delete_unknown_token_does_not_fail(self, registry):
        registry.delete("never-issued")
        registry.delete("")

    def test_delete_all_keeps_current(self, registry, user):
        registry.create(user.id, "refresh-1", timedelta(days=30))
        registry.create(user.id, "refresh-2", timedelta(days=30))
        registry.create(user.id, "refresh-3", timedelta(days=30))

        removed = registry.delete_all(user.id, except_token="refresh-2")

        assert removed == 2
        assert registry.find_by_token("refresh-2") is not None
        assert registry.find_by_token("refresh-1") is None

    def test_delete_all_only_touches_owner(self, registry, memory_store, user):
        other = memory_store.create_user("other@example.com", "Other", password_hash="hash")
        registry.create(user.id, "refresh-1", timedelta(days=30))
        registry.create(other.id, "refresh-other", timedelta(days=30))

        registry.delete_all(user.id)

        assert registry.find_by_token("refresh-other") is not None


    def test_delete_by_id_removes_one_session(self, registry, user):
        target = registry.create(user.id, "refresh-1", timedelta(days=30))
        registry.create(user.id, "refresh-2", timedelta(days=30))

        assert registry.delete_by_id(user.id, target.id) is True
        assert registry.find_by_token("refresh-1") is None
        assert registry.find_by_token("refresh-2") is not None
        assert registry.delete_by_id(user.id, target.id) is False

    def test_delete_by_id_is_scoped_to_owner(self, registry, memory_store, user):
        other = memory_store.create_user("other@example.com", "Other", password_hash="hash")
        theirs = registry.create(other.id, "refresh-other", timedelta(days=30))

        assert registry.delete_by_id(user.id, theirs.id) is False
        assert registry.find_by_token("refresh-other") is not None

    def test_delete_by_id_ignores_blank_id(self, registry, user):
        assert registry.delete_by_id(user.id, "") is False


class TestSweep:
    def test_sweep_removes_only_expired(self, registry, user, clock):
        registry.create(user.id, "short", timedelta(hours=1))
        registry.create(user.id, "long", timedelta(days=2))
        clock.advance(hours=2)

        with patch("nexora.service.sessions.logger") as mock_logger:
            removed = registry.sweep_expired()

        assert removed == 1
        assert registry.find_by_token("long") is not None
        mock_logger.info.assert_called_with("expired_sessions_swept", count=1)

    def test_sweep_never_removes_future_sessions(self, registry, memory_store, user, clock):
        for i in range(5):
            registry.create(user.id, f"refresh-{i}", timedelta(minutes=i + 1))

        assert registry.sweep_expired() == 0
        assert len(memory_store.sessions) == 5

    def test_list_active_skips_expired(self, registry, user, clock):
        keep = registry.create(user.id, "keep", timedelta(days=1))
        registry.create(user.id, "stale", timedelta(minutes=5))
        clock.advance(minutes=10)

        assert [s.id for s in registry.list_active(user.id)] == [keep.id]
