"""Unit tests for password hashing, password changes and one-time tokens."""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from nexora.service.credentials import (
    EMAIL_VERIFICATION,
    PASSWORD_RESET,
    CredentialService,
    hash_password,
    validate_password_strength,
    verify_password,
)
from nexora.service.errors import ErrorKind
from nexora.service.sessions import SessionRegistry, token_digest
from nexora.storage.memory import MemoryStore


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), mfa_encryption_key="unit-test-key", persist=False)


@pytest.fixture
def sessions(memory_store, clock):
    return SessionRegistry(memory_store, clock=clock)


@pytest.fixture
def credentials(memory_store, sessions, clock):
    return CredentialService(memory_store, sessions, clock=clock)


@pytest.fixture
def user(memory_store):
    return memory_store.create_user(
        "creds@example.com", "Creds User", password_hash=hash_password("Password123")
    )


class TestHashing:
    def test_hash_is_salted_argon2(self):
        first = hash_password("Password123")
        second = hash_password("Password123")

        assert first.startswith("$argon2id$")
        assert first != second
        assert verify_password(first, "Password123")
        assert verify_password(second, "Password123")

    def test_wrong_password_rejected(self):
        assert verify_password(hash_password("Password123"), "Password124") is False

    @pytest.mark.parametrize("stored", [None, "", "not-a-hash", "$argon2id$broken"])
    def test_bad_stored_hash_never_raises(self, stored):
        assert verify_password(stored, "Password123") is False

    def test_empty_candidate_rejected(self):
        assert verify_password(hash_password("Password123"), "") is False


class TestPasswordStrength:
    @pytest.mark.parametrize(
        "password,message",
        [
            ("Ab1", "Password must be at least 8 characters"),
            ("A" * 64 + "b" * 64 + "1", "Password is too long"),
            ("alllowercase1", "Password must contain uppercase, lowercase, and numbers"),
            ("ALLUPPERCASE1", "Password must contain uppercase, lowercase, and numbers"),
            ("NoDigitsHere", "Password must contain uppercase, lowercase, and numbers"),
        ],
    )
    def test_weak_passwords(self, password, message):
        assert validate_password_strength(password) == message

    @pytest.mark.parametrize("password", ["Password123", "Abcdefg1", "A" * 63 + "b" * 63 + "12"])
    def test_acceptable_passwords(self, password):
        assert validate_password_strength(password) is None


class TestChangePassword:
    def test_change_succeeds(self, credentials, memory_store, user):
        result = credentials.change_password(user.id, "Password123", "NewPassword456")

        assert result.ok
        stored = memory_store.get_user(user.id)
        assert verify_password(stored.password_hash, "NewPassword456")
        assert not verify_password(stored.password_hash, "Password123")

    def test_wrong_current_password(self, credentials, memory_store, user):
        before = memory_store.get_user(user.id).password_hash

        result = credentials.change_password(user.id, "Nope12345A", "NewPassword456")

        assert result.kind is ErrorKind.UNAUTHORIZED
        assert result.message == "Current password is incorrect"
        assert memory_store.get_user(user.id).password_hash == before

    def test_same_password_rejected(self, credentials, user):
        result = credentials.change_password(user.id, "Password123", "Password123")

        assert result.kind is ErrorKind.VALIDATION_FAILED

    def test_weak_new_password_rejected(self, credentials, user):
        result = credentials.change_password(user.id, "Password123", "weak")

        assert result.kind is ErrorKind.VALIDATION_FAILED
        assert result.details == {"field": "new_password"}

    def test_oauth_only_account_forbidden(self, credentials, memory_store):
        oauth = memory_store.create_user(
            "oauth@example.com", "OAuth", oauth_provider="google", oauth_id="g-1"
        )

        result = credentials.change_password(oauth.id, "whatever", "NewPassword456")

        assert result.kind is ErrorKind.FORBIDDEN

    def test_unknown_user(self, credentials):
        result = credentials.change_password("missing", "Password123", "NewPassword456")

        assert result.kind is ErrorKind.NOT_FOUND


class TestPasswordReset:
    async def test_reset_flow_revokes_sessions(self, credentials, sessions, memory_store, user):
        sessions.create(user.id, "refresh-1", timedelta(days=30))
        sessions.create(user.id, "refresh-2", timedelta(days=30))

        token = await credentials.request_password_reset("creds@example.com")
        result = await credentials.reset_password(token, "BrandNew789")

        assert result.ok and result.value == user.id
        assert verify_password(memory_store.get_user(user.id).password_hash, "BrandNew789")
        assert sessions.list_active(user.id) == []

    async def test_token_is_single_use(self, credentials, user):
        token = await credentials.request_password_reset("creds@example.com")
        await credentials.reset_password(token, "BrandNew789")

        again = await credentials.reset_password(token, "Another789A")

        assert again.kind is ErrorKind.VALIDATION_FAILED
        assert again.message == "Invalid or expired reset token"

    async def test_token_expires_after_an_hour(self, credentials, user, clock):
        token = await credentials.request_password_reset("creds@example.com")
        clock.advance(hours=1)

        result = await credentials.reset_password(token, "BrandNew789")

        assert result.kind is ErrorKind.VALIDATION_FAILED

    async def test_only_digest_is_stored(self, credentials, memory_store, user):
        token = await credentials.request_password_reset("creds@example.com")

        assert (PASSWORD_RESET, token_digest(token)) in memory_store.one_time_tokens
        assert all(token not in key for key in memory_store.one_time_tokens)

    async def test_unknown_email_yields_no_token(self, credentials):
        assert await credentials.request_password_reset("nobody@example.com") is None

    async def test_oauth_only_account_yields_no_token(self, credentials, memory_store):
        memory_store.create_user(
            "oauth@example.com", "OAuth", oauth_provider="github", oauth_id="gh-1"
        )

        assert await credentials.request_password_reset("oauth@example.com") is None

    async def test_weak_password_does_not_burn_token(self, credentials, user):
        token = await credentials.request_password_reset("creds@example.com")

        weak = await credentials.reset_password(token, "short")
        assert weak.kind is ErrorKind.VALIDATION_FAILED

        assert (await credentials.reset_password(token, "BrandNew789")).ok

    async def test_verification_token_cannot_reset_password(self, credentials, user):
        token = (await credentials.request_email_verification(user.id)).value

        result = await credentials.reset_password(token, "BrandNew789")

        assert result.kind is ErrorKind.VALIDATION_FAILED


class TestEmailVerification:
    async def test_verify_marks_user(self, credentials, memory_store, user):
        token = (await credentials.request_email_verification(user.id)).value

        result = await credentials.verify_email(token)

        assert result.ok
        assert result.value.email_verified is True
        assert memory_store.get_user(user.id).email_verified is True

    async def test_already_verified_is_conflict(self, credentials, user):
        token = (await credentials.request_email_verification(user.id)).value
        await credentials.verify_email(token)

        again = await credentials.request_email_verification(user.id)

        assert again.kind is ErrorKind.CONFLICT
        assert again.message == "Email already verified"

    async def test_token_expires_after_a_day(self, credentials, user, clock):
        token = (await credentials.request_email_verification(user.id)).value
        clock.advance(hours=24, seconds=1)

        assert (await credentials.verify_email(token)).kind is ErrorKind.VALIDATION_FAILED

    async def test_garbage_token_rejected(self, credentials):
        assert (await credentials.verify_email("garbage")).kind is ErrorKind.VALIDATION_FAILED
        assert (await credentials.verify_email("")).kind is ErrorKind.VALIDATION_FAILED

    async def test_unknown_user(self, credentials):
        result = await credentials.request_email_verification("missing")

        assert result.kind is ErrorKind.NOT_FOUND


class TestCacheBackedTokens:
    @pytest.fixture
    def cache(self):
        cache = MagicMock()
        cache.stash_token = AsyncMock()
        cache.pop_token = AsyncMock()
        return cache

    @pytest.fixture
    def cached_credentials(self, memory_store, sessions, cache, clock):
        return CredentialService(memory_store, sessions, cache=cache, clock=clock)

    async def test_tokens_go_to_cache(self, cached_credentials, cache, memory_store, user, clock):
        token = await cached_credentials.request_password_reset("creds@example.com")

        cache.stash_token.assert_awaited_once_with(
            PASSWORD_RESET, token_digest(token), user.id, clock.now + timedelta(hours=1)
        )
        assert memory_store.one_time_tokens == {}

    async def test_consume_pops_from_cache(self, cached_credentials, cache, memory_store, user):
        cache.pop_token.return_value = user.id

        result = await cached_credentials.verify_email("opaque-token")

        cache.pop_token.assert_awaited_once_with(
            EMAIL_VERIFICATION, token_digest("opaque-token")
        )
        assert result.ok
        assert memory_store.get_user(user.id).email_verified is True

    async def test_missing_cache_entry_is_invalid(self, cached_credentials, cache):
        cache.pop_token.return_value = None

        result = await cached_credentials.reset_password("opaque-token", "BrandNew789")

        assert result.kind is ErrorKind.VALIDATION_FAILED
