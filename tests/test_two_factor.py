"""Unit tests for TOTP code generation and the two-factor gate."""

from unittest.mock import patch

import pytest

from nexora.service.credentials import hash_password
from nexora.service.errors import ErrorKind
from nexora.service.two_factor import (
    TwoFactorGate,
    _decode_secret,
    generate_secret,
    totp_code,
)
from nexora.storage.memory import MemoryStore

RFC_SECRET = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"  # b"12345678901234567890"


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), mfa_encryption_key="unit-test-key", persist=False)


@pytest.fixture
def gate(memory_store, clock):
    return TwoFactorGate(memory_store, clock=clock)


@pytest.fixture
def user(memory_store):
    return memory_store.create_user(
        "totp@example.com", "Totp User", password_hash=hash_password("Password123")
    )


@pytest.fixture
def oauth_user(memory_store):
    return memory_store.create_user(
        "oauth@example.com", "OAuth User", oauth_provider="github", oauth_id="gh-1"
    )


def _code_at(secret, clock, seconds=0):
    return totp_code(secret, clock().timestamp() + seconds)


def _enable(gate, user, clock):
    secret = gate.begin_enrollment(user.id).value.secret
    assert gate.confirm_enrollment(user.id, secret, _code_at(secret, clock)).ok
    return secret


class TestTotpCode:
    @pytest.mark.parametrize(
        "timestamp,expected",
        [
            (59, "287082"),
            (1111111109, "081804"),
            (1234567890, "005924"),
            (2000000000, "279037"),
        ],
    )
    def test_reference_vectors(self, timestamp, expected):
        assert totp_code(RFC_SECRET, timestamp) == expected

    def test_codes_are_six_digits(self):
        secret = generate_secret()
        for ts in range(0, 3000, 30):
            code = totp_code(secret, ts)
            assert len(code) == 6 and code.isdigit()

    def test_generated_secret_is_160_bits(self):
        secret = generate_secret()

        assert len(secret) == 32
        assert len(_decode_secret(secret)) == 20

    def test_invalid_secret_raises(self):
        with pytest.raises(ValueError):
            totp_code("not base32!", 59)

    def test_secret_is_case_and_space_tolerant(self):
        spaced = " ".join(RFC_SECRET[i : i + 4] for i in range(0, 32, 4)).lower()
        assert totp_code(spaced, 59) == "287082"


class TestEnrollment:
    def test_begin_returns_secret_and_uri(self, gate, user):
        result = gate.begin_enrollment(user.id)

        assert result.ok
        enrollment = result.value
        assert enrollment.display_uri.startswith("otpauth://totp/NEXORA%3Atotp%40example.com?")
        assert f"secret={enrollment.secret}" in enrollment.display_uri
        assert "issuer=NEXORA" in enrollment.display_uri

    def test_begin_stores_nothing(self, gate, user, memory_store):
        gate.begin_enrollment(user.id)

        stored = memory_store.get_user(user.id)
        assert stored.two_factor_enabled is False
        assert stored.two_factor_secret is None

    def test_confirm_enables_with_current_code(self, gate, user, memory_store, clock):
        secret = _enable(gate, user, clock)

        stored = memory_store.get_user(user.id)
        assert stored.two_factor_enabled is True
        assert stored.two_factor_secret == secret

    def test_confirm_rejects_wrong_code(self, gate, user, memory_store, clock):
        secret = gate.begin_enrollment(user.id).value.secret
        wrong = _code_at(secret, clock, seconds=600)

        result = gate.confirm_enrollment(user.id, secret, wrong)

        assert result.kind is ErrorKind.UNAUTHORIZED
        assert memory_store.get_user(user.id).two_factor_enabled is False

    @pytest.mark.parametrize(
        "code", ["12345", "1234567", "abcdef", "", "١٢٣٤٥٦", "１２３４５６"]
    )
    def test_confirm_rejects_malformed_code(self, gate, user, code):
        secret = gate.begin_enrollment(user.id).value.secret

        result = gate.confirm_enrollment(user.id, secret, code)

        assert result.kind is ErrorKind.VALIDATION_FAILED

    def test_confirm_rejects_malformed_secret(self, gate, user):
        result = gate.confirm_enrollment(user.id, "!!!!", "123456")

        assert result.kind is ErrorKind.VALIDATION_FAILED

    def test_already_enabled_is_conflict(self, gate, user, clock):
        secret = _enable(gate, user, clock)

        assert gate.begin_enrollment(user.id).kind is ErrorKind.CONFLICT
        again = gate.confirm_enrollment(user.id, secret, _code_at(secret, clock))
        assert again.kind is ErrorKind.CONFLICT

    def test_unknown_user(self, gate):
        assert gate.begin_enrollment("missing").kind is ErrorKind.NOT_FOUND
        assert gate.confirm_enrollment("missing", RFC_SECRET, "123456").kind is ErrorKind.NOT_FOUND


class TestLoginVerification:
    @pytest.mark.parametrize("seconds", [-60, -30, 0, 30, 60])
    def test_codes_within_two_steps_accepted(self, gate, user, clock, seconds):
        secret = _enable(gate, user, clock)

        assert gate.verify_login_code(user.id, _code_at(secret, clock, seconds)).ok

    @pytest.mark.parametrize("seconds", [-90, 90])
    def test_codes_beyond_two_steps_rejected(self, gate, user, clock, seconds):
        secret = _enable(gate, user, clock)

        result = gate.verify_login_code(user.id, _code_at(secret, clock, seconds))

        assert result.kind is ErrorKind.UNAUTHORIZED

    def test_surrounding_whitespace_tolerated(self, gate, user, clock):
        secret = _enable(gate, user, clock)

        assert gate.verify_login_code(user.id, f" {_code_at(secret, clock)} ").ok

    def test_non_ascii_digits_are_validation_errors(self, gate, user, clock):
        _enable(gate, user, clock)

        result = gate.verify_login_code(user.id, "١٢٣٤٥٦")

        assert result.kind is ErrorKind.VALIDATION_FAILED

    def test_not_enabled_is_conflict(self, gate, user):
        assert gate.verify_login_code(user.id, "123456").kind is ErrorKind.CONFLICT

    def test_rejection_is_logged(self, gate, user, clock):
        secret = _enable(gate, user, clock)

        with patch("nexora.service.two_factor.logger") as mock_logger:
            gate.verify_login_code(user.id, _code_at(secret, clock, seconds=600))

        mock_logger.warning.assert_called_once_with(
            "two_factor_login_code_rejected", user_id=user.id
        )


class TestDisable:
    def test_disable_with_password(self, gate, user, memory_store, clock):
        _enable(gate, user, clock)

        assert gate.disable(user.id, "Password123").ok
        stored = memory_store.get_user(user.id)
        assert stored.two_factor_enabled is False
        assert stored.two_factor_secret is None

    def test_wrong_password_keeps_enabled(self, gate, user, memory_store, clock):
        _enable(gate, user, clock)

        result = gate.disable(user.id, "WrongPass999")

        assert result.kind is ErrorKind.UNAUTHORIZED
        assert memory_store.get_user(user.id).two_factor_enabled is True

    def test_not_enabled_is_conflict(self, gate, user):
        assert gate.disable(user.id, "Password123").kind is ErrorKind.CONFLICT

    def test_oauth_only_account_forbidden(self, gate, oauth_user):
        assert gate.disable(oauth_user.id, "anything").kind is ErrorKind.FORBIDDEN

    def test_reenroll_after_disable(self, gate, user, clock):
        _enable(gate, user, clock)
        gate.disable(user.id, "Password123")

        assert gate.begin_enrollment(user.id).ok
