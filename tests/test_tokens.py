"""Unit tests for the token service.

Covers issue/verify round trips, expiry, token-type separation and the
rejection of forged, re-signed and malformed tokens.
"""

import json
from datetime import timedelta
from unittest.mock import patch

import pytest

from nexora.service.tokens import TokenService


@pytest.fixture
def tokens(clock):
    return TokenService(
        "unit-test-signing-secret-0123456789",
        issuer="nexora",
        audience="nexora-clients",
        clock=clock,
    )


def _split(token):
    header, payload, signature = token.split(".")
    return header, payload, signature


class TestIssueAndVerify:
    def test_access_token_round_trip(self, tokens):
        claim = tokens.verify_access_token(tokens.issue_access_token("user-1"))

        assert claim is not None
        assert claim.user_id == "user-1"
        assert claim.token_type == "access"
        assert claim.expires_at - claim.issued_at == timedelta(hours=24)
        assert claim.jti

    def test_refresh_token_round_trip(self, tokens):
        claim = tokens.verify_refresh_token(tokens.issue_refresh_token("user-1"))

        assert claim is not None
        assert claim.token_type == "refresh"
        assert claim.expires_at - claim.issued_at == timedelta(days=30)

    def test_each_token_gets_unique_jti(self, tokens):
        first = tokens.verify_access_token(tokens.issue_access_token("user-1"))
        second = tokens.verify_access_token(tokens.issue_access_token("user-1"))

        assert first.jti != second.jti


class TestExpiry:
    def test_access_token_valid_until_just_before_expiry(self, tokens, clock):
        token = tokens.issue_access_token("user-1")
        clock.advance(hours=23, minutes=59, seconds=59)

        assert tokens.verify_access_token(token) is not None

    def test_access_token_invalid_at_expiry(self, tokens, clock):
        token = tokens.issue_access_token("user-1")
        clock.advance(hours=24)

        assert tokens.verify_access_token(token) is None

    def test_refresh_token_invalid_after_expiry(self, tokens, clock):
        token = tokens.issue_refresh_token("user-1")
        clock.advance(days=30, seconds=1)

        assert tokens.verify_refresh_token(token) is None

    def test_challenge_token_lasts_five_minutes(self, tokens, clock):
        token = tokens.issue_challenge_token("user-1")
        clock.advance(minutes=4, seconds=59)
        assert tokens.verify_challenge_token(token) is not None

        clock.advance(seconds=1)
        assert tokens.verify_challenge_token(token) is None


class TestTokenTypes:
    def test_refresh_token_is_not_an_access_token(self, tokens):
        assert tokens.verify_access_token(tokens.issue_refresh_token("user-1")) is None

    def test_access_token_is_not_a_refresh_token(self, tokens):
        assert tokens.verify_refresh_token(tokens.issue_access_token("user-1")) is None

    def test_access_token_is_not_a_challenge(self, tokens):
        assert tokens.verify_challenge_token(tokens.issue_access_token("user-1")) is None


class TestRejection:
    def test_forged_signature_rejected(self, tokens):
        header, payload, signature = _split(tokens.issue_access_token("user-1"))
        forged = f"{header}.{payload}.{'A' * len(signature)}"

        assert tokens.verify_access_token(forged) is None

    def test_modified_payload_rejected(self, tokens):
        header, payload, signature = _split(tokens.issue_access_token("user-1"))
        claims = json.loads(TokenService._decode_segment(payload))
        claims["sub"] = "admin-user"
        tampered = TokenService._encode_segment(json.dumps(claims).encode())

        assert tokens.verify_access_token(f"{header}.{tampered}.{signature}") is None

    def test_other_secret_rejected(self, tokens, clock):
        other = TokenService("a-completely-different-secret", clock=clock)

        assert tokens.verify_access_token(other.issue_access_token("user-1")) is None

    def test_other_audience_rejected(self, tokens, clock):
        other = TokenService(
            "unit-test-signing-secret-0123456789", audience="someone-else", clock=clock
        )

        assert tokens.verify_access_token(other.issue_access_token("user-1")) is None

    def test_alg_none_rejected_and_logged(self, tokens):
        _, payload, _ = _split(tokens.issue_access_token("user-1"))
        header = TokenService._encode_segment(b'{"alg":"none","typ":"JWT"}')

        with patch("nexora.service.tokens.logger") as mock_logger:
            assert tokens.verify_access_token(f"{header}.{payload}.") is None

        mock_logger.warning.assert_called_once()
        assert mock_logger.warning.call_args[0][0] == "jwt_invalid_algorithm"

    @pytest.mark.parametrize(
        "token",
        ["", "not-a-token", "a.b", "a.b.c.d", "!!!.???.***"],
    )
    def test_malformed_tokens_rejected(self, tokens, token):
        assert tokens.verify_access_token(token) is None

    @pytest.mark.parametrize("segment", ["signature", "payload"])
    @pytest.mark.parametrize("junk", ["é", "١٢", "\ud800"])
    def test_non_ascii_segments_rejected(self, tokens, segment, junk):
        header, payload, signature = _split(tokens.issue_access_token("user-1"))
        if segment == "signature":
            token = f"{header}.{payload}.{junk}"
        else:
            token = f"{header}.{payload}{junk}.{signature}"

        assert tokens.verify_access_token(token) is None
        assert tokens.verify_refresh_token(token) is None
        assert tokens.verify_challenge_token(token) is None


class TestConstruction:
    def test_empty_secret_is_a_startup_error(self):
        with pytest.raises(ValueError):
            TokenService("")
