"""Tests for the HS256 access token codec."""

import base64
import json

import pytest

from authcore.service.errors import AuthFailure, FailureKind
from authcore.service.tokens import AccessTokenCodec
from authcore.storage.models import AccessClaims

from conftest import TEST_SECRET


def _b64(data: dict) -> str:
    raw = json.dumps(data, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


@pytest.fixture
def codec(clock):
    return AccessTokenCodec(TEST_SECRET, 60 * 60 * 1000, clock)


class TestIssueAndVerify:
    def test_round_trip_before_expiry(self, codec, clock):
        """A freshly issued token verifies to its subject and email."""
        token = codec.issue("acct-1", "a@x.com")

        claims = codec.verify(token)

        assert isinstance(claims, AccessClaims)
        assert claims.account_id == "acct-1"
        assert claims.email == "a@x.com"
        assert claims.expires_at - claims.issued_at == 3600
        assert claims.issued_at == int(clock.now().timestamp())

    def test_token_is_three_base64url_segments(self, codec):
        token = codec.issue("acct-1", "a@x.com")

        parts = token.split(".")
        assert len(parts) == 3
        assert all("=" not in part for part in parts)
        header = json.loads(base64.urlsafe_b64decode(parts[0] + "=="))
        assert header == {"alg": "HS256", "typ": "JWT"}

    def test_verify_just_before_expiry(self, codec, clock):
        token = codec.issue("acct-1", "a@x.com")
        clock.advance(minutes=59, seconds=59)

        assert isinstance(codec.verify(token), AccessClaims)

    def test_expired_after_ttl(self, codec, clock):
        """Once the TTL has elapsed the token is rejected as expired."""
        token = codec.issue("acct-1", "a@x.com")
        clock.advance(hours=1)

        result = codec.verify(token)

        assert isinstance(result, AuthFailure)
        assert result.kind == FailureKind.TOKEN_EXPIRED
        assert result.is_authentication_failure

    def test_leeway_extends_acceptance(self, clock):
        codec = AccessTokenCodec(TEST_SECRET, 1000, clock, leeway_seconds=30)
        token = codec.issue("acct-1", "a@x.com")
        clock.advance(seconds=20)

        assert isinstance(codec.verify(token), AccessClaims)

        clock.advance(seconds=11)
        assert codec.verify(token).kind == FailureKind.TOKEN_EXPIRED

    def test_different_key_is_signature_invalid(self, codec, clock):
        token = codec.issue("acct-1", "a@x.com")
        other = AccessTokenCodec("another-signing-secret-of-sufficient-len", 3600000, clock)

        result = other.verify(token)

        assert result.kind == FailureKind.SIGNATURE_INVALID

    def test_empty_secret_rejected(self, clock):
        with pytest.raises(ValueError):
            AccessTokenCodec("", 1000, clock)


class TestRejections:
    @pytest.mark.parametrize("token", [None, "", "   "])
    def test_empty_token(self, codec, token):
        assert codec.verify(token).kind == FailureKind.TOKEN_CLAIMS_EMPTY

    @pytest.mark.parametrize(
        "token",
        [
            "only-one-segment",
            "two.segments",
            "a.b.c.d",
            "!!!.@@@.###",
        ],
    )
    def test_malformed(self, codec, token):
        assert codec.verify(token).kind == FailureKind.MALFORMED

    def test_non_object_header_is_malformed(self, codec):
        token = f"{_b64(['HS256'])}.{_b64({'sub': 'x'})}.sig"

        assert codec.verify(token).kind == FailureKind.MALFORMED

    def test_alg_none_is_unsupported(self, codec):
        token = f"{_b64({'alg': 'none', 'typ': 'JWT'})}.{_b64({'sub': 'x', 'email': 'e', 'exp': 9999999999})}."

        assert codec.verify(token).kind == FailureKind.TOKEN_FORMAT_UNSUPPORTED

    def test_other_typ_is_unsupported(self, codec):
        token = f"{_b64({'alg': 'HS256', 'typ': 'JWE'})}.{_b64({'sub': 'x'})}.sig"

        assert codec.verify(token).kind == FailureKind.TOKEN_FORMAT_UNSUPPORTED

    def test_tampered_payload_fails_signature(self, codec):
        header, _, signature = codec.issue("acct-1", "a@x.com").split(".")
        forged = _b64({"sub": "acct-2", "email": "b@x.com", "iat": 0, "exp": 9999999999})

        result = codec.verify(f"{header}.{forged}.{signature}")

        assert result.kind == FailureKind.SIGNATURE_INVALID

    def test_non_ascii_signature_does_not_raise(self, codec):
        header, payload, _ = codec.issue("acct-1", "a@x.com").split(".")

        result = codec.verify(f"{header}.{payload}.sïgnature")

        assert result.kind == FailureKind.SIGNATURE_INVALID

    def _signed(self, codec, payload: dict) -> str:
        header = _b64({"alg": "HS256", "typ": "JWT"})
        body = _b64(payload)
        return f"{header}.{body}.{codec._sign(f'{header}.{body}')}"

    @pytest.mark.parametrize(
        "payload",
        [
            {"email": "a@x.com", "exp": 9999999999},
            {"sub": "", "email": "a@x.com", "exp": 9999999999},
            {"sub": "acct-1", "exp": 9999999999},
            {"sub": "acct-1", "email": "a@x.com"},
            {"sub": "acct-1", "email": "a@x.com", "exp": "tomorrow"},
            {"sub": "acct-1", "email": "a@x.com", "exp": True},
        ],
    )
    def test_missing_claims(self, codec, payload):
        assert codec.verify(self._signed(codec, payload)).kind == FailureKind.TOKEN_CLAIMS_EMPTY

    def test_empty_email_claim_is_accepted(self, codec):
        """Legacy Kakao accounts carry an empty email and still authenticate."""
        token = codec.issue("acct-1", "")

        claims = codec.verify(token)

        assert isinstance(claims, AccessClaims)
        assert claims.email == ""
