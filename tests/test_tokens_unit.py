"""Unit tests for the token signer and password hasher."""

import base64
import json
import time
from datetime import timedelta

import pytest

from keyward.service.errors import InvalidCredentialsError, UnauthorizedError
from keyward.service.tokens import TokenSigner
from keyward.storage.models import AdminScale

TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


def _b64(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


class TestPasswordService:
    """argon2id hashing round trips."""

    def test_hash_then_verify_accepts_same_password(self, passwords):
        digest = passwords.hash("CorrectHorse123!")
        passwords.verify(digest, "CorrectHorse123!")

    def test_hash_is_salted_and_not_plaintext(self, passwords):
        first = passwords.hash("CorrectHorse123!")
        second = passwords.hash("CorrectHorse123!")
        assert first != second
        assert "CorrectHorse123!" not in first
        assert first.startswith("$argon2id$")

    def test_wrong_password_rejected(self, passwords):
        digest = passwords.hash("CorrectHorse123!")
        with pytest.raises(InvalidCredentialsError):
            passwords.verify(digest, "wrong-password")

    def test_garbage_hash_rejected(self, passwords):
        with pytest.raises(InvalidCredentialsError):
            passwords.verify("not-a-hash", "CorrectHorse123!")


class TestTokenSigner:
    """HS256 signing and verification."""

    def test_round_trip_returns_subject(self, signer):
        token = signer.sign("user-1", timedelta(minutes=5))
        claims = signer.verify(token)
        assert claims.subject == "user-1"
        assert claims.admin_scale is None
        assert claims.token_id

    def test_admin_claim_round_trips(self, signer):
        token = signer.sign("user-1", timedelta(minutes=5), admin_scale=AdminScale.MAJOR)
        assert signer.verify(token).admin_scale == AdminScale.MAJOR

    def test_token_ids_are_unique(self, signer):
        first = signer.verify(signer.sign("user-1", timedelta(minutes=5)))
        second = signer.verify(signer.sign("user-1", timedelta(minutes=5)))
        assert first.token_id != second.token_id

    def test_expired_token_rejected(self, signer):
        token = signer.sign("user-1", timedelta(seconds=-1))
        with pytest.raises(UnauthorizedError):
            signer.verify(token)

    def test_leeway_tolerates_recent_expiry(self):
        lenient = TokenSigner(
            TEST_SECRET, issuer="keyward", audience="keyward-clients", leeway_seconds=60
        )
        token = lenient.sign("user-1", timedelta(seconds=-5))
        assert lenient.verify(token).subject == "user-1"

    def test_other_secret_rejected(self, signer):
        other = TokenSigner(
            "another-secret-another-secret-123456",
            issuer="keyward",
            audience="keyward-clients",
        )
        token = other.sign("user-1", timedelta(minutes=5))
        with pytest.raises(UnauthorizedError):
            signer.verify(token)

    def test_wrong_audience_rejected(self, signer):
        other = TokenSigner(TEST_SECRET, issuer="keyward", audience="somebody-else")
        with pytest.raises(UnauthorizedError):
            signer.verify(other.sign("user-1", timedelta(minutes=5)))

    def test_wrong_issuer_rejected(self, signer):
        other = TokenSigner(TEST_SECRET, issuer="impostor", audience="keyward-clients")
        with pytest.raises(UnauthorizedError):
            signer.verify(other.sign("user-1", timedelta(minutes=5)))

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d", "!!.??.**"])
    def test_malformed_tokens_rejected(self, signer, token):
        with pytest.raises(UnauthorizedError):
            signer.verify(token)

    def test_none_algorithm_rejected(self, signer):
        now = int(time.time())
        header = _b64({"alg": "none", "typ": "JWT"})
        payload = _b64(
            {"iss": "keyward", "aud": "keyward-clients", "sub": "user-1", "exp": now + 60}
        )
        with pytest.raises(UnauthorizedError):
            signer.verify(f"{header}.{payload}.")

    def test_tampered_payload_rejected(self, signer):
        token = signer.sign("user-1", timedelta(minutes=5))
        header, _, signature = token.split(".")
        forged = _b64(
            {
                "iss": "keyward",
                "aud": "keyward-clients",
                "sub": "user-2",
                "exp": int(time.time()) + 60,
            }
        )
        with pytest.raises(UnauthorizedError):
            signer.verify(f"{header}.{forged}.{signature}")
