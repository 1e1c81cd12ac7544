import time

import jwt
import pytest

from account_service.auth.security import (
    ACCESS_TOKEN_TYPE,
    REFRESH_TOKEN_TYPE,
    PasswordHasher,
    create_access_token,
    create_refresh_token,
    decode_token,
    get_password_hasher,
)
from account_service.errors import HashingError, InvalidOrExpiredToken, ValidationError


SECRET = "s3cret"
ISSUER = "test-issuer"


def _access(**overrides):
    kwargs = dict(
        secret=SECRET,
        issuer=ISSUER,
        account_id="abc123",
        email="a@example.com",
        role="student",
        ttl_seconds=60,
    )
    kwargs.update(overrides)
    return create_access_token(**kwargs)


class TestPasswordHasher:
    def test_hash_is_salted_and_verifies(self, hasher):
        h1 = hasher.hash("password123")
        h2 = hasher.hash("password123")
        assert h1 != h2
        assert "password123" not in h1
        assert h1.startswith("$pbkdf2-sha256$")
        assert hasher.verify("password123", h1)
        assert hasher.verify("password123", h2)

    def test_wrong_password_fails(self, hasher):
        h = hasher.hash("password123")
        assert not hasher.verify("password124", h)
        assert not hasher.verify("", h)

    def test_rounds_are_embedded_in_hash(self):
        h = PasswordHasher(1234).hash("password123")
        assert h.split("$")[2] == "1234"

    def test_empty_password_rejected(self, hasher):
        with pytest.raises(ValidationError):
            hasher.hash("")

    def test_malformed_hash_is_a_hashing_error(self, hasher):
        with pytest.raises(HashingError):
            hasher.verify("password123", "not-a-hash")
        with pytest.raises(HashingError):
            hasher.verify("password123", "")

    def test_dummy_verify_runs(self, hasher):
        hasher.dummy_verify()

    def test_get_password_hasher_is_cached(self):
        assert get_password_hasher(1000) is get_password_hasher(1000)


class TestTokens:
    def test_access_token_round_trip(self):
        claims = decode_token(token=_access(), secret=SECRET, issuer=ISSUER, expected_type=ACCESS_TOKEN_TYPE)
        assert claims["sub"] == "abc123"
        assert claims["email"] == "a@example.com"
        assert claims["role"] == "student"
        assert claims["typ"] == ACCESS_TOKEN_TYPE
        assert claims["iss"] == ISSUER
        assert claims["exp"] - claims["iat"] == 60

    def test_refresh_tokens_are_unique(self):
        a = create_refresh_token(secret=SECRET, issuer=ISSUER, account_id="abc123", ttl_seconds=60)
        b = create_refresh_token(secret=SECRET, issuer=ISSUER, account_id="abc123", ttl_seconds=60)
        assert a != b
        claims = decode_token(token=a, secret=SECRET, issuer=ISSUER, expected_type=REFRESH_TOKEN_TYPE)
        assert claims["sub"] == "abc123"
        assert "email" not in claims

    def test_wrong_secret_rejected(self):
        with pytest.raises(InvalidOrExpiredToken):
            decode_token(token=_access(), secret="other", issuer=ISSUER)

    def test_wrong_issuer_rejected(self):
        with pytest.raises(InvalidOrExpiredToken):
            decode_token(token=_access(), secret=SECRET, issuer="someone-else")

    def test_expired_token_rejected(self):
        now = int(time.time())
        token = jwt.encode(
            {"sub": "abc123", "typ": "access", "iss": ISSUER, "iat": now - 120, "exp": now - 60},
            SECRET,
            algorithm="HS256",
        )
        with pytest.raises(InvalidOrExpiredToken):
            decode_token(token=token, secret=SECRET, issuer=ISSUER)

    def test_tampered_token_rejected(self):
        header, _, sig = _access().split(".")
        _, forged_payload, _ = _access(role="admin").split(".")
        tampered = ".".join([header, forged_payload, sig])
        with pytest.raises(InvalidOrExpiredToken):
            decode_token(token=tampered, secret=SECRET, issuer=ISSUER)

    def test_garbage_and_empty_rejected(self):
        for bad in ("", "not.a.jwt", "garbage"):
            with pytest.raises(InvalidOrExpiredToken):
                decode_token(token=bad, secret=SECRET, issuer=ISSUER)

    def test_token_type_is_enforced(self):
        refresh = create_refresh_token(secret=SECRET, issuer=ISSUER, account_id="abc123", ttl_seconds=60)
        with pytest.raises(InvalidOrExpiredToken):
            decode_token(token=refresh, secret=SECRET, issuer=ISSUER, expected_type=ACCESS_TOKEN_TYPE)
        with pytest.raises(InvalidOrExpiredToken):
            decode_token(token=_access(), secret=SECRET, issuer=ISSUER, expected_type=REFRESH_TOKEN_TYPE)

    def test_missing_required_claim_rejected(self):
        now = int(time.time())
        token = jwt.encode({"typ": "access", "iss": ISSUER, "iat": now, "exp": now + 60}, SECRET, algorithm="HS256")
        with pytest.raises(InvalidOrExpiredToken):
            decode_token(token=token, secret=SECRET, issuer=ISSUER)

    def test_blank_secret_refused_at_issue(self):
        with pytest.raises(ValueError):
            _access(secret="")
