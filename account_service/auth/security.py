from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any, Dict, Optional

import jwt
from passlib.context import CryptContext

from account_service.errors import HashingError, InvalidOrExpiredToken, ValidationError


logger = logging.getLogger(__name__)

_JWT_ALG = "HS256"

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"


class PasswordHasher:
    """Salted pbkdf2_sha256 hashing with a tunable iteration count.

    Verification compares digests in constant time (passlib's consteq), so
    the time taken does not depend on where a mismatch occurs.
    """

    def __init__(self, rounds: int):
        self.rounds = int(rounds)
        self._ctx = CryptContext(
            schemes=["pbkdf2_sha256"],
            deprecated="auto",
            pbkdf2_sha256__default_rounds=self.rounds,
        )

    def hash(self, password: str) -> str:
        if not password:
            raise ValidationError("Password is required", field="password")
        try:
            return self._ctx.hash(password)
        except (ValueError, TypeError) as e:
            raise HashingError(f"Could not hash password: {e}") from e

    def verify(self, password: str, password_hash: str) -> bool:
        if not password:
            return False
        if not password_hash:
            raise HashingError("Stored password hash is empty")
        try:
            return self._ctx.verify(password, password_hash)
        except (ValueError, TypeError) as e:
            # Unknown scheme or malformed hash; this is a data fault, not a mismatch.
            raise HashingError(f"Could not verify password: {e}") from e

    def dummy_verify(self) -> None:
        """Spend roughly one verify's worth of time without a real hash."""
        self._ctx.dummy_verify()


@lru_cache(maxsize=8)
def get_password_hasher(rounds: int) -> PasswordHasher:
    return PasswordHasher(rounds)


def _encode(payload: Dict[str, Any], *, secret: str, issuer: str, ttl_seconds: int) -> str:
    if not secret:
        raise ValueError("jwt_secret_blank")
    if not issuer:
        raise ValueError("jwt_issuer_blank")

    now = datetime.now(timezone.utc)
    exp = now + timedelta(seconds=max(1, int(ttl_seconds)))
    claims: Dict[str, Any] = {
        **payload,
        "iss": issuer,
        "iat": int(now.timestamp()),
        "exp": int(exp.timestamp()),
    }
    return jwt.encode(claims, secret, algorithm=_JWT_ALG)


def create_access_token(
    *,
    secret: str,
    issuer: str,
    account_id: str,
    email: str,
    role: str,
    ttl_seconds: int,
) -> str:
    payload = {
        "sub": str(account_id),
        "email": email,
        "role": role,
        "typ": ACCESS_TOKEN_TYPE,
    }
    return _encode(payload, secret=secret, issuer=issuer, ttl_seconds=ttl_seconds)


def create_refresh_token(
    *,
    secret: str,
    issuer: str,
    account_id: str,
    ttl_seconds: int,
) -> str:
    # jti makes two tokens minted in the same second for the same account distinct.
    payload = {
        "sub": str(account_id),
        "typ": REFRESH_TOKEN_TYPE,
        "jti": uuid.uuid4().hex,
    }
    return _encode(payload, secret=secret, issuer=issuer, ttl_seconds=ttl_seconds)


def decode_token(
    *,
    token: str,
    secret: str,
    issuer: str,
    expected_type: Optional[str] = None,
) -> Dict[str, Any]:
    """Verify signature, expiry, issuer and (optionally) token type.

    Every failure surfaces as the same InvalidOrExpiredToken; the reason is
    only logged at debug level.
    """
    if not token:
        raise InvalidOrExpiredToken()
    try:
        claims = jwt.decode(
            token,
            secret,
            algorithms=[_JWT_ALG],
            issuer=issuer,
            options={"require": ["exp", "iat", "iss", "sub"]},
        )
    except jwt.InvalidTokenError as e:
        logger.debug("token rejected: %s", type(e).__name__)
        raise InvalidOrExpiredToken() from None

    if expected_type is not None and claims.get("typ") != expected_type:
        logger.debug("token rejected: wrong type %r", claims.get("typ"))
        raise InvalidOrExpiredToken()
    return claims
