"""Session management: one live refresh token per account.

Sessions are intentionally single-device. Each register/login overwrites the
account's ``refresh_token`` field, which implicitly revokes whatever token
was stored before; logout and account deletion set it to null. There is no
list of concurrent sessions.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from pymongo.database import Database

from account_service.config import Config
from account_service.errors import InvalidOrExpiredToken, InvalidRefreshToken
from account_service.models import Account, AuthResult

from . import crud
from .security import (
    REFRESH_TOKEN_TYPE,
    PasswordHasher,
    create_access_token,
    create_refresh_token,
    decode_token,
)


logger = logging.getLogger(__name__)


def issue_access_token(cfg: Config, account: Account) -> str:
    return create_access_token(
        secret=cfg.AUTH_JWT_SECRET,
        issuer=cfg.AUTH_JWT_ISSUER,
        account_id=account.id,
        email=account.email,
        role=account.role,
        ttl_seconds=cfg.AUTH_ACCESS_TOKEN_TTL_SECONDS,
    )


def issue_refresh_token(cfg: Config, account_id: str) -> str:
    return create_refresh_token(
        secret=cfg.AUTH_JWT_SECRET,
        issuer=cfg.AUTH_JWT_ISSUER,
        account_id=account_id,
        ttl_seconds=cfg.AUTH_REFRESH_TOKEN_TTL_SECONDS,
    )


def register(
    db: Database,
    cfg: Config,
    *,
    hasher: PasswordHasher,
    username: str,
    email: str,
    password: str,
    first_name: Optional[str] = None,
    last_name: Optional[str] = None,
    role: Optional[str] = None,
) -> AuthResult:
    """Create an account and open its first session."""
    account = crud.create_account(
        db,
        hasher=hasher,
        username=username,
        email=email,
        password=password,
        first_name=first_name,
        last_name=last_name,
        role=role,
    )
    refresh_token = issue_refresh_token(cfg, account.id)
    crud.set_refresh_token(db, account.id, refresh_token)
    return AuthResult(
        user=account.view(),
        access_token=issue_access_token(cfg, account),
        refresh_token=refresh_token,
    )


def login(db: Database, cfg: Config, *, hasher: PasswordHasher, email: str, password: str) -> AuthResult:
    """Verify credentials and replace any previous session with a new one."""
    account = crud.find_by_credentials(db, hasher=hasher, email=email, password=password)
    refresh_token = issue_refresh_token(cfg, account.id)
    account = crud.record_login(db, account.id, refresh_token)
    return AuthResult(
        user=account.view(),
        access_token=issue_access_token(cfg, account),
        refresh_token=refresh_token,
    )


def refresh_access_token(db: Database, cfg: Config, refresh_token: str) -> str:
    """Exchange the account's current refresh token for a new access token.

    The token must verify cryptographically AND be the exact value stored on
    an active account, which rejects rotated, logged-out and forged tokens
    alike. The refresh token itself is not rotated here.
    """
    try:
        claims = decode_token(
            token=refresh_token,
            secret=cfg.AUTH_JWT_SECRET,
            issuer=cfg.AUTH_JWT_ISSUER,
            expected_type=REFRESH_TOKEN_TYPE,
        )
    except InvalidOrExpiredToken:
        raise InvalidRefreshToken() from None

    account = crud.find_by_refresh_token(db, claims.get("sub"), refresh_token)
    if account is None:
        logger.warning("Refresh rejected for account id=%s: token not current", claims.get("sub"))
        raise InvalidRefreshToken()
    return issue_access_token(cfg, account)


def logout(db: Database, account_id: Any) -> None:
    """Drop the stored refresh token; later refresh calls fail immediately."""
    crud.clear_refresh_token(db, account_id)
    logger.info("Logged out account id=%s", account_id)
