from __future__ import annotations

import logging
from typing import Any, Callable, Iterable, Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pymongo.database import Database

from account_service.config import Config
from account_service.errors import (
    AccountServiceError,
    Forbidden,
    InvalidOrExpiredToken,
    MissingToken,
)
from account_service.models import Identity

from .crud import find_account
from .security import ACCESS_TOKEN_TYPE, decode_token


logger = logging.getLogger(__name__)

_bearer = HTTPBearer(auto_error=False)


def _bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise MissingToken()
    scheme, _, token = authorization.strip().partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token:
        raise MissingToken()
    return token


def authenticate(db: Database, cfg: Config, authorization: Optional[str]) -> Identity:
    """Resolve an ``Authorization: Bearer <token>`` header to a live identity.

    A valid, unexpired token is not enough: the account is re-read and must
    still exist and be active, so deleted accounts are locked out at once.
    """
    return authenticate_token(db, cfg, _bearer_token(authorization))


def authenticate_token(db: Database, cfg: Config, token: str) -> Identity:
    claims = decode_token(
        token=token,
        secret=cfg.AUTH_JWT_SECRET,
        issuer=cfg.AUTH_JWT_ISSUER,
        expected_type=ACCESS_TOKEN_TYPE,
    )

    account = find_account(db, claims.get("sub"))
    if account is None or not account.is_active:
        logger.warning("Authentication rejected: account id=%s missing or inactive", claims.get("sub"))
        raise InvalidOrExpiredToken()
    return Identity.from_account(account)


def optional_identity(db: Database, cfg: Config, authorization: Optional[str]) -> Optional[Identity]:
    """Best-effort variant of :func:`authenticate`: failures mean anonymous."""
    if not authorization:
        return None
    try:
        return authenticate(db, cfg, authorization)
    except AccountServiceError:
        return None


def authorize(identity: Identity, allowed_roles: Iterable[str]) -> bool:
    return identity.has_role(allowed_roles)


def authorize_owner_or_role(identity: Identity, owner_id: Any, allowed_roles: Iterable[str]) -> bool:
    if owner_id is not None and str(owner_id) == identity.account_id:
        return True
    return authorize(identity, allowed_roles)


def ensure_authorized(identity: Identity, allowed_roles: Iterable[str], *, owner_id: Any = None) -> Identity:
    roles = list(allowed_roles)
    allowed = (
        authorize_owner_or_role(identity, owner_id, roles)
        if owner_id is not None
        else authorize(identity, roles)
    )
    if not allowed:
        logger.warning("Forbidden: account id=%s role=%s needs one of %s", identity.account_id, identity.role, roles)
        raise Forbidden()
    return identity


# --- FastAPI dependencies ---


def get_config(request: Request) -> Config:
    return request.app.state.cfg


def get_db(request: Request) -> Database:
    return request.app.state.connector.database


def get_current_identity(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
    db: Database = Depends(get_db),
    cfg: Config = Depends(get_config),
) -> Identity:
    # HTTPBearer yields None for a missing header or a non-Bearer scheme.
    if credentials is None:
        raise MissingToken()
    return authenticate_token(db, cfg, credentials.credentials)


def get_optional_identity(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
    db: Database = Depends(get_db),
    cfg: Config = Depends(get_config),
) -> Optional[Identity]:
    if credentials is None:
        return None
    try:
        return authenticate_token(db, cfg, credentials.credentials)
    except AccountServiceError:
        return None


def require_roles(*roles: str) -> Callable[..., Identity]:
    """Dependency factory: authenticated AND holding one of ``roles``."""

    def _dep(identity: Identity = Depends(get_current_identity)) -> Identity:
        return ensure_authorized(identity, roles)

    return _dep


def require_admin(identity: Identity = Depends(get_current_identity)) -> Identity:
    return ensure_authorized(identity, ("admin",))
