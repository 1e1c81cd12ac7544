from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from math import ceil
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from pymongo.database import Database
from pymongo.errors import PyMongoError

from account_service import __version__
from account_service.auth import crud, sessions
from account_service.auth.deps import (
    get_config,
    get_current_identity,
    get_db,
    get_optional_identity,
    require_admin,
    require_roles,
)
from account_service.auth.security import PasswordHasher, get_password_hasher
from account_service.config import Config, load_config
from account_service.db import MongoConnector, ensure_indexes
from account_service.errors import AccountServiceError, DuplicateEmail, DuplicateUsername, ValidationError
from account_service.lifecycle import Lifecycle, get_lifecycle
from account_service.models import Identity
from account_service.util.logs import setup_logging


logger = logging.getLogger(__name__)


class RegisterRequest(BaseModel):
    username: str
    email: str
    password: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: Optional[str] = None  # student|instructor|admin, default student


class LoginRequest(BaseModel):
    email: str
    password: str


class RefreshRequest(BaseModel):
    refresh_token: str


class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str


def get_hasher(request: Request) -> PasswordHasher:
    return request.app.state.hasher


def _parse_bool_param(raw: Optional[str], name: str) -> Optional[bool]:
    if raw is None or raw == "":
        return None
    v = raw.strip().lower()
    if v in ("1", "true", "yes"):
        return True
    if v in ("0", "false", "no"):
        return False
    raise ValidationError(f"{name} must be true or false", field=name)


def bootstrap_admin_if_needed(db: Database, cfg: Config, hasher: PasswordHasher) -> Optional[Dict[str, Any]]:
    """Create the configured admin account if no active admin exists yet.

    Controlled via AUTH_BOOTSTRAP_ADMIN_USERNAME / _EMAIL / _PASSWORD; does
    nothing unless all three are set.
    """
    if not (cfg.AUTH_BOOTSTRAP_ADMIN_USERNAME and cfg.AUTH_BOOTSTRAP_ADMIN_EMAIL and cfg.AUTH_BOOTSTRAP_ADMIN_PASSWORD):
        return None
    if crud.count_admins(db) > 0:
        return None
    try:
        account = crud.create_account(
            db,
            hasher=hasher,
            username=cfg.AUTH_BOOTSTRAP_ADMIN_USERNAME,
            email=cfg.AUTH_BOOTSTRAP_ADMIN_EMAIL,
            password=cfg.AUTH_BOOTSTRAP_ADMIN_PASSWORD,
            role="admin",
        )
    except (DuplicateEmail, DuplicateUsername) as e:
        logger.warning("Admin bootstrap skipped: %s", e.message)
        return None
    return account.view().to_dict()


def _error_response(cfg: Config, err: AccountServiceError) -> JSONResponse:
    body: Dict[str, Any] = {"detail": err.code, "message": err.message}
    if err.status_code >= 500 and cfg.is_production:
        body["message"] = "Internal error"
    field = getattr(err, "field", None)
    if field:
        body["field"] = field
    headers = {"WWW-Authenticate": "Bearer"} if err.status_code == 401 else None
    return JSONResponse(status_code=err.status_code, content=body, headers=headers)


router = APIRouter(prefix="/api/users", tags=["users"])


# -----------------------------
# Public
# -----------------------------


@router.post("/register", status_code=201)
def register(
    payload: RegisterRequest,
    db: Database = Depends(get_db),
    cfg: Config = Depends(get_config),
    hasher: PasswordHasher = Depends(get_hasher),
) -> Dict[str, Any]:
    result = sessions.register(
        db,
        cfg,
        hasher=hasher,
        username=payload.username,
        email=payload.email,
        password=payload.password,
        first_name=payload.first_name,
        last_name=payload.last_name,
        role=payload.role,
    )
    logger.info("User registered: id=%s", result.user.id)
    return result.to_dict()


@router.post("/login")
def login(
    payload: LoginRequest,
    db: Database = Depends(get_db),
    cfg: Config = Depends(get_config),
    hasher: PasswordHasher = Depends(get_hasher),
) -> Dict[str, Any]:
    result = sessions.login(db, cfg, hasher=hasher, email=payload.email, password=payload.password)
    logger.info("User logged in: id=%s", result.user.id)
    return result.to_dict()


@router.post("/refresh-token")
def refresh_token(
    payload: RefreshRequest,
    db: Database = Depends(get_db),
    cfg: Config = Depends(get_config),
) -> Dict[str, Any]:
    token = sessions.refresh_access_token(db, cfg, payload.refresh_token)
    return {"access_token": token, "token_type": "bearer"}


# -----------------------------
# Authenticated
# -----------------------------


@router.get("/profile")
def get_profile(
    identity: Identity = Depends(get_current_identity),
    db: Database = Depends(get_db),
) -> Dict[str, Any]:
    return {"user": crud.get_account(db, identity.account_id).view().to_dict()}


@router.put("/profile")
def update_profile(
    fields: Dict[str, Any] = Body(...),
    identity: Identity = Depends(get_current_identity),
    db: Database = Depends(get_db),
) -> Dict[str, Any]:
    account = crud.update_account(db, identity.account_id, fields)
    logger.info("Profile updated: id=%s fields=%s", identity.account_id, sorted(fields))
    return {"user": account.view().to_dict()}


@router.put("/change-password")
def change_password(
    payload: ChangePasswordRequest,
    identity: Identity = Depends(get_current_identity),
    db: Database = Depends(get_db),
    hasher: PasswordHasher = Depends(get_hasher),
) -> Dict[str, Any]:
    crud.change_password(
        db,
        hasher=hasher,
        account_id=identity.account_id,
        current_password=payload.current_password,
        new_password=payload.new_password,
    )
    return {"ok": True}


@router.delete("/profile")
def delete_account(
    identity: Identity = Depends(get_current_identity),
    db: Database = Depends(get_db),
) -> Dict[str, Any]:
    crud.soft_delete_account(db, identity.account_id)
    return {"ok": True}


@router.post("/logout")
def logout(
    identity: Identity = Depends(get_current_identity),
    db: Database = Depends(get_db),
) -> Dict[str, Any]:
    sessions.logout(db, identity.account_id)
    return {"ok": True}


# -----------------------------
# Admin
# -----------------------------


@router.get("")
def list_users(
    page: int = Query(1),
    limit: int = Query(10),
    role: Optional[str] = None,
    is_active: Optional[str] = Query(None, alias="isActive"),
    _admin: Identity = Depends(require_admin),
    db: Database = Depends(get_db),
) -> Dict[str, Any]:
    views, total = crud.list_accounts(
        db,
        role=role,
        is_active=_parse_bool_param(is_active, "isActive"),
        page=page,
        page_size=limit,
    )
    return {
        "users": [v.to_dict() for v in views],
        "pagination": {
            "current_page": page,
            "total_pages": ceil(total / limit),
            "total_users": total,
            "has_next_page": page * limit < total,
            "has_prev_page": page > 1,
        },
    }


@router.get("/{account_id}")
def get_user(
    account_id: str,
    _staff: Identity = Depends(require_roles("admin", "instructor")),
    db: Database = Depends(get_db),
) -> Dict[str, Any]:
    return {"user": crud.get_account(db, account_id).view().to_dict()}


def startup(app: FastAPI) -> None:
    """Connect, prepare the collection and register the connector for shutdown.

    Exits the process when the datastore stays unreachable after every retry.
    """
    cfg: Config = app.state.cfg
    connector: MongoConnector = app.state.connector

    result = connector.connect()
    if not result.ok:
        logger.critical("Startup aborted: MongoDB unreachable after %d attempts", result.attempts)
        raise SystemExit(1)
    app.state.lifecycle.on_shutdown(connector.close)

    db = connector.database
    ensure_indexes(db)
    boot = bootstrap_admin_if_needed(db, cfg, app.state.hasher)
    if boot:
        logger.info("Bootstrapped initial admin account: username=%s", boot.get("username"))
    logger.info("Account service started in %s mode", cfg.APP_ENV)


def create_app(
    cfg: Optional[Config] = None,
    *,
    connector: Optional[MongoConnector] = None,
    lifecycle: Optional[Lifecycle] = None,
) -> FastAPI:
    """Build the API. Used as a uvicorn factory (see scripts/run_api.py)."""
    cfg = cfg or load_config()
    connector = connector or MongoConnector(cfg)
    lifecycle = lifecycle or get_lifecycle()
    setup_logging(cfg.LOG_LEVEL)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        startup(app)
        try:
            yield
        finally:
            app.state.lifecycle.shutdown("Application shutdown")

    app = FastAPI(title="User Account Service", version=__version__, lifespan=lifespan)
    app.state.cfg = cfg
    app.state.connector = connector
    app.state.lifecycle = lifecycle
    app.state.hasher = get_password_hasher(cfg.AUTH_HASH_ROUNDS)

    @app.exception_handler(AccountServiceError)
    async def _account_error(request: Request, exc: AccountServiceError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return _error_response(cfg, exc)

    @app.exception_handler(RequestValidationError)
    async def _request_invalid(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        first = errors[0] if errors else {}
        loc = [str(p) for p in first.get("loc", ()) if p != "body"]
        err = ValidationError(first.get("msg") or None, field=loc[-1] if loc else None)
        return _error_response(cfg, err)

    @app.exception_handler(PyMongoError)
    async def _datastore_error(request: Request, exc: PyMongoError) -> JSONResponse:
        logger.error("%s %s datastore error", request.method, request.url.path, exc_info=exc)
        return JSONResponse(status_code=500, content={"detail": "internal_error", "message": "Internal error"})

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {"status": "ok", "database": connector.state.value}

    @app.get("/")
    def root(identity: Optional[Identity] = Depends(get_optional_identity)) -> Dict[str, Any]:
        return {
            "message": "Welcome to the User Account Service API",
            "version": __version__,
            "user": identity.username if identity else None,
        }

    app.include_router(router)
    return app
