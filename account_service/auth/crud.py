from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from account_service.db import ACCOUNTS
from account_service.errors import (
    DuplicateEmail,
    DuplicateUsername,
    InvalidCredentials,
    InvalidCurrentPassword,
    NotFound,
    ValidationError,
)
from account_service.models import DEFAULT_ROLE, Account, AccountView, default_preferences
from account_service.util.normalization import (
    BIO_MAX_LEN,
    NAME_MAX_LEN,
    normalize_email,
    validate_email,
    validate_optional_text,
    validate_password,
    validate_preferences,
    validate_role,
    validate_username,
)
from account_service.util.time import utcnow

from .security import PasswordHasher


logger = logging.getLogger(__name__)

# Fields a profile update may touch. Everything else has a dedicated operation
# (password, refresh token) or is not user-editable (email, role, flags).
UPDATABLE_FIELDS = frozenset({"username", "first_name", "last_name", "profile_image", "bio", "preferences"})
PROTECTED_FIELDS = frozenset(
    {
        "password",
        "password_hash",
        "email",
        "role",
        "refresh_token",
        "is_active",
        "is_email_verified",
        "last_login",
        "created_at",
        "updated_at",
        "_id",
        "id",
    }
)

# Secrets never leave the store in listings.
_PUBLIC_PROJECTION = {"password_hash": 0, "refresh_token": 0}

MAX_PAGE_SIZE = 100


def _accounts(db: Database):
    return db[ACCOUNTS]


def _object_id(account_id: Any) -> Optional[ObjectId]:
    if isinstance(account_id, ObjectId):
        return account_id
    try:
        return ObjectId(str(account_id))
    except (InvalidId, TypeError):
        return None


def _duplicate_error(err: DuplicateKeyError) -> Exception:
    details = err.details or {}
    fields = set((details.get("keyPattern") or details.get("keyValue") or {}).keys())
    if not fields:
        # Older servers only report the index name in the message.
        fields = {"email"} if "email" in str(err) else {"username"}
    return DuplicateEmail() if "email" in fields else DuplicateUsername()


def create_account(
    db: Database,
    *,
    hasher: PasswordHasher,
    username: str,
    email: str,
    password: str,
    first_name: Optional[str] = None,
    last_name: Optional[str] = None,
    role: Optional[str] = None,
) -> Account:
    u = validate_username(username)
    e = validate_email(email)
    validate_password(password)
    r = validate_role(role) if role else DEFAULT_ROLE
    first = validate_optional_text(first_name, field="first_name", max_len=NAME_MAX_LEN)
    last = validate_optional_text(last_name, field="last_name", max_len=NAME_MAX_LEN)

    # One round trip for both uniqueness checks; the unique indexes catch races.
    existing = _accounts(db).find_one({"$or": [{"email": e}, {"username": u}]}, {"email": 1, "username": 1})
    if existing is not None:
        if existing.get("email") == e:
            raise DuplicateEmail()
        raise DuplicateUsername()

    now = utcnow()
    doc: Dict[str, Any] = {
        "username": u,
        "email": e,
        "password_hash": hasher.hash(password),
        "first_name": first,
        "last_name": last,
        "role": r,
        "profile_image": None,
        "bio": None,
        "is_active": True,
        "is_email_verified": False,
        "last_login": None,
        "refresh_token": None,
        "preferences": default_preferences(),
        "created_at": now,
        "updated_at": now,
    }
    try:
        res = _accounts(db).insert_one(doc)
    except DuplicateKeyError as err:
        raise _duplicate_error(err) from None

    doc["_id"] = res.inserted_id
    logger.info("Created account id=%s role=%s", res.inserted_id, r)
    return Account.from_document(doc)


def find_by_credentials(db: Database, *, hasher: PasswordHasher, email: str, password: str) -> Account:
    """Authenticate an active account by email + password.

    Raises the same InvalidCredentials whether the email is unknown or the
    password is wrong, so callers cannot tell which accounts exist.
    """
    if not password:
        # verify() short-circuits on an empty password; spend the same time either way.
        hasher.dummy_verify()
        raise InvalidCredentials()
    doc = _accounts(db).find_one({"email": normalize_email(email), "is_active": True})
    if doc is None:
        hasher.dummy_verify()
        raise InvalidCredentials()
    if not hasher.verify(password, doc.get("password_hash") or ""):
        raise InvalidCredentials()
    return Account.from_document(doc)


def find_account(db: Database, account_id: Any) -> Optional[Account]:
    oid = _object_id(account_id)
    if oid is None:
        return None
    doc = _accounts(db).find_one({"_id": oid})
    return Account.from_document(doc) if doc is not None else None


def get_account(db: Database, account_id: Any) -> Account:
    account = find_account(db, account_id)
    if account is None:
        raise NotFound()
    return account


def update_account(db: Database, account_id: Any, fields: Mapping[str, Any]) -> Account:
    """Apply a partial profile update.

    Password, email, role and refresh token are rejected here; they each
    have a dedicated operation.
    """
    if not isinstance(fields, Mapping):
        raise ValidationError("Update must be an object")

    protected = sorted(set(fields) & PROTECTED_FIELDS)
    if protected:
        raise ValidationError(f"Fields cannot be updated here: {', '.join(protected)}", field=protected[0])
    unknown = sorted(set(fields) - UPDATABLE_FIELDS)
    if unknown:
        raise ValidationError(f"Unknown fields: {', '.join(unknown)}", field=unknown[0])

    current = get_account(db, account_id)

    updates: Dict[str, Any] = {}
    if "username" in fields:
        u = validate_username(fields["username"])
        if u != current.username:
            taken = _accounts(db).find_one({"username": u, "_id": {"$ne": ObjectId(current.id)}}, {"_id": 1})
            if taken is not None:
                raise DuplicateUsername()
        updates["username"] = u
    if "first_name" in fields:
        updates["first_name"] = validate_optional_text(fields["first_name"], field="first_name", max_len=NAME_MAX_LEN)
    if "last_name" in fields:
        updates["last_name"] = validate_optional_text(fields["last_name"], field="last_name", max_len=NAME_MAX_LEN)
    if "profile_image" in fields:
        updates["profile_image"] = validate_optional_text(fields["profile_image"], field="profile_image", max_len=2048)
    if "bio" in fields:
        updates["bio"] = validate_optional_text(fields["bio"], field="bio", max_len=BIO_MAX_LEN)
    if "preferences" in fields:
        updates["preferences"] = validate_preferences(fields["preferences"], current.preferences)

    if not updates:
        return current

    updates["updated_at"] = utcnow()
    try:
        doc = _accounts(db).find_one_and_update(
            {"_id": ObjectId(current.id)},
            {"$set": updates},
            return_document=ReturnDocument.AFTER,
        )
    except DuplicateKeyError as err:
        raise _duplicate_error(err) from None
    if doc is None:
        raise NotFound()
    return Account.from_document(doc)


def change_password(
    db: Database,
    *,
    hasher: PasswordHasher,
    account_id: Any,
    current_password: str,
    new_password: str,
) -> None:
    account = get_account(db, account_id)
    if not current_password or not hasher.verify(current_password, account.password_hash):
        raise InvalidCurrentPassword()
    validate_password(new_password, field="new_password")

    # Only replace the hash we verified against; a concurrent change wins.
    res = _accounts(db).update_one(
        {"_id": ObjectId(account.id), "password_hash": account.password_hash},
        {"$set": {"password_hash": hasher.hash(new_password), "updated_at": utcnow()}},
    )
    if res.matched_count == 0:
        raise InvalidCurrentPassword()
    logger.info("Password changed for account id=%s", account.id)


def soft_delete_account(db: Database, account_id: Any) -> None:
    """Deactivate and drop the live session in one atomic update."""
    oid = _object_id(account_id)
    if oid is None:
        raise NotFound()
    res = _accounts(db).update_one(
        {"_id": oid},
        {"$set": {"is_active": False, "refresh_token": None, "updated_at": utcnow()}},
    )
    if res.matched_count == 0:
        raise NotFound()
    logger.info("Soft-deleted account id=%s", oid)


def list_accounts(
    db: Database,
    *,
    role: Optional[str] = None,
    is_active: Optional[bool] = None,
    page: int = 1,
    page_size: int = 10,
) -> Tuple[List[AccountView], int]:
    """One page of account views, newest first, plus the total match count.

    Soft-deleted accounts are left out unless ``is_active=False`` asks for them.
    """
    if page < 1:
        raise ValidationError("page must be >= 1", field="page")
    if page_size < 1 or page_size > MAX_PAGE_SIZE:
        raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}", field="limit")

    query: Dict[str, Any] = {"is_active": True if is_active is None else bool(is_active)}
    if role:
        query["role"] = validate_role(role)

    cursor = (
        _accounts(db)
        .find(query, _PUBLIC_PROJECTION)
        .sort([("created_at", DESCENDING), ("_id", DESCENDING)])
        .skip((page - 1) * page_size)
        .limit(page_size)
    )
    views = [AccountView.from_document(doc) for doc in cursor]
    total = _accounts(db).count_documents(query)
    return views, total


def count_admins(db: Database) -> int:
    return _accounts(db).count_documents({"role": "admin", "is_active": True})


# --- session primitives (single-document atomic updates) ---


def record_login(db: Database, account_id: str, refresh_token: str) -> Account:
    """Overwrite the stored refresh token and stamp last_login."""
    now = utcnow()
    doc = _accounts(db).find_one_and_update(
        {"_id": ObjectId(account_id), "is_active": True},
        {"$set": {"refresh_token": refresh_token, "last_login": now, "updated_at": now}},
        return_document=ReturnDocument.AFTER,
    )
    if doc is None:
        # Deactivated between credential check and here.
        raise InvalidCredentials()
    return Account.from_document(doc)


def set_refresh_token(db: Database, account_id: str, refresh_token: str) -> None:
    res = _accounts(db).update_one(
        {"_id": ObjectId(account_id)},
        {"$set": {"refresh_token": refresh_token, "updated_at": utcnow()}},
    )
    if res.matched_count == 0:
        raise NotFound()


def clear_refresh_token(db: Database, account_id: Any) -> None:
    oid = _object_id(account_id)
    if oid is None:
        raise NotFound()
    res = _accounts(db).update_one(
        {"_id": oid},
        {"$set": {"refresh_token": None, "updated_at": utcnow()}},
    )
    if res.matched_count == 0:
        raise NotFound()


def find_by_refresh_token(db: Database, account_id: Any, refresh_token: str) -> Optional[Account]:
    """Active account whose stored refresh token is exactly this value."""
    oid = _object_id(account_id)
    if oid is None or not refresh_token:
        return None
    doc = _accounts(db).find_one({"_id": oid, "refresh_token": refresh_token, "is_active": True})
    return Account.from_document(doc) if doc is not None else None
