from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Optional

from account_service.util.time import to_iso


class Role(str, Enum):
    STUDENT = "student"
    INSTRUCTOR = "instructor"
    ADMIN = "admin"


ROLES: FrozenSet[str] = frozenset(r.value for r in Role)
DEFAULT_ROLE = Role.STUDENT.value

THEMES: FrozenSet[str] = frozenset({"light", "dark", "auto"})


def default_preferences() -> Dict[str, Any]:
    return {"notifications": {"email": True, "push": True}, "theme": "auto"}


@dataclass(frozen=True)
class Account:
    """Persisted account record, secrets included.

    Never hand this to a client; project it with :meth:`view` first.
    """

    id: str
    username: str
    email: str
    password_hash: str
    role: str = DEFAULT_ROLE
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    profile_image: Optional[str] = None
    bio: Optional[str] = None
    is_active: bool = True
    is_email_verified: bool = False
    last_login: Optional[datetime] = None
    refresh_token: Optional[str] = None
    preferences: Dict[str, Any] = field(default_factory=default_preferences)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Account":
        return cls(
            id=str(doc["_id"]),
            username=doc["username"],
            email=doc["email"],
            password_hash=doc.get("password_hash") or "",
            role=doc.get("role") or DEFAULT_ROLE,
            first_name=doc.get("first_name"),
            last_name=doc.get("last_name"),
            profile_image=doc.get("profile_image"),
            bio=doc.get("bio"),
            is_active=bool(doc.get("is_active", True)),
            is_email_verified=bool(doc.get("is_email_verified", False)),
            last_login=doc.get("last_login"),
            refresh_token=doc.get("refresh_token"),
            preferences=doc.get("preferences") or default_preferences(),
            created_at=doc.get("created_at"),
            updated_at=doc.get("updated_at"),
        )

    def view(self) -> "AccountView":
        return AccountView.from_document(
            {
                "_id": self.id,
                "username": self.username,
                "email": self.email,
                "role": self.role,
                "first_name": self.first_name,
                "last_name": self.last_name,
                "profile_image": self.profile_image,
                "bio": self.bio,
                "is_active": self.is_active,
                "is_email_verified": self.is_email_verified,
                "last_login": self.last_login,
                "preferences": self.preferences,
                "created_at": self.created_at,
                "updated_at": self.updated_at,
            }
        )


@dataclass(frozen=True)
class AccountView:
    """Outward-facing projection of an account.

    The type has no password, refresh, reset or verification token fields,
    so there is nothing to strip before returning it.
    """

    id: str
    username: str
    email: str
    role: str
    first_name: Optional[str]
    last_name: Optional[str]
    profile_image: Optional[str]
    bio: Optional[str]
    is_active: bool
    is_email_verified: bool
    last_login: Optional[datetime]
    preferences: Dict[str, Any]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "AccountView":
        # Reads only whitelisted keys; any secret fields in doc are ignored.
        return cls(
            id=str(doc["_id"]),
            username=doc["username"],
            email=doc["email"],
            role=doc.get("role") or DEFAULT_ROLE,
            first_name=doc.get("first_name"),
            last_name=doc.get("last_name"),
            profile_image=doc.get("profile_image"),
            bio=doc.get("bio"),
            is_active=bool(doc.get("is_active", True)),
            is_email_verified=bool(doc.get("is_email_verified", False)),
            last_login=doc.get("last_login"),
            preferences=doc.get("preferences") or default_preferences(),
            created_at=doc.get("created_at"),
            updated_at=doc.get("updated_at"),
        )

    @property
    def full_name(self) -> str:
        if self.first_name and self.last_name:
            return f"{self.first_name} {self.last_name}"
        return self.username

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "full_name": self.full_name,
            "role": self.role,
            "profile_image": self.profile_image,
            "bio": self.bio,
            "is_active": self.is_active,
            "is_email_verified": self.is_email_verified,
            "last_login": to_iso(self.last_login),
            "preferences": self.preferences,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
        }


@dataclass(frozen=True)
class Identity:
    """A verified caller, resolved from an access token + a live account."""

    account_id: str
    username: str
    email: str
    role: str

    @classmethod
    def from_account(cls, account: Account) -> "Identity":
        return cls(
            account_id=account.id,
            username=account.username,
            email=account.email,
            role=account.role,
        )

    def has_role(self, roles: Iterable[str]) -> bool:
        return self.role in set(roles)


@dataclass(frozen=True)
class AuthResult:
    """Outcome of register/login: the public view plus a fresh token pair."""

    user: AccountView
    access_token: str
    refresh_token: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user": self.user.to_dict(),
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": "bearer",
        }
