from __future__ import annotations

import re
from typing import Any, Dict, Optional

from account_service.errors import ValidationError
from account_service.models import ROLES, THEMES


USERNAME_MIN_LEN = 3
USERNAME_MAX_LEN = 30
PASSWORD_MIN_LEN = 8
NAME_MAX_LEN = 50
BIO_MAX_LEN = 500

_USERNAME_RE = re.compile(r"^[A-Za-z0-9_]+$")
_EMAIL_RE = re.compile(r"^[\w.+-]+@[\w-]+(\.[\w-]+)*\.[a-z]{2,}$")


def normalize_email(email: str | None) -> str:
    return (email or "").strip().lower()


def normalize_username(username: str | None) -> str:
    return (username or "").strip()


def validate_username(username: str | None) -> str:
    """Return the trimmed username or raise ValidationError."""
    u = normalize_username(username)
    if not u:
        raise ValidationError("Username is required", field="username")
    if len(u) < USERNAME_MIN_LEN:
        raise ValidationError(
            f"Username must be at least {USERNAME_MIN_LEN} characters long", field="username"
        )
    if len(u) > USERNAME_MAX_LEN:
        raise ValidationError(f"Username cannot exceed {USERNAME_MAX_LEN} characters", field="username")
    if not _USERNAME_RE.match(u):
        raise ValidationError(
            "Username can only contain letters, numbers, and underscores", field="username"
        )
    return u


def validate_email(email: str | None) -> str:
    """Return the normalized (trimmed, lowercase) email or raise ValidationError."""
    e = normalize_email(email)
    if not e:
        raise ValidationError("Email is required", field="email")
    if not _EMAIL_RE.match(e):
        raise ValidationError("Please provide a valid email address", field="email")
    return e


def validate_password(password: str | None, *, field: str = "password") -> str:
    if not password:
        raise ValidationError("Password is required", field=field)
    if len(password) < PASSWORD_MIN_LEN:
        raise ValidationError(
            f"Password must be at least {PASSWORD_MIN_LEN} characters long", field=field
        )
    return password


def validate_role(role: str | None) -> str:
    r = (role or "").strip().lower()
    if r not in ROLES:
        raise ValidationError(f"Role must be one of {sorted(ROLES)}", field="role")
    return r


def validate_optional_text(value: Any, *, field: str, max_len: int) -> Optional[str]:
    """Trim an optional free-text field; blank becomes None."""
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string", field=field)
    v = value.strip()
    if not v:
        return None
    if len(v) > max_len:
        raise ValidationError(f"{field} cannot exceed {max_len} characters", field=field)
    return v


def validate_preferences(value: Any, current: Dict[str, Any]) -> Dict[str, Any]:
    """Merge a partial preferences payload into the current preferences."""
    if not isinstance(value, dict):
        raise ValidationError("preferences must be an object", field="preferences")

    unknown = set(value) - {"notifications", "theme"}
    if unknown:
        raise ValidationError(f"Unknown preference fields: {sorted(unknown)}", field="preferences")

    notifications = dict(current.get("notifications") or {})
    if "notifications" in value:
        n = value["notifications"]
        if not isinstance(n, dict) or set(n) - {"email", "push"}:
            raise ValidationError("notifications accepts only email and push", field="preferences")
        for k, v in n.items():
            if not isinstance(v, bool):
                raise ValidationError(f"notifications.{k} must be a boolean", field="preferences")
            notifications[k] = v

    theme = current.get("theme") or "auto"
    if "theme" in value:
        if value["theme"] not in THEMES:
            raise ValidationError(f"theme must be one of {sorted(THEMES)}", field="preferences")
        theme = value["theme"]

    return {"notifications": notifications, "theme": theme}
