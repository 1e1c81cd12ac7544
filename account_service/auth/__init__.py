"""Authentication / authorization core.

- ``security``: password hashing and JWT issue/verify
- ``crud``: the account store (MongoDB ``accounts`` collection)
- ``sessions``: register/login/refresh/logout, one refresh token per account
- ``deps``: the request-boundary gate and its FastAPI dependencies

Clients authenticate with ``Authorization: Bearer <access token>``.
"""

from .deps import authenticate, authorize, authorize_owner_or_role, get_current_identity, require_admin, require_roles
from .security import PasswordHasher, get_password_hasher

__all__ = [
    "authenticate",
    "authorize",
    "authorize_owner_or_role",
    "get_current_identity",
    "require_admin",
    "require_roles",
    "PasswordHasher",
    "get_password_hasher",
]
