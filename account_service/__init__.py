"""User account service - Backend.

Registration, login, token refresh, profile management and role-gated
admin listing over a MongoDB document store.

Core concepts:
- An *account* is identified by an opaque id; username and email are unique.
- Short-lived access tokens authenticate requests; one long-lived refresh
  token per account is stored server-side so it can be revoked.
- Accounts are soft-deleted (deactivated), never removed.

See README for setup and usage.
"""

__all__ = ["__version__"]

__version__ = "0.1.0"
