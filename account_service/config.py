import os
import re
from dataclasses import dataclass
from typing import Mapping, Optional
from urllib.parse import urlparse

from dotenv import load_dotenv

from account_service.errors import ConfigurationError

# Optional: load a local .env file if present.
load_dotenv()


DEV_JWT_SECRET = "dev_change_me"
DEFAULT_MONGODB_URI = "mongodb://localhost:27017/learning-platform"
DEFAULT_DB_NAME = "learning-platform"

# Options that must be set explicitly when APP_ENV=production.
REQUIRED_IN_PRODUCTION = ("MONGODB_URI", "AUTH_JWT_SECRET")

_DURATION_RE = re.compile(r"^\s*(\d+)\s*([smhd]?)\s*$", re.IGNORECASE)
_DURATION_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400}


def _env_int(env: Mapping[str, str], name: str, default: int, *, minimum: int = 0) -> int:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")
    if value < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got {value}")
    return value


def parse_duration(raw: str) -> int:
    """Parse '45s', '30m', '24h', '7d' or bare seconds into seconds."""
    m = _DURATION_RE.match(raw or "")
    if not m:
        raise ConfigurationError(f"Invalid duration: {raw!r}")
    seconds = int(m.group(1)) * _DURATION_UNITS[m.group(2).lower()]
    if seconds <= 0:
        raise ConfigurationError(f"Duration must be positive: {raw!r}")
    return seconds


def _db_name_from_uri(uri: str) -> str:
    path = (urlparse(uri).path or "").lstrip("/")
    return path or DEFAULT_DB_NAME


@dataclass(frozen=True)
class Config:
    """Runtime configuration.

    Built once at startup by :func:`load_config` and never mutated.
    Do not hardcode secrets in source code.
    """

    APP_ENV: str = "development"
    LOG_LEVEL: str = "INFO"

    # -----------------
    # Auth (JWT)
    # -----------------
    # In development this defaults to a fixed string so you can get started.
    # In production AUTH_JWT_SECRET is required (see load_config).
    AUTH_JWT_SECRET: str = DEV_JWT_SECRET
    AUTH_JWT_ISSUER: str = "learning-platform"
    AUTH_ACCESS_TOKEN_TTL_SECONDS: int = 24 * 3600
    AUTH_REFRESH_TOKEN_TTL_SECONDS: int = 7 * 24 * 3600

    # pbkdf2_sha256 iteration count; higher is slower and harder to brute force.
    AUTH_HASH_ROUNDS: int = 29000

    # Bootstrap an admin account at startup if none exists (disabled when blank).
    AUTH_BOOTSTRAP_ADMIN_USERNAME: Optional[str] = None
    AUTH_BOOTSTRAP_ADMIN_EMAIL: Optional[str] = None
    AUTH_BOOTSTRAP_ADMIN_PASSWORD: Optional[str] = None

    # -----------------
    # MongoDB
    # -----------------
    MONGODB_URI: str = DEFAULT_MONGODB_URI
    MONGODB_DB: str = DEFAULT_DB_NAME
    DB_MAX_POOL_SIZE: int = 10
    DB_MIN_POOL_SIZE: int = 5
    # Timeouts are generous for containerized deployments.
    DB_SERVER_SELECTION_TIMEOUT_MS: int = 30000
    DB_SOCKET_TIMEOUT_MS: int = 45000
    # Initial connect: attempt N times, waiting DB_RETRY_DELAY_MS * attempt in between.
    DB_MAX_RETRIES: int = 5
    DB_RETRY_DELAY_MS: int = 5000

    @property
    def is_production(self) -> bool:
        return self.APP_ENV == "production"


def load_config(environ: Optional[Mapping[str, str]] = None) -> Config:
    """Build a Config from the environment.

    Fails fast in production when a critical option is missing instead of
    silently falling back to a development default.
    """

    env = os.environ if environ is None else environ
    app_env = (env.get("APP_ENV") or "development").strip().lower()

    missing = [name for name in REQUIRED_IN_PRODUCTION if not (env.get(name) or "").strip()]
    if missing and app_env == "production":
        raise ConfigurationError(f"Missing required environment variables: {', '.join(missing)}")

    uri = (env.get("MONGODB_URI") or "").strip() or DEFAULT_MONGODB_URI
    max_pool = _env_int(env, "DB_MAX_POOL_SIZE", 10, minimum=1)
    # Only an explicit minimum can conflict with the maximum.
    min_pool = _env_int(env, "DB_MIN_POOL_SIZE", min(5, max_pool))
    if min_pool > max_pool:
        raise ConfigurationError(f"DB_MIN_POOL_SIZE ({min_pool}) exceeds DB_MAX_POOL_SIZE ({max_pool})")

    return Config(
        APP_ENV=app_env,
        LOG_LEVEL=(env.get("LOG_LEVEL") or "INFO").strip().upper(),
        AUTH_JWT_SECRET=(env.get("AUTH_JWT_SECRET") or "").strip() or DEV_JWT_SECRET,
        AUTH_JWT_ISSUER=(env.get("AUTH_JWT_ISSUER") or "").strip() or "learning-platform",
        AUTH_ACCESS_TOKEN_TTL_SECONDS=parse_duration(env.get("AUTH_ACCESS_TOKEN_TTL") or "24h"),
        AUTH_REFRESH_TOKEN_TTL_SECONDS=parse_duration(env.get("AUTH_REFRESH_TOKEN_TTL") or "7d"),
        AUTH_HASH_ROUNDS=_env_int(env, "AUTH_HASH_ROUNDS", 29000, minimum=1),
        AUTH_BOOTSTRAP_ADMIN_USERNAME=(env.get("AUTH_BOOTSTRAP_ADMIN_USERNAME") or "").strip() or None,
        AUTH_BOOTSTRAP_ADMIN_EMAIL=(env.get("AUTH_BOOTSTRAP_ADMIN_EMAIL") or "").strip() or None,
        AUTH_BOOTSTRAP_ADMIN_PASSWORD=env.get("AUTH_BOOTSTRAP_ADMIN_PASSWORD") or None,
        MONGODB_URI=uri,
        MONGODB_DB=(env.get("MONGODB_DB") or "").strip() or _db_name_from_uri(uri),
        DB_MAX_POOL_SIZE=max_pool,
        DB_MIN_POOL_SIZE=min_pool,
        DB_SERVER_SELECTION_TIMEOUT_MS=_env_int(env, "DB_SERVER_SELECTION_TIMEOUT_MS", 30000, minimum=1),
        DB_SOCKET_TIMEOUT_MS=_env_int(env, "DB_SOCKET_TIMEOUT_MS", 45000, minimum=1),
        DB_MAX_RETRIES=_env_int(env, "DB_MAX_RETRIES", 5, minimum=1),
        DB_RETRY_DELAY_MS=_env_int(env, "DB_RETRY_DELAY_MS", 5000),
    )
