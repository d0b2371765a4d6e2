# Shared_Utils/url_helper.py
import os
import urllib.parse
from typing import Optional

ASYNC_DRIVER = "postgresql+asyncpg://"


def normalize_driver(url: str) -> str:
    """Point postgres URLs at the asyncpg driver; leave other schemes (sqlite+aiosqlite) alone."""
    if url.startswith("postgres://"):
        return url.replace("postgres://", ASYNC_DRIVER, 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", ASYNC_DRIVER, 1)
    return url


def is_sqlite_url(url: str) -> bool:
    return url.startswith("sqlite")


def percent_encode(s: str) -> str:
    # Encode username/password safely
    return urllib.parse.quote_plus(s or "")


def build_database_url_from_env() -> Optional[str]:
    """
    Precedence:
      1) DATABASE_URL (normalized to async driver)
      2) DB_* pieces (DB_HOST/DB_PORT/DB_NAME/DB_USER/DB_PASSWORD), only when DB_NAME is set

    Returns None when neither is configured.
    """
    env_url = os.getenv("DATABASE_URL")
    if env_url:
        return normalize_driver(env_url.strip())

    name = os.getenv("DB_NAME")
    if not name:
        return None

    # Default host depends on context: 'db' in Docker, 127.0.0.1 otherwise
    in_docker = os.getenv("IN_DOCKER", "false").lower() == "true"
    default_host = "db" if in_docker else "127.0.0.1"

    host = os.getenv("DB_HOST", default_host)
    port = os.getenv("DB_PORT", "5432")
    user = percent_encode(os.getenv("DB_USER", "fund_admin"))
    pwd = percent_encode(os.getenv("DB_PASSWORD", ""))

    return f"{ASYNC_DRIVER}{user}:{pwd}@{host}:{port}/{name}"
