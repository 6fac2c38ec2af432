"""
Database URL resolution and connection pool settings, read from the
environment (optionally seeded from `.env` / `.env.local`).
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

_CLOUD_ENVIRONMENTS = {"prod", "production", "staging", "cloud"}
_DIRECT_URL_VARIABLES = ("MONITOR_DATABASE_URL", "DATABASE_URL")
_TRUTHY = {"1", "true", "yes", "on"}


def load_env_files() -> None:
    """
    Seed os.environ from `.env` then `.env.local` at the project root.

    Variables already present in the process environment win.
    """

    project_root = Path(__file__).resolve().parents[1]
    for env_path in (project_root / ".env", project_root / ".env.local"):
        if not env_path.is_file():
            continue
        for line in env_path.read_text(encoding="utf-8").splitlines():
            stripped = line.strip()
            if stripped.startswith("#") or "=" not in stripped:
                continue
            key, _, value = stripped.partition("=")
            key = key.strip()
            if key:
                os.environ.setdefault(key, value.strip().strip("'\""))


def normalize_postgres_url(url: str) -> str:
    """
    Rewrite bare postgres URLs to use the psycopg 3 driver.
    """

    for prefix in ("postgres://", "postgresql://"):
        if url.startswith(prefix):
            return "postgresql+psycopg://" + url[len(prefix):]
    return url


def is_postgres_url(url: str) -> bool:
    return url.startswith("postgresql")


def resolve_database_url() -> str:
    """
    First configured of: MONITOR_DATABASE_URL, DATABASE_URL,
    CLOUD_DATABASE_URL (only when ENVIRONMENT is cloud-like), LOCAL_DATABASE_URL.
    """

    load_env_files()

    candidates = [os.getenv(name, "") for name in _DIRECT_URL_VARIABLES]
    if os.getenv("ENVIRONMENT", "local").strip().lower() in _CLOUD_ENVIRONMENTS:
        candidates.append(os.getenv("CLOUD_DATABASE_URL", ""))
    candidates.append(os.getenv("LOCAL_DATABASE_URL", ""))

    for candidate in candidates:
        if candidate.strip():
            return normalize_postgres_url(candidate.strip())

    raise RuntimeError(
        "No database URL configured. Set MONITOR_DATABASE_URL or DATABASE_URL, "
        "or configure LOCAL_DATABASE_URL / CLOUD_DATABASE_URL."
    )


def _int_from_env(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, ""))
    except ValueError:
        return default


@dataclass(frozen=True)
class EnginePoolSettings:
    size: int = 10
    max_overflow: int = 10
    recycle_seconds: int = 1800
    echo: bool = False

    @classmethod
    def from_env(cls) -> "EnginePoolSettings":
        load_env_files()
        return cls(
            size=max(1, _int_from_env("DB_POOL_SIZE", cls.size)),
            max_overflow=max(0, _int_from_env("DB_MAX_OVERFLOW", cls.max_overflow)),
            recycle_seconds=_int_from_env("DB_POOL_RECYCLE", cls.recycle_seconds),
            echo=os.getenv("SQL_ECHO", "").strip().lower() in _TRUTHY,
        )
