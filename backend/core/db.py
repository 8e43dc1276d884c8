"""Engine factory shared by API, health checks and CLI."""

from __future__ import annotations

from functools import lru_cache

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine

from backend.core.config import settings


def _connect_args(database_url: str) -> dict[str, bool]:
    if database_url.startswith("sqlite"):
        return {"check_same_thread": False}
    return {}


@lru_cache(maxsize=8)
def _engine_for(url: str) -> Engine:
    return create_engine(url, future=True, connect_args=_connect_args(url))


def get_engine(database_url: str | None = None) -> Engine:
    """Return a cached engine for ``database_url`` (default: settings)."""
    return _engine_for(database_url or settings.database_url)
