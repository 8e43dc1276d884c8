"""Health and readiness endpoints."""

from importlib import metadata
from typing import Any

from fastapi import APIRouter
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from backend.core.db import get_engine
from backend.core.observability.logging import logger

router = APIRouter()


def get_version() -> str:
    """Installed distribution version, 'dev' when running from a checkout."""
    try:
        return metadata.version("einvoice-core")
    except metadata.PackageNotFoundError:
        return "dev"


def check_database() -> str:
    """Check database connectivity with light query."""
    try:
        with get_engine().connect() as conn:
            value = conn.execute(text("SELECT 1")).scalar()
    except SQLAlchemyError as exc:
        logger.warning("health_db_failed", extra={"error": str(exc)})
        return "FAIL"
    return "OK" if value == 1 else "FAIL"


@router.get("/health/ready")
def readiness_check() -> dict[str, Any]:
    """Readiness endpoint for load balancers."""
    db_status = check_database()

    return {
        "status": "OK" if db_status == "OK" else "DEGRADED",
        "version": get_version(),
        "db": db_status,
    }


@router.get("/health/live")
def liveness_check() -> dict[str, str]:
    """Liveness endpoint - always OK if service is running."""
    return {"status": "OK"}
