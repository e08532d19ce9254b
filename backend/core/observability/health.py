"""Health and readiness endpoints."""

from importlib.metadata import PackageNotFoundError, version
from typing import Any

from fastapi import APIRouter
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from backend.core.observability.logging import get_logger

router = APIRouter()
logger = get_logger(__name__)


def get_version() -> str:
    try:
        return version("factus-emission")
    except PackageNotFoundError:
        return "dev"


def check_database() -> str:
    """Check database connectivity with a light query."""
    from backend.apps.emission.repository import get_engine

    try:
        with get_engine().connect() as conn:
            row = conn.execute(text("SELECT 1 AS health_check")).first()
    except SQLAlchemyError as exc:
        logger.warning("Readiness database check failed", extra={"error": str(exc)})
        return "FAIL"
    return "OK" if row and row.health_check == 1 else "FAIL"


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
