"""
Health check endpoints
"""
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.orm import Session

from record_flags.core.config import get_settings
from record_flags.core.database import get_db
from record_flags.core.logging_config import LoggingConfig
from record_flags.core.unit_registry import get_unit_registry
from record_flags.components.contracts import UnitKind

logger = LoggingConfig.get_logger(__name__)
router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """
    Basic health check endpoint

    Returns:
        dict: Health status
    """
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": get_settings().app_name,
    }


@router.get("/health/detailed")
async def detailed_health_check(db: Session = Depends(get_db)):
    """
    Health check including the catalog store and the unit registry
    """
    settings = get_settings()
    registry = get_unit_registry()
    health_status = {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": settings.app_name,
        "environment": settings.app_env,
        "components": {},
    }

    try:
        db.execute(text("SELECT 1"))
        health_status["components"]["database"] = {
            "status": "healthy",
            "message": "Database connection successful",
        }
    except Exception as e:
        logger.warning(f"Catalog database health check failed: {e}")
        health_status["status"] = "unhealthy"
        health_status["components"]["database"] = {
            "status": "unhealthy",
            "message": f"Database connection failed: {str(e)}",
            "error": type(e).__name__,
        }

    health_status["components"]["unit_registry"] = {
        "status": "healthy",
        "providers": len(registry.registered_ids(UnitKind.SHARED_DATA_PROVIDER)),
        "computations": len(registry.registered_ids(UnitKind.FLAG_COMPUTATION)),
    }
    return health_status
