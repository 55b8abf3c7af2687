"""
Health check endpoint for deployment monitoring.
"""
from fastapi import APIRouter, Depends, Request
from sqlalchemy import text
from sqlalchemy.orm import Session

from marketplace.core.auth_dependency import get_db
from marketplace.core.clock import utcnow

router = APIRouter(prefix="/health", tags=["Health"])


@router.get("")
def health_check(request: Request, db: Session = Depends(get_db)):
    """
    Health check endpoint for deployment monitoring.

    Returns 200 if the API is up; ``status`` is ``degraded`` when the database is unreachable.
    """
    status = "healthy"

    try:
        db.execute(text("SELECT 1"))
        db_status = "connected"
    except Exception as e:
        db_status = f"error: {str(e)}"
        status = "degraded"

    cache = getattr(request.app.state, "cache", None)
    registry = getattr(request.app.state, "realtime_registry", None)

    return {
        "status": status,
        "timestamp": utcnow().isoformat(),
        "database": db_status,
        "cache": "enabled" if cache is not None and cache.enabled else "disabled",
        "realtime_clients": len(registry.connected_users()) if registry is not None else 0,
        "version": "1.0.0",
    }
