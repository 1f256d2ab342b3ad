# sentinel/routers/health.py
"""
System health check endpoint.
Returns status of backend + DB + sync state. Never calls the remote store.
"""

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.orm import Session

from sentinel.config import settings
from sentinel.database import get_db
from sentinel.dependencies import Services, get_services
from sentinel.utils.clock import utcnow

router = APIRouter()


@router.get("/health", summary="System health check")
async def health_check(db: Session = Depends(get_db), services: Services = Depends(get_services)):
    """
    Returns:
    - Backend status
    - Database connectivity
    - Network state, remote configuration and queue depth
    """
    result = {
        "status": "ok",
        "timestamp": utcnow().isoformat(),
        "device_id": settings.DEVICE_ID,
        "backend": "ok",
        "database": "unknown",
        "sync": {},
    }

    # Check database
    try:
        db.execute(text("SELECT 1"))
        result["database"] = "ok"
    except Exception as e:
        result["database"] = f"error: {str(e)}"
        result["status"] = "degraded"

    queue = services.sync_queue
    status = queue.get_sync_status()
    result["sync"] = {
        "online": status.is_online,
        "syncing": status.is_syncing,
        "remote_configured": services.reconciler.is_configured(),
        "background_sync": queue.background_sync_active,
        "pending_items": status.pending_items,
        "last_sync_time": status.last_sync_time.isoformat() if status.last_sync_time else None,
    }
    return result
