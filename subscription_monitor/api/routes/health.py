"""
Health API Routes
"""
from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse

from subscription_monitor.api.dependencies import get_services
from subscription_monitor.database import check_database_connection, database_health
from subscription_monitor.services.lifecycle import MonitorServices

router = APIRouter()


@router.get("/health")
async def health_check(services: MonitorServices = Depends(get_services)) -> JSONResponse:
    """Application, database and background host health"""
    db = database_health()
    ok = bool(db.get("ok")) and check_database_connection()
    return JSONResponse(
        status_code=status.HTTP_200_OK if ok else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "healthy" if ok else "degraded",
            "database": db,
            "background": services.host.status(),
        },
    )
