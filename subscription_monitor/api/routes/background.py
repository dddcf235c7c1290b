"""
Background Check API Routes
"""
from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends

from subscription_monitor.api.dependencies import get_current_user, get_services
from subscription_monitor.services.lifecycle import MonitorServices

router = APIRouter()


@router.get("/status")
async def background_status(services: MonitorServices = Depends(get_services)) -> Dict[str, Any]:
    """Registration and last outcome of the periodic subscription check."""
    return services.host.status()


@router.post("/run", dependencies=[Depends(get_current_user)])
async def run_background_check(services: MonitorServices = Depends(get_services)) -> Dict[str, Any]:
    """Trigger the background path once, as the host would."""
    result = await services.host.run_once()
    return {"result": result.value, "status": services.host.status()}
