"""
Subscription API Routes
Active subscriptions and the user-initiated expiry check (pull-to-refresh)
"""
from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, HTTPException, status

from subscription_monitor.api.dependencies import get_current_user, get_services
from subscription_monitor.core.exceptions import RepositoryError
from subscription_monitor.schemas.subscription import ScanResultSchema, SubscriptionSchema
from subscription_monitor.services.lifecycle import MonitorServices

router = APIRouter()


@router.get("/", response_model=List[SubscriptionSchema])
async def list_subscriptions(
    user: dict = Depends(get_current_user),
    services: MonitorServices = Depends(get_services),
) -> List[SubscriptionSchema]:
    try:
        subscriptions = await services.repository.list_active_for_user(user["id"])
    except RepositoryError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))
    return [SubscriptionSchema.from_domain(s) for s in subscriptions]


@router.post("/scan", response_model=ScanResultSchema)
async def check_subscriptions_now(
    user: dict = Depends(get_current_user),
    services: MonitorServices = Depends(get_services),
) -> ScanResultSchema:
    """Run the expiry check for the caller; failures are reported in the body."""
    result = await services.runner.run_foreground(user["id"])
    return ScanResultSchema.from_result(result)
