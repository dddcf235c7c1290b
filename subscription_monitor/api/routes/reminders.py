"""
Reminder API Routes
Inspect and withdraw scheduled expiry reminders
"""
from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, HTTPException, status

from subscription_monitor.api.dependencies import get_current_user, get_services
from subscription_monitor.core.exceptions import RepositoryError
from subscription_monitor.models.subscription import ReminderKey
from subscription_monitor.schemas.subscription import ReminderSchema
from subscription_monitor.services.lifecycle import MonitorServices

router = APIRouter()


async def _owned_subscription_ids(services: MonitorServices, user_id: str) -> set[str]:
    try:
        return {s.id for s in await services.repository.list_for_user(user_id)}
    except RepositoryError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))


@router.get("/", response_model=List[ReminderSchema])
async def list_reminders(
    user: dict = Depends(get_current_user),
    services: MonitorServices = Depends(get_services),
) -> List[ReminderSchema]:
    owned = await _owned_subscription_ids(services, user["id"])
    records = await services.scheduler.pending()
    return [ReminderSchema.from_record(r) for r in records if r.key.subscription_id in owned]


@router.delete("/{subscription_id}/{threshold_days}")
async def cancel_reminder(
    subscription_id: str,
    threshold_days: int,
    user: dict = Depends(get_current_user),
    services: MonitorServices = Depends(get_services),
) -> dict:
    if subscription_id not in await _owned_subscription_ids(services, user["id"]):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Subscription not found")
    cancelled = await services.scheduler.cancel(ReminderKey(subscription_id, threshold_days))
    if not cancelled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Reminder not scheduled")
    return {"success": True, "key": ReminderKey(subscription_id, threshold_days).storage_key}
