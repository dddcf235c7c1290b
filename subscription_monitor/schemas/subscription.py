from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel

from subscription_monitor.models.subscription import ScheduledReminderRecord, Subscription
from subscription_monitor.services.expiry_monitor import ScanResult


class SubscriptionSchema(BaseModel):
    id: str
    agency_id: str
    plan_id: str
    plan_name: str
    agency_name: str
    status: str
    start_date: datetime
    end_date: datetime

    @classmethod
    def from_domain(cls, subscription: Subscription) -> "SubscriptionSchema":
        return cls(
            id=subscription.id,
            agency_id=subscription.agency_id,
            plan_id=subscription.plan_id,
            plan_name=subscription.plan_name,
            agency_name=subscription.agency_name,
            status=subscription.status.value,
            start_date=subscription.start_date,
            end_date=subscription.end_date,
        )


class ScanErrorSchema(BaseModel):
    subscription_id: Optional[str] = None
    kind: str
    message: str


class ScanResultSchema(BaseModel):
    user_id: str
    expired_count: int
    scheduled_count: int
    cancelled_count: int
    errors: List[ScanErrorSchema]
    message: str

    @classmethod
    def from_result(cls, result: ScanResult) -> "ScanResultSchema":
        if result.errors:
            message = f"Check finished with {len(result.errors)} error(s)"
        elif result.expired_count:
            message = f"Updated {result.expired_count} expired subscriptions"
        else:
            message = "No subscriptions needed updating"
        return cls(
            user_id=result.user_id,
            expired_count=result.expired_count,
            scheduled_count=result.scheduled_count,
            cancelled_count=result.cancelled_count,
            errors=[ScanErrorSchema(**vars(e)) for e in result.errors],
            message=message,
        )


class ReminderSchema(BaseModel):
    key: str
    subscription_id: str
    threshold_days: int
    notification_handle: str
    scheduled_for: datetime
    delivered_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: ScheduledReminderRecord) -> "ReminderSchema":
        return cls(
            key=record.key.storage_key,
            subscription_id=record.key.subscription_id,
            threshold_days=record.key.threshold_days,
            notification_handle=record.notification_handle,
            scheduled_for=record.scheduled_for,
            delivered_at=record.delivered_at,
        )
