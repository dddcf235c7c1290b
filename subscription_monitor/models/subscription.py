"""Domain records for subscriptions and their expiry reminders."""
from __future__ import annotations

import math
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional

DAY = timedelta(days=1)


class SubscriptionStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

    def can_transition(self, target: "SubscriptionStatus") -> bool:
        """Statuses only move forward; expired and cancelled are terminal."""
        return target in _FORWARD.get(self, frozenset())


_FORWARD = {
    SubscriptionStatus.PENDING: frozenset(
        {SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED}
    ),
    SubscriptionStatus.ACTIVE: frozenset({SubscriptionStatus.EXPIRED, SubscriptionStatus.CANCELLED}),
}


def parse_instant(value: Any) -> datetime:
    """Accept datetimes or ISO-8601 strings; naive values are taken as UTC."""
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class Subscription:
    id: str
    user_id: str
    agency_id: str
    plan_id: str
    status: SubscriptionStatus
    start_date: datetime
    end_date: datetime
    plan_name: str = ""
    agency_name: str = ""

    def days_remaining(self, now: datetime) -> int:
        """Whole days left until end_date, rounded up."""
        return math.ceil((self.end_date - now) / DAY)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Subscription":
        """Build from a PostgREST row, including embedded plan/agency names."""
        plan = row.get("subscription_plans") or {}
        agency = row.get("agencies") or {}
        return cls(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            agency_id=str(row.get("agency_id") or ""),
            plan_id=str(row.get("plan_id") or ""),
            status=SubscriptionStatus(str(row["status"]).lower()),
            start_date=parse_instant(row["start_date"]),
            end_date=parse_instant(row["end_date"]),
            plan_name=row.get("plan_name") or plan.get("name") or "",
            agency_name=row.get("agency_name") or agency.get("name") or "",
        )


_KEY_PATTERN = re.compile(r"^subscription_(?P<sid>.+)_(?P<days>\d+)days$")


@dataclass(frozen=True)
class ReminderKey:
    subscription_id: str
    threshold_days: int

    @property
    def storage_key(self) -> str:
        return f"subscription_{self.subscription_id}_{self.threshold_days}days"

    @classmethod
    def parse(cls, storage_key: str) -> "ReminderKey":
        match = _KEY_PATTERN.match(storage_key)
        if match is None:
            raise ValueError(f"Not a reminder key: {storage_key!r}")
        return cls(match.group("sid"), int(match.group("days")))

    def __str__(self) -> str:
        return self.storage_key


@dataclass
class ScheduledReminderRecord:
    key: ReminderKey
    notification_handle: str
    scheduled_for: datetime
    delivered_at: Optional[datetime] = None

    def to_json(self) -> Dict[str, Any]:
        return {
            "handle": self.notification_handle,
            "scheduledFor": self.scheduled_for.isoformat(),
            "subscriptionId": self.key.subscription_id,
            "threshold": self.key.threshold_days,
            "deliveredAt": self.delivered_at.isoformat() if self.delivered_at else None,
        }

    @classmethod
    def from_json(cls, storage_key: str, data: Dict[str, Any]) -> "ScheduledReminderRecord":
        if "subscriptionId" in data and "threshold" in data:
            key = ReminderKey(str(data["subscriptionId"]), int(data["threshold"]))
        else:
            key = ReminderKey.parse(storage_key)
        delivered = data.get("deliveredAt")
        return cls(
            key=key,
            notification_handle=str(data.get("handle") or data.get("id") or ""),
            scheduled_for=parse_instant(data["scheduledFor"]),
            delivered_at=parse_instant(delivered) if delivered else None,
        )
