"""
Expiry reminder scheduling on top of the local notification primitive.

ensure_scheduled() is idempotent per ReminderKey: the first scheduling wins
and later calls are no-ops, whatever delivery time they ask for.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List

from subscription_monitor.core.exceptions import AppError, SchedulerError
from subscription_monitor.core.security import now_utc
from subscription_monitor.models.subscription import ReminderKey, ScheduledReminderRecord, Subscription
from subscription_monitor.services.dedup_store import DedupStore
from subscription_monitor.services.notification_primitive import LocalNotification, NotificationPrimitive

logger = logging.getLogger(__name__)

REMINDER_TITLE = "Subscription Expiring Soon"
REMINDER_TYPE = "subscription_expiry"


@dataclass
class ReminderPayload:
    title: str
    body: str
    data: Dict[str, Any] = field(default_factory=dict)


def build_reminder_payload(subscription: Subscription, threshold_days: int) -> ReminderPayload:
    day_word = "day" if threshold_days == 1 else "days"
    return ReminderPayload(
        title=REMINDER_TITLE,
        body=(
            f"Your {subscription.plan_name} subscription with {subscription.agency_name} "
            f"will expire in {threshold_days} {day_word}."
        ),
        data={
            "subscriptionId": subscription.id,
            "type": REMINDER_TYPE,
            "daysRemaining": threshold_days,
            "planName": subscription.plan_name,
            "agencyName": subscription.agency_name,
        },
    )


class ReminderScheduler:
    def __init__(
        self,
        store: DedupStore,
        primitive: NotificationPrimitive,
        clock: Callable[[], datetime] = now_utc,
    ):
        self.store = store
        self.primitive = primitive
        self.clock = clock
        self._unsubscribe = primitive.add_delivery_listener(self._on_delivered)

    def close(self) -> None:
        self._unsubscribe()

    async def ensure_scheduled(self, key: ReminderKey, deliver_at: datetime, payload: ReminderPayload) -> bool:
        """Schedule ``key`` unless it is already scheduled. Returns True when a new reminder was created."""
        async with self.store.key_lock(key):
            if await self.store.get(key) is not None:
                logger.debug("Reminder %s already scheduled", key)
                return False

            if deliver_at <= self.clock():
                logger.debug("Reminder %s window has passed (%s), not scheduling", key, deliver_at.isoformat())
                return False

            handle = await self.primitive.schedule(deliver_at, payload.title, payload.body, payload.data)
            record = ScheduledReminderRecord(key=key, notification_handle=handle, scheduled_for=deliver_at)
            try:
                stored = await self.store.put_if_absent(key, record)
            except AppError:
                await self._cancel_handle(handle)
                raise

            if stored.notification_handle != handle:
                # Another writer persisted this key first; drop our duplicate.
                await self._cancel_handle(handle)
                return False

        logger.info("Scheduled reminder %s for %s", key, deliver_at.isoformat())
        return True

    async def cancel(self, key: ReminderKey) -> bool:
        async with self.store.key_lock(key):
            record = await self.store.get(key)
            if record is None:
                return False
            await self._cancel_handle(record.notification_handle)
            removed = await self.store.remove(key)
        if removed:
            logger.info("Cancelled reminder %s", key)
        return removed

    async def cancel_all(self, subscription_id: str) -> int:
        removed = 0
        for record in await self.store.list_by_subscription(subscription_id):
            async with self.store.key_lock(record.key):
                await self._cancel_handle(record.notification_handle)
                if await self.store.remove(record.key):
                    removed += 1
        if removed:
            logger.info("Cancelled %s reminders for subscription %s", removed, subscription_id)
        return removed

    async def pending(self) -> List[ScheduledReminderRecord]:
        return await self.store.all()

    async def _cancel_handle(self, handle: str) -> bool:
        """Best-effort OS cancel; the dedup record is dropped by the caller either way."""
        try:
            return await self.primitive.cancel(handle)
        except SchedulerError as exc:
            logger.warning("Could not cancel notification %s: %s", handle, exc)
            return False

    async def _on_delivered(self, notification: LocalNotification) -> None:
        """
        Stamp delivered_at instead of calling cancel(key). A removed record would
        let the next scan treat the threshold as missed and send it again as a
        catch-up; the record goes away with cancel_all once the subscription ends.
        """
        data = notification.data or {}
        if data.get("type") != REMINDER_TYPE:
            return
        try:
            key = ReminderKey(str(data["subscriptionId"]), int(data["daysRemaining"]))
        except (KeyError, TypeError, ValueError):
            logger.warning("Delivered reminder %s carries no reminder key", notification.handle)
            return
        try:
            await self.store.mark_delivered(key, self.clock())
        except AppError as exc:
            logger.error("Could not record delivery of reminder %s: %s", key, exc)
