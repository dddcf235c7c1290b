"""
In-process "deliver at time T" notification primitive.
One asyncio timer task per handle; pending notifications are persisted so a
restarted process can re-arm them with restore().
"""
from __future__ import annotations

import asyncio
import inspect
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from subscription_monitor.core.exceptions import AppError, SchedulerError
from subscription_monitor.core.security import now_utc
from subscription_monitor.models.subscription import parse_instant
from subscription_monitor.services.local_storage import KeyValueStorage
from subscription_monitor.services.notification_service import deliver_local_notification

logger = logging.getLogger(__name__)

PENDING_NAMESPACE = "@pending_local_notifications"


@dataclass
class LocalNotification:
    handle: str
    deliver_at: datetime
    title: str
    body: str
    data: Dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> Dict[str, Any]:
        return {
            "deliverAt": self.deliver_at.isoformat(),
            "title": self.title,
            "body": self.body,
            "data": self.data,
        }

    @classmethod
    def from_json(cls, handle: str, data: Dict[str, Any]) -> "LocalNotification":
        return cls(
            handle=handle,
            deliver_at=parse_instant(data["deliverAt"]),
            title=data.get("title", ""),
            body=data.get("body", ""),
            data=data.get("data") or {},
        )


DeliveryListener = Callable[[LocalNotification], Awaitable[None]]
DeliverySink = Callable[[LocalNotification], Any]


class NotificationPrimitive(Protocol):
    async def schedule(self, deliver_at: datetime, title: str, body: str, data: Dict[str, Any]) -> str: ...

    async def cancel(self, handle: str) -> bool: ...

    async def pending(self) -> List[LocalNotification]: ...

    def add_delivery_listener(self, listener: DeliveryListener) -> Callable[[], None]: ...


class AsyncioNotificationPrimitive:
    """Schedules local notifications on the running event loop."""

    def __init__(
        self,
        sink: DeliverySink = deliver_local_notification,
        storage: Optional[KeyValueStorage] = None,
        namespace: str = PENDING_NAMESPACE,
        clock: Callable[[], datetime] = now_utc,
    ):
        self.sink = sink
        self.storage = storage
        self.namespace = namespace
        self.clock = clock
        self._pending: Dict[str, LocalNotification] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._listeners: List[DeliveryListener] = []

    def add_delivery_listener(self, listener: DeliveryListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def schedule(self, deliver_at: datetime, title: str, body: str, data: Dict[str, Any]) -> str:
        if deliver_at.tzinfo is None:
            raise SchedulerError("deliver_at must be timezone-aware")
        notification = LocalNotification(
            handle=uuid.uuid4().hex,
            deliver_at=deliver_at,
            title=title,
            body=body,
            data=dict(data or {}),
        )
        self._pending[notification.handle] = notification
        try:
            await self._persist()
            self._arm(notification)
        except (AppError, RuntimeError) as exc:
            self._pending.pop(notification.handle, None)
            raise SchedulerError(f"Could not schedule notification: {exc}") from exc
        logger.debug("Scheduled local notification %s for %s", notification.handle, deliver_at.isoformat())
        return notification.handle

    async def cancel(self, handle: str) -> bool:
        notification = self._pending.pop(handle, None)
        task = self._tasks.pop(handle, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()
        if notification is None:
            return False
        try:
            await self._persist()
        except AppError as exc:
            raise SchedulerError(f"Could not cancel notification {handle}: {exc}") from exc
        return True

    async def pending(self) -> List[LocalNotification]:
        return sorted(self._pending.values(), key=lambda n: n.deliver_at)

    async def restore(self) -> int:
        """Re-arm notifications persisted by an earlier process."""
        if self.storage is None:
            return 0
        raw = await self.storage.get_item(self.namespace)
        if not raw:
            return 0
        try:
            stored = json.loads(raw)
        except json.JSONDecodeError:
            logger.error("Discarding unreadable pending notifications in %s", self.namespace)
            return 0
        restored = 0
        for handle, data in stored.items():
            if handle in self._pending:
                continue
            try:
                notification = LocalNotification.from_json(handle, data)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping malformed pending notification %s: %s", handle, exc)
                continue
            self._pending[handle] = notification
            self._arm(notification)
            restored += 1
        if restored:
            logger.info("Restored %s pending local notifications", restored)
        return restored

    async def shutdown(self) -> None:
        """Stop timers without forgetting persisted notifications."""
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._pending.clear()

    def _arm(self, notification: LocalNotification) -> None:
        self._tasks[notification.handle] = asyncio.get_running_loop().create_task(
            self._deliver_later(notification.handle)
        )

    async def _persist(self) -> None:
        if self.storage is None:
            return
        payload = {handle: n.to_json() for handle, n in self._pending.items()}
        await self.storage.set_item(self.namespace, json.dumps(payload, sort_keys=True))

    async def _deliver_later(self, handle: str) -> None:
        notification = self._pending.get(handle)
        if notification is None:
            return
        delay = (notification.deliver_at - self.clock()).total_seconds()
        if delay > 0:
            await asyncio.sleep(delay)
        if self._pending.pop(handle, None) is None:
            return
        self._tasks.pop(handle, None)
        try:
            await self._persist()
        except AppError as exc:
            logger.error("Could not drop delivered notification %s from storage: %s", handle, exc)

        try:
            result = self.sink(notification)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            logger.exception("Delivery sink failed for notification %s: %s", handle, exc)

        for listener in list(self._listeners):
            try:
                await listener(notification)
            except Exception as exc:
                logger.exception("Delivery listener failed for notification %s: %s", handle, exc)
