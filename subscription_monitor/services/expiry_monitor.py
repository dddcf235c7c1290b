"""
Subscription expiry monitor.

scan() walks one user's subscriptions: active ones past their end_date are
moved to expired and their reminders cancelled; active ones inside the
notification window get every due reminder threshold ensure-scheduled.
Safe to run repeatedly and concurrently; the reminder scheduler and the
conditional status update make every step idempotent.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional

from subscription_monitor.core.exceptions import AppError, RepositoryError, SchedulerError
from subscription_monitor.core.security import now_utc
from subscription_monitor.models.subscription import ReminderKey, Subscription, SubscriptionStatus
from subscription_monitor.services.reminder_scheduler import ReminderScheduler, build_reminder_payload
from subscription_monitor.services.subscription_repository import SubscriptionRepository

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLDS = (7, 3, 1)
DEFAULT_WINDOW_DAYS = 8
DEFAULT_CATCH_UP_DELAY = timedelta(seconds=60)

ERROR_REPOSITORY = "repository"
ERROR_SCHEDULER = "scheduler"
ERROR_TIMEOUT = "timeout"


@dataclass
class ScanError:
    subscription_id: Optional[str]
    kind: str
    message: str


@dataclass
class ScanResult:
    user_id: str
    expired_count: int = 0
    scheduled_count: int = 0
    cancelled_count: int = 0
    errors: List[ScanError] = field(default_factory=list)

    @property
    def has_repository_errors(self) -> bool:
        return any(e.kind in (ERROR_REPOSITORY, ERROR_TIMEOUT) for e in self.errors)

    @property
    def changed(self) -> bool:
        return bool(self.expired_count or self.scheduled_count or self.cancelled_count)


class ExpiryMonitor:
    def __init__(
        self,
        repository: SubscriptionRepository,
        scheduler: ReminderScheduler,
        thresholds: Iterable[int] = DEFAULT_THRESHOLDS,
        window_days: int = DEFAULT_WINDOW_DAYS,
        catch_up_delay: timedelta = DEFAULT_CATCH_UP_DELAY,
        clock: Callable[[], datetime] = now_utc,
    ):
        self.repository = repository
        self.scheduler = scheduler
        self.thresholds = tuple(sorted(set(thresholds)))
        if not self.thresholds:
            raise ValueError("At least one reminder threshold is required")
        if window_days < self.thresholds[-1]:
            raise ValueError("window_days must cover the largest reminder threshold")
        self.window_days = window_days
        self.catch_up_delay = catch_up_delay
        self.clock = clock

    async def scan(self, user_id: str) -> ScanResult:
        """Raises RepositoryError only when the subscription list cannot be read."""
        now = self.clock()
        subscriptions = await self.repository.list_for_user(user_id)
        result = ScanResult(user_id=user_id)

        for subscription in subscriptions:
            await self._process(subscription, now, result)

        logger.info(
            "Scan for user %s: %s subscriptions, %s expired, %s reminders scheduled, %s cancelled, %s errors",
            user_id,
            len(subscriptions),
            result.expired_count,
            result.scheduled_count,
            result.cancelled_count,
            len(result.errors),
        )
        return result

    def due_thresholds(self, days_remaining: int) -> List[int]:
        if days_remaining <= 0 or days_remaining > self.window_days:
            return []
        return [t for t in self.thresholds if days_remaining <= t]

    async def _process(self, subscription: Subscription, now: datetime, result: ScanResult) -> None:
        if subscription.status != SubscriptionStatus.ACTIVE:
            if subscription.status in (SubscriptionStatus.EXPIRED, SubscriptionStatus.CANCELLED):
                await self._cancel_reminders(subscription, result)
            return

        days_remaining = subscription.days_remaining(now)
        if days_remaining <= 0:
            await self._expire(subscription, now, result)
        elif days_remaining <= self.window_days:
            await self._schedule_due(subscription, days_remaining, now, result)

    async def _expire(self, subscription: Subscription, now: datetime, result: ScanResult) -> None:
        try:
            if await self.repository.expire(subscription.id, now):
                result.expired_count += 1
                logger.info("Marked subscription %s as expired", subscription.id)
        except RepositoryError as exc:
            logger.error("Could not expire subscription %s: %s", subscription.id, exc)
            result.errors.append(ScanError(subscription.id, ERROR_REPOSITORY, str(exc)))

        # Runs whether or not the status write succeeded.
        await self._cancel_reminders(subscription, result)

    async def _cancel_reminders(self, subscription: Subscription, result: ScanResult) -> None:
        try:
            result.cancelled_count += await self.scheduler.cancel_all(subscription.id)
        except AppError as exc:
            logger.warning("Reminder cleanup failed for subscription %s: %s", subscription.id, exc)
            result.errors.append(ScanError(subscription.id, ERROR_SCHEDULER, str(exc)))

    async def _schedule_due(
        self, subscription: Subscription, days_remaining: int, now: datetime, result: ScanResult
    ) -> None:
        due = self.due_thresholds(days_remaining)
        if not due:
            return
        nearest = due[0]

        for threshold in due:
            key = ReminderKey(subscription.id, threshold)
            deliver_at = subscription.end_date - timedelta(days=threshold)
            if threshold == nearest and deliver_at <= now:
                # Missed while the app was not running; deliver shortly instead of dropping it.
                deliver_at = now + self.catch_up_delay
            try:
                if await self.scheduler.ensure_scheduled(
                    key, deliver_at, build_reminder_payload(subscription, threshold)
                ):
                    result.scheduled_count += 1
            except SchedulerError as exc:
                logger.warning("Could not schedule reminder %s: %s", key, exc)
                result.errors.append(ScanError(subscription.id, ERROR_SCHEDULER, str(exc)))
            except RepositoryError as exc:
                logger.error("Could not persist reminder %s: %s", key, exc)
                result.errors.append(ScanError(subscription.id, ERROR_REPOSITORY, str(exc)))
