"""Wires the monitor's collaborators together from settings."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Callable

from sqlalchemy.orm import Session

from subscription_monitor.config import Settings
from subscription_monitor.services.background_host import BackgroundTaskHost
from subscription_monitor.services.dedup_store import DedupStore
from subscription_monitor.services.expiry_monitor import ExpiryMonitor
from subscription_monitor.services.local_storage import SqlKeyValueStorage
from subscription_monitor.services.notification_primitive import AsyncioNotificationPrimitive
from subscription_monitor.services.reminder_scheduler import ReminderScheduler
from subscription_monitor.services.session_provider import SessionStore, TokenSessionProvider
from subscription_monitor.services.subscription_repository import (
    SqlSubscriptionRepository,
    SubscriptionRepository,
    SupabaseSubscriptionRepository,
)
from subscription_monitor.services.task_runner import TaskRunner


@dataclass
class MonitorServices:
    repository: SubscriptionRepository
    primitive: AsyncioNotificationPrimitive
    scheduler: ReminderScheduler
    monitor: ExpiryMonitor
    sessions: SessionStore
    runner: TaskRunner
    host: BackgroundTaskHost

    async def startup(self, start_background: bool) -> None:
        await self.primitive.restore()
        if start_background:
            self.host.start()

    async def shutdown(self) -> None:
        if self.host.is_running:
            await self.host.stop()
        self.scheduler.close()
        await self.primitive.shutdown()


def build_repository(settings: Settings, session_factory: Callable[[], Session]) -> SubscriptionRepository:
    if settings.subscription_backend == "supabase":
        return SupabaseSubscriptionRepository(
            base_url=str(settings.supabase_url),
            service_key=settings.supabase_service_key.get_secret_value(),
            timeout=settings.supabase_timeout,
        )
    return SqlSubscriptionRepository(session_factory)


def build_services(settings: Settings, session_factory: Callable[[], Session]) -> MonitorServices:
    storage = SqlKeyValueStorage(session_factory)
    repository = build_repository(settings, session_factory)
    primitive = AsyncioNotificationPrimitive(storage=storage)
    scheduler = ReminderScheduler(DedupStore(storage, settings.notification_storage_key), primitive)
    monitor = ExpiryMonitor(
        repository,
        scheduler,
        thresholds=settings.reminder_thresholds,
        window_days=settings.notification_window_days,
        catch_up_delay=timedelta(seconds=settings.catch_up_delay_seconds),
    )
    sessions = SessionStore(storage, settings.session_storage_key)
    runner = TaskRunner(
        monitor,
        TokenSessionProvider(sessions),
        time_budget=settings.background_time_budget_seconds,
    )
    host = BackgroundTaskHost(retry_delay=settings.background_retry_delay_seconds)
    host.register(
        runner,
        minimum_interval=settings.background_minimum_interval_seconds,
        stop_on_terminate=False,
        start_on_boot=settings.background_start_on_boot,
        schedule_cron=settings.background_schedule_cron,
    )
    return MonitorServices(
        repository=repository,
        primitive=primitive,
        scheduler=scheduler,
        monitor=monitor,
        sessions=sessions,
        runner=runner,
        host=host,
    )
