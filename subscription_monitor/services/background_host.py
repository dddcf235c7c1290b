"""
In-process host for periodic background execution.
Runs the registered task runner on an asyncio task, never more often than the
registered minimum interval, and backs off exponentially after failed runs.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from croniter import croniter

from subscription_monitor.core.security import now_utc
from subscription_monitor.services.task_runner import BackgroundFetchResult, TaskRunner

logger = logging.getLogger(__name__)


@dataclass
class BackgroundRegistration:
    runner: TaskRunner
    minimum_interval: float = 60 * 60
    stop_on_terminate: bool = False
    start_on_boot: bool = True
    schedule_cron: Optional[str] = None


class BackgroundTaskHost:
    """Polls the registered runner and records the tri-state outcome of each run."""

    def __init__(self, retry_delay: float = 60, clock: Callable[[], datetime] = now_utc):
        self.retry_delay = retry_delay
        self.clock = clock
        self.registration: Optional[BackgroundRegistration] = None
        self.last_result: Optional[BackgroundFetchResult] = None
        self.last_run_at: Optional[datetime] = None
        self.next_run_at: Optional[datetime] = None
        self.consecutive_failures = 0
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None

    def register(
        self,
        runner: TaskRunner,
        minimum_interval: float = 60 * 60,
        stop_on_terminate: bool = False,
        start_on_boot: bool = True,
        schedule_cron: Optional[str] = None,
    ) -> BackgroundRegistration:
        if minimum_interval <= 0:
            raise ValueError("minimum_interval must be positive")
        if schedule_cron and not croniter.is_valid(schedule_cron):
            raise ValueError(f"Invalid cron expression: {schedule_cron}")
        self.registration = BackgroundRegistration(
            runner=runner,
            minimum_interval=minimum_interval,
            stop_on_terminate=stop_on_terminate,
            start_on_boot=start_on_boot,
            schedule_cron=schedule_cron,
        )
        logger.info("Background subscription check registered (minimum interval %ss)", minimum_interval)
        return self.registration

    async def unregister(self) -> None:
        await self.stop()
        self.registration = None
        logger.info("Background subscription check unregistered")

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the polling loop as a background task."""
        if self.registration is None:
            raise RuntimeError("No background task registered")
        if self.is_running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())
        logger.info("BackgroundTaskHost started")

    async def stop(self) -> None:
        """Stop the polling loop and wait for the current run to finish."""
        self._stop_event.set()
        if self._task:
            await self._task
            self._task = None
        logger.info("BackgroundTaskHost stopped")

    async def run_once(self) -> BackgroundFetchResult:
        if self.registration is None:
            raise RuntimeError("No background task registered")
        result = await self.registration.runner.run_background()
        self.last_result = result
        self.last_run_at = self.clock()
        if result == BackgroundFetchResult.FAILED:
            self.consecutive_failures += 1
        else:
            self.consecutive_failures = 0
        logger.info("Background subscription check finished: %s", result.value)
        return result

    def next_delay(self, result: Optional[BackgroundFetchResult], from_dt: datetime) -> float:
        """Seconds until the next run."""
        registration = self.registration
        interval = registration.minimum_interval if registration else 60 * 60
        if result == BackgroundFetchResult.FAILED and self.consecutive_failures:
            backoff = self.retry_delay * (2 ** (self.consecutive_failures - 1))
            return float(min(interval, backoff))
        if registration and registration.schedule_cron:
            next_run = self._compute_next_run(registration.schedule_cron, from_dt)
            if next_run is not None:
                return max((next_run - from_dt).total_seconds(), float(interval))
        return float(interval)

    def status(self) -> Dict[str, Any]:
        registration = self.registration
        return {
            "registered": registration is not None,
            "running": self.is_running,
            "minimum_interval": registration.minimum_interval if registration else None,
            "start_on_boot": registration.start_on_boot if registration else None,
            "stop_on_terminate": registration.stop_on_terminate if registration else None,
            "schedule_cron": registration.schedule_cron if registration else None,
            "runner_state": registration.runner.state if registration else None,
            "last_result": self.last_result.value if self.last_result else None,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "next_run_at": self.next_run_at.isoformat() if self.next_run_at else None,
            "consecutive_failures": self.consecutive_failures,
        }

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            result: Optional[BackgroundFetchResult] = None
            try:
                result = await self.run_once()
            except Exception as exc:
                logger.exception("Background subscription check crashed: %s", exc)
                self.consecutive_failures += 1
                result = BackgroundFetchResult.FAILED

            now = self.clock()
            delay = self.next_delay(result, now)
            self.next_run_at = now + timedelta(seconds=delay)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

    @staticmethod
    def _compute_next_run(schedule_cron: str | None, from_dt: datetime) -> datetime | None:
        if not schedule_cron:
            return None
        try:
            return croniter(schedule_cron, from_dt).get_next(datetime)
        except (ValueError, KeyError) as exc:
            logger.warning("Could not compute next run from %r: %s", schedule_cron, exc)
            return None
