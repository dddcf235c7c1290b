"""
Execution harness for the expiry monitor.

run_background() is what the host's periodic facility calls and answers with
a tri-state result so the host can tune its backoff. run_foreground() serves
user-initiated refreshes. Invocations are never queued or rejected: two runs
may overlap and converge through the monitor's idempotency.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from enum import Enum
from typing import AsyncIterator, Optional

from subscription_monitor.core.exceptions import AppError, NoSessionError, RepositoryError, TaskTimeoutError
from subscription_monitor.core.security import now_utc
from subscription_monitor.services.expiry_monitor import (
    ERROR_REPOSITORY,
    ERROR_TIMEOUT,
    ExpiryMonitor,
    ScanError,
    ScanResult,
)
from subscription_monitor.services.session_provider import SessionProvider

logger = logging.getLogger(__name__)


class BackgroundFetchResult(str, Enum):
    NO_DATA = "no_data"
    NEW_DATA = "new_data"
    FAILED = "failed"


class TaskRunner:
    def __init__(
        self,
        monitor: ExpiryMonitor,
        session_provider: SessionProvider,
        time_budget: float = 25.0,
    ):
        self.monitor = monitor
        self.session_provider = session_provider
        self.time_budget = time_budget
        self._in_flight = 0
        self.last_result: Optional[BackgroundFetchResult] = None
        self.last_scan: Optional[ScanResult] = None
        self.last_run_at: Optional[datetime] = None

    @property
    def state(self) -> str:
        return "running" if self._in_flight else "idle"

    @asynccontextmanager
    async def _running(self) -> AsyncIterator[None]:
        self._in_flight += 1
        try:
            yield
        finally:
            self._in_flight -= 1
            self.last_run_at = now_utc()

    async def _scan(self, user_id: str) -> ScanResult:
        try:
            return await asyncio.wait_for(self.monitor.scan(user_id), timeout=self.time_budget)
        except asyncio.TimeoutError as exc:
            raise TaskTimeoutError(f"Check exceeded {self.time_budget}s") from exc

    async def _require_user(self) -> str:
        user_id = await self.session_provider.get_current_user()
        if not user_id:
            raise NoSessionError("No user logged in")
        return user_id

    async def run_background(self) -> BackgroundFetchResult:
        outcome = await self._run_background()
        self.last_result = outcome
        return outcome

    async def _run_background(self) -> BackgroundFetchResult:
        try:
            user_id = await self._require_user()
        except NoSessionError:
            logger.info("No user logged in, skipping subscription check")
            return BackgroundFetchResult.NO_DATA

        async with self._running():
            try:
                scan = await self._scan(user_id)
            except TaskTimeoutError:
                logger.error("Subscription check for user %s exceeded %ss", user_id, self.time_budget)
                return BackgroundFetchResult.FAILED
            except AppError as exc:
                logger.error("Subscription check for user %s failed: %s", user_id, exc)
                return BackgroundFetchResult.FAILED
            except Exception as exc:
                logger.exception("Unexpected error in subscription check: %s", exc)
                return BackgroundFetchResult.FAILED

        self.last_scan = scan
        if scan.has_repository_errors:
            return BackgroundFetchResult.FAILED
        if scan.changed:
            return BackgroundFetchResult.NEW_DATA
        return BackgroundFetchResult.NO_DATA

    async def run_foreground(self, user_id: str) -> ScanResult:
        async with self._running():
            try:
                scan = await self._scan(user_id)
            except TaskTimeoutError as exc:
                logger.error("Foreground check for user %s exceeded %ss", user_id, self.time_budget)
                scan = ScanResult(user_id=user_id, errors=[ScanError(None, ERROR_TIMEOUT, str(exc))])
            except RepositoryError as exc:
                logger.error("Foreground check for user %s failed: %s", user_id, exc)
                scan = ScanResult(user_id=user_id, errors=[ScanError(None, ERROR_REPOSITORY, str(exc))])
        self.last_scan = scan
        return scan
