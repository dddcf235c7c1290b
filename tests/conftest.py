import asyncio
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault('APP_ENV', 'test')
os.environ.setdefault('DATABASE_URL', f"sqlite:///{Path(tempfile.mkdtemp()) / 'subscription_monitor_test.db'}")
os.environ.setdefault('SECRET_KEY', 'test-secret-key-with-enough-length-for-hs256')
os.environ.setdefault('BACKGROUND_START_ON_BOOT', 'false')

from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from subscription_monitor.core.exceptions import SchedulerError  # noqa: E402
from subscription_monitor.models import (  # noqa: E402
    Agency,
    Base,
    SubscriptionPlan,
    SubscriptionStatus,
    UserSubscription,
)
from subscription_monitor.services.dedup_store import DedupStore  # noqa: E402
from subscription_monitor.services.local_storage import SqlKeyValueStorage  # noqa: E402
from subscription_monitor.services.reminder_scheduler import ReminderScheduler  # noqa: E402
from subscription_monitor.services.subscription_repository import SqlSubscriptionRepository  # noqa: E402

NOW = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakePrimitive:
    """Records schedule/cancel calls instead of arming timers; yields like a real platform call."""

    def __init__(self):
        self.scheduled = {}
        self.schedule_calls = 0
        self.cancel_calls = []
        self.fail_schedule = False
        self.fail_cancel = False
        self.listeners = []
        self._counter = 0

    def add_delivery_listener(self, listener):
        self.listeners.append(listener)
        return lambda: self.listeners.remove(listener) if listener in self.listeners else None

    async def schedule(self, deliver_at, title, body, data):
        self.schedule_calls += 1
        await asyncio.sleep(0)
        if self.fail_schedule:
            raise SchedulerError("scheduling refused")
        self._counter += 1
        handle = f"notif-{self._counter}"
        self.scheduled[handle] = {"deliver_at": deliver_at, "title": title, "body": body, "data": data}
        return handle

    async def cancel(self, handle):
        self.cancel_calls.append(handle)
        await asyncio.sleep(0)
        if self.fail_cancel:
            raise SchedulerError("cancel refused")
        return self.scheduled.pop(handle, None) is not None

    async def pending(self):
        return list(self.scheduled.values())


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def session_factory():
    engine = create_engine(
        'sqlite://',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def storage(session_factory):
    return SqlKeyValueStorage(session_factory)


@pytest.fixture
def dedup_store(storage):
    return DedupStore(storage)


@pytest.fixture
def primitive():
    return FakePrimitive()


@pytest.fixture
def reminder_scheduler(dedup_store, primitive, clock):
    return ReminderScheduler(dedup_store, primitive, clock=clock)


@pytest.fixture
def repository(session_factory):
    return SqlSubscriptionRepository(session_factory)


@pytest.fixture
def add_subscription(session_factory, clock):
    """Insert a subscription ending ``ends_in`` from the fake clock's now."""
    counter = {'n': 0}

    def _add(user_id='user-1', ends_in=timedelta(days=30), status=SubscriptionStatus.ACTIVE,
             plan_name='Weekly Pickup', agency_name='Green Bins Ltd'):
        counter['n'] += 1
        n = counter['n']
        db = session_factory()
        try:
            agency = Agency(id=f'agency-{n}', name=agency_name)
            plan = SubscriptionPlan(id=f'plan-{n}', agency_id=agency.id, name=plan_name, duration_days=30)
            subscription = UserSubscription(
                id=f'sub-{n}',
                user_id=user_id,
                agency_id=agency.id,
                plan_id=plan.id,
                status=getattr(status, 'value', status),
                start_date=clock() - timedelta(days=30),
                end_date=clock() + ends_in,
            )
            db.add_all([agency, plan, subscription])
            db.commit()
            return subscription.id
        finally:
            db.close()

    return _add


@pytest.fixture
def subscription_status(session_factory):
    def _status(subscription_id):
        db = session_factory()
        try:
            return db.get(UserSubscription, subscription_id).status
        finally:
            db.close()

    return _status
