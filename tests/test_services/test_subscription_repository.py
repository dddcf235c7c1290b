from __future__ import annotations

import json
from datetime import timedelta

import httpx
import pytest

from subscription_monitor.core.exceptions import InvalidTransitionError, RepositoryError
from subscription_monitor.core.security import now_utc
from subscription_monitor.models import SubscriptionHistory, SubscriptionStatus
from subscription_monitor.services.subscription_repository import SupabaseSubscriptionRepository


@pytest.mark.asyncio
async def test_sql_lists_with_plan_and_agency_names(repository, add_subscription):
    later = add_subscription(ends_in=timedelta(days=20), plan_name='Fortnightly', agency_name='City Waste')
    sooner = add_subscription(ends_in=timedelta(days=2))
    add_subscription(user_id='user-2')
    cancelled = add_subscription(ends_in=timedelta(days=5), status=SubscriptionStatus.CANCELLED)

    everything = await repository.list_for_user('user-1')
    active = await repository.list_active_for_user('user-1')

    assert [s.id for s in everything] == [sooner, cancelled, later]
    assert [s.id for s in active] == [sooner, later]
    assert active[1].plan_name == 'Fortnightly'
    assert active[1].agency_name == 'City Waste'
    assert active[0].end_date.tzinfo is not None


@pytest.mark.asyncio
async def test_sql_update_status_reports_change_once(repository, add_subscription, subscription_status):
    sub_id = add_subscription()

    assert await repository.update_status(sub_id, SubscriptionStatus.EXPIRED) is True
    assert await repository.update_status(sub_id, 'expired') is False
    assert subscription_status(sub_id) == 'expired'


@pytest.mark.asyncio
async def test_sql_refuses_backward_transition(repository, add_subscription, subscription_status):
    sub_id = add_subscription(status=SubscriptionStatus.EXPIRED)

    with pytest.raises(InvalidTransitionError):
        await repository.update_status(sub_id, SubscriptionStatus.ACTIVE)
    assert subscription_status(sub_id) == 'expired'


@pytest.mark.asyncio
async def test_sql_unknown_subscription_and_status(repository, add_subscription):
    with pytest.raises(RepositoryError):
        await repository.update_status('missing', SubscriptionStatus.EXPIRED)
    with pytest.raises(RepositoryError):
        await repository.update_status(add_subscription(), 'archived')


@pytest.mark.asyncio
async def test_sql_append_history_copies_ownership(repository, add_subscription, session_factory, clock):
    sub_id = add_subscription(user_id='user-9')

    await repository.append_history(sub_id, SubscriptionStatus.EXPIRED, clock())

    db = session_factory()
    try:
        (entry,) = db.query(SubscriptionHistory).filter_by(subscription_id=sub_id).all()
        assert entry.user_id == 'user-9'
        assert entry.status == 'expired'
        assert entry.agency_id.startswith('agency-')
    finally:
        db.close()


class FakePostgrest:
    """Minimal PostgREST stand-in for the user_subscriptions table."""

    def __init__(self, rows):
        self.rows = {row['id']: dict(row) for row in rows}
        self.history = []
        self.requests = []
        self.race_to = None
        self.failing_patches = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        params = request.url.params
        table = request.url.path.rsplit('/', 1)[-1]

        if table == 'subscription_history':
            if request.method == 'POST':
                self.history.append(json.loads(request.content))
                return httpx.Response(201)
            matches = [
                {'id': n}
                for n, h in enumerate(self.history, 1)
                if f"eq.{h['subscription_id']}" == params['subscription_id']
                and f"eq.{h['status']}" == params['status']
            ]
            return httpx.Response(200, json=matches)

        if request.method == 'GET':
            rows = list(self.rows.values())
            if 'id' in params:
                rows = [r for r in rows if f"eq.{r['id']}" == params['id']]
            if 'user_id' in params:
                rows = [r for r in rows if f"eq.{r['user_id']}" == params['user_id']]
            if 'status' in params:
                rows = [r for r in rows if f"eq.{r['status']}" == params['status']]
            return httpx.Response(200, json=rows)

        if request.method == 'PATCH':
            if self.failing_patches:
                self.failing_patches -= 1
                return httpx.Response(500, text='statement timeout')
            row = self.rows.get(params['id'].removeprefix('eq.'))
            if self.race_to and row is not None:
                row['status'] = self.race_to
            if row is None or f"eq.{row['status']}" != params['status']:
                return httpx.Response(200, json=[])
            row.update(json.loads(request.content))
            return httpx.Response(200, json=[row])

        return httpx.Response(405)


def _row(sub_id, status='active', user_id='user-1'):
    return {
        'id': sub_id,
        'user_id': user_id,
        'agency_id': 'agency-1',
        'plan_id': 'plan-1',
        'status': status,
        'start_date': '2026-02-01T00:00:00Z',
        'end_date': '2026-03-03T09:00:00+00:00',
        'subscription_plans': {'name': 'Weekly Pickup'},
        'agencies': {'name': 'Green Bins Ltd'},
    }


def _repository(backend):
    client = httpx.AsyncClient(transport=httpx.MockTransport(backend))
    return SupabaseSubscriptionRepository('https://example.supabase.co/', 'service-key', client=client)


@pytest.mark.asyncio
async def test_supabase_list_active_sends_filters_and_auth():
    backend = FakePostgrest([_row('a'), _row('b', status='expired'), _row('c', user_id='user-2')])
    repo = _repository(backend)

    subscriptions = await repo.list_active_for_user('user-1')

    assert [s.id for s in subscriptions] == ['a']
    assert subscriptions[0].plan_name == 'Weekly Pickup'
    request = backend.requests[0]
    assert request.url.path == '/rest/v1/user_subscriptions'
    assert request.url.params['order'] == 'end_date.asc'
    assert request.url.params['select'] == '*,subscription_plans(name),agencies(name)'
    assert request.headers['apikey'] == 'service-key'
    assert request.headers['authorization'] == 'Bearer service-key'


@pytest.mark.asyncio
async def test_supabase_skips_malformed_rows():
    broken = _row('x')
    del broken['end_date']
    repo = _repository(FakePostgrest([broken, _row('a')]))

    assert [s.id for s in await repo.list_for_user('user-1')] == ['a']


@pytest.mark.asyncio
async def test_supabase_update_is_conditional_and_idempotent():
    backend = FakePostgrest([_row('a')])
    repo = _repository(backend)

    assert await repo.update_status('a', SubscriptionStatus.EXPIRED) is True
    assert await repo.update_status('a', SubscriptionStatus.EXPIRED) is False

    patch = next(r for r in backend.requests if r.method == 'PATCH')
    assert patch.url.params['status'] == 'eq.active'
    assert patch.headers['prefer'] == 'return=representation'
    assert backend.rows['a']['status'] == 'expired'


@pytest.mark.asyncio
async def test_supabase_concurrent_expiry_counts_once():
    backend = FakePostgrest([_row('a')])
    backend.race_to = 'expired'
    repo = _repository(backend)

    assert await repo.update_status('a', SubscriptionStatus.EXPIRED) is False


@pytest.mark.asyncio
async def test_supabase_concurrent_cancel_is_reported():
    backend = FakePostgrest([_row('a')])
    backend.race_to = 'cancelled'
    repo = _repository(backend)

    with pytest.raises(InvalidTransitionError):
        await repo.update_status('a', SubscriptionStatus.EXPIRED)


@pytest.mark.asyncio
async def test_supabase_refuses_reactivation():
    repo = _repository(FakePostgrest([_row('a', status='cancelled')]))
    with pytest.raises(InvalidTransitionError):
        await repo.update_status('a', 'active')


@pytest.mark.asyncio
async def test_supabase_append_history(clock):
    backend = FakePostgrest([_row('a')])
    repo = _repository(backend)

    await repo.append_history('a', SubscriptionStatus.EXPIRED, clock())

    assert backend.history == [
        {
            'subscription_id': 'a',
            'user_id': 'user-1',
            'agency_id': 'agency-1',
            'plan_id': 'plan-1',
            'status': 'expired',
            'created_at': clock().isoformat(),
        }
    ]


@pytest.mark.asyncio
async def test_supabase_expire_writes_full_history_then_status(clock):
    backend = FakePostgrest([_row('a')])
    repo = _repository(backend)

    assert await repo.expire('a', clock()) is True
    assert await repo.expire('a', clock()) is False

    assert backend.rows['a']['status'] == 'expired'
    assert [(h['subscription_id'], h['user_id'], h['plan_id'], h['status']) for h in backend.history] == [
        ('a', 'user-1', 'plan-1', 'expired')
    ]
    writes = [r.method for r in backend.requests if r.method in ('POST', 'PATCH')]
    assert writes == ['POST', 'PATCH']


@pytest.mark.asyncio
async def test_supabase_expire_retry_after_status_failure_keeps_one_history_row(clock):
    backend = FakePostgrest([_row('a')])
    backend.failing_patches = 1
    repo = _repository(backend)

    with pytest.raises(RepositoryError):
        await repo.expire('a', clock())
    assert backend.rows['a']['status'] == 'active'
    assert len(backend.history) == 1

    assert await repo.expire('a', clock()) is True
    assert backend.rows['a']['status'] == 'expired'
    assert len(backend.history) == 1


@pytest.mark.asyncio
async def test_sql_expire_records_history_in_same_commit(repository, add_subscription, session_factory, clock):
    sub_id = add_subscription(ends_in=-timedelta(hours=1))

    assert await repository.expire(sub_id, clock()) is True
    assert await repository.expire(sub_id, clock()) is False

    db = session_factory()
    try:
        history = db.query(SubscriptionHistory).filter_by(subscription_id=sub_id).all()
        assert [(h.status, h.user_id, h.plan_id) for h in history] == [('expired', 'user-1', 'plan-1')]
    finally:
        db.close()


@pytest.mark.asyncio
async def test_sql_expire_refuses_cancelled(repository, add_subscription, session_factory):
    sub_id = add_subscription(status=SubscriptionStatus.CANCELLED)

    with pytest.raises(InvalidTransitionError):
        await repository.expire(sub_id, now_utc())

    db = session_factory()
    try:
        assert db.query(SubscriptionHistory).filter_by(subscription_id=sub_id).count() == 0
    finally:
        db.close()


@pytest.mark.asyncio
async def test_supabase_errors_become_repository_errors():
    def unavailable(request):
        return httpx.Response(503, text='maintenance')

    def unreachable(request):
        raise httpx.ConnectError('connection refused', request=request)

    with pytest.raises(RepositoryError):
        await _repository(unavailable).list_for_user('user-1')
    with pytest.raises(RepositoryError):
        await _repository(unreachable).update_status('a', 'expired')
