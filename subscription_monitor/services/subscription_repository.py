"""
Subscription repository backends.

SqlSubscriptionRepository reads the local SQLAlchemy tables;
SupabaseSubscriptionRepository talks to the hosted PostgREST API over httpx.
Both refuse backward status moves and report whether a write changed anything.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from subscription_monitor.core.exceptions import InvalidTransitionError, RepositoryError
from subscription_monitor.models import (
    Agency,
    Subscription,
    SubscriptionHistory,
    SubscriptionPlan,
    SubscriptionStatus,
    UserSubscription,
)
from subscription_monitor.models.subscription import parse_instant

logger = logging.getLogger(__name__)


class SubscriptionRepository(Protocol):
    async def list_for_user(self, user_id: str) -> List[Subscription]: ...

    async def list_active_for_user(self, user_id: str) -> List[Subscription]: ...

    async def update_status(self, subscription_id: str, status: SubscriptionStatus | str) -> bool: ...

    async def expire(self, subscription_id: str, timestamp: datetime) -> bool:
        """Move to expired and record history together; True only when this call made the change."""
        ...

    async def append_history(
        self, subscription_id: str, status: SubscriptionStatus | str, timestamp: datetime
    ) -> None: ...


def _coerce_status(status: SubscriptionStatus | str) -> SubscriptionStatus:
    try:
        return SubscriptionStatus(str(getattr(status, "value", status)).lower())
    except ValueError as exc:
        raise RepositoryError(f"Invalid subscription status: {status}") from exc


def _check_transition(subscription_id: str, current: SubscriptionStatus, target: SubscriptionStatus) -> None:
    if not current.can_transition(target):
        raise InvalidTransitionError(
            f"Subscription {subscription_id} cannot move from {current.value} to {target.value}"
        )


class SqlSubscriptionRepository:
    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def _query(self, db: Session, user_id: str, status: Optional[SubscriptionStatus] = None):
        query = (
            db.query(UserSubscription, SubscriptionPlan.name, Agency.name)
            .outerjoin(SubscriptionPlan, SubscriptionPlan.id == UserSubscription.plan_id)
            .outerjoin(Agency, Agency.id == UserSubscription.agency_id)
            .filter(UserSubscription.user_id == str(user_id))
        )
        if status is not None:
            query = query.filter(UserSubscription.status == status.value)
        return query.order_by(UserSubscription.end_date.asc())

    @staticmethod
    def _to_domain(row: UserSubscription, plan_name: Optional[str], agency_name: Optional[str]) -> Subscription:
        return Subscription(
            id=row.id,
            user_id=row.user_id,
            agency_id=row.agency_id,
            plan_id=row.plan_id,
            status=SubscriptionStatus(row.status),
            start_date=parse_instant(row.start_date),
            end_date=parse_instant(row.end_date),
            plan_name=plan_name or "",
            agency_name=agency_name or "",
        )

    async def _list(self, user_id: str, status: Optional[SubscriptionStatus] = None) -> List[Subscription]:
        db = self.session_factory()
        try:
            return [self._to_domain(*row) for row in self._query(db, user_id, status).all()]
        except SQLAlchemyError as exc:
            raise RepositoryError(f"Could not list subscriptions for user {user_id}: {exc}") from exc
        finally:
            db.close()

    async def list_for_user(self, user_id: str) -> List[Subscription]:
        return await self._list(user_id)

    async def list_active_for_user(self, user_id: str) -> List[Subscription]:
        return await self._list(user_id, SubscriptionStatus.ACTIVE)

    @staticmethod
    def _history_row(row: UserSubscription, status: SubscriptionStatus, timestamp: datetime) -> SubscriptionHistory:
        return SubscriptionHistory(
            subscription_id=row.id,
            user_id=row.user_id,
            agency_id=row.agency_id,
            plan_id=row.plan_id,
            status=status.value,
            created_at=timestamp,
        )

    def _transition(
        self,
        db: Session,
        subscription_id: str,
        target: SubscriptionStatus,
        history_at: Optional[datetime] = None,
    ) -> bool:
        """Conditional status move; the history row, if any, lands in the same commit."""
        row = db.get(UserSubscription, subscription_id)
        if row is None:
            raise RepositoryError(f"Subscription {subscription_id} not found")
        current = SubscriptionStatus(row.status)
        if current == target:
            return False
        _check_transition(subscription_id, current, target)

        updated = (
            db.query(UserSubscription)
            .filter(
                UserSubscription.id == subscription_id,
                UserSubscription.status == current.value,
            )
            .update({"status": target.value}, synchronize_session=False)
        )
        if updated == 0:
            db.rollback()
            latest = db.get(UserSubscription, subscription_id)
            if latest is not None and latest.status == target.value:
                return False
            raise InvalidTransitionError(f"Subscription {subscription_id} changed status concurrently")
        if history_at is not None:
            db.add(self._history_row(row, target, history_at))
        db.commit()
        logger.info("Subscription %s moved %s -> %s", subscription_id, current.value, target.value)
        return True

    async def update_status(self, subscription_id: str, status: SubscriptionStatus | str) -> bool:
        target = _coerce_status(status)
        db = self.session_factory()
        try:
            return self._transition(db, subscription_id, target)
        except SQLAlchemyError as exc:
            db.rollback()
            raise RepositoryError(f"Could not update subscription {subscription_id}: {exc}") from exc
        finally:
            db.close()

    async def expire(self, subscription_id: str, timestamp: datetime) -> bool:
        db = self.session_factory()
        try:
            return self._transition(db, subscription_id, SubscriptionStatus.EXPIRED, history_at=timestamp)
        except SQLAlchemyError as exc:
            db.rollback()
            raise RepositoryError(f"Could not expire subscription {subscription_id}: {exc}") from exc
        finally:
            db.close()

    async def append_history(
        self, subscription_id: str, status: SubscriptionStatus | str, timestamp: datetime
    ) -> None:
        target = _coerce_status(status)
        db = self.session_factory()
        try:
            row = db.get(UserSubscription, subscription_id)
            if row is None:
                raise RepositoryError(f"Subscription {subscription_id} not found")
            db.add(self._history_row(row, target, timestamp))
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            raise RepositoryError(f"Could not record history for {subscription_id}: {exc}") from exc
        finally:
            db.close()

class SupabaseSubscriptionRepository:
    """PostgREST client for the hosted user_subscriptions/subscription_history tables."""

    SELECT = "*,subscription_plans(name),agencies(name)"

    def __init__(
        self,
        base_url: str,
        service_key: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 20.0,
    ):
        self.base_url = base_url.rstrip("/") + "/rest/v1"
        self.service_key = service_key
        self.client = client
        self.timeout = timeout

    def _headers(self, prefer: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "apikey": self.service_key,
            "Authorization": f"Bearer {self.service_key}",
            "Content-Type": "application/json",
        }
        if prefer:
            headers["Prefer"] = prefer
        return headers

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            if self.client is not None:
                response = await self.client.request(method, f"{self.base_url}/{path}", **kwargs)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.request(method, f"{self.base_url}/{path}", **kwargs)
        except httpx.HTTPError as exc:
            raise RepositoryError(f"Supabase {method} {path} failed: {exc}") from exc
        if response.status_code >= 400:
            logger.error("Supabase %s %s returned %s: %s", method, path, response.status_code, response.text)
            raise RepositoryError(f"Supabase {method} {path} returned {response.status_code}")
        return response

    async def _list(self, user_id: str, status: Optional[SubscriptionStatus] = None) -> List[Subscription]:
        params = {
            "select": self.SELECT,
            "user_id": f"eq.{user_id}",
            "order": "end_date.asc",
        }
        if status is not None:
            params["status"] = f"eq.{status.value}"
        response = await self._request("GET", "user_subscriptions", params=params, headers=self._headers())
        subscriptions: List[Subscription] = []
        for row in response.json() or []:
            try:
                subscriptions.append(Subscription.from_row(row))
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping malformed subscription row %s: %s", row.get("id"), exc)
        return subscriptions

    async def list_for_user(self, user_id: str) -> List[Subscription]:
        return await self._list(user_id)

    async def list_active_for_user(self, user_id: str) -> List[Subscription]:
        return await self._list(user_id, SubscriptionStatus.ACTIVE)

    async def _fetch_row(self, subscription_id: str) -> Dict[str, Any]:
        response = await self._request(
            "GET",
            "user_subscriptions",
            params={"select": "id,status,user_id,agency_id,plan_id", "id": f"eq.{subscription_id}"},
            headers=self._headers(),
        )
        rows = response.json() or []
        if not rows:
            raise RepositoryError(f"Subscription {subscription_id} not found")
        return rows[0]

    async def _current_status(self, subscription_id: str) -> SubscriptionStatus:
        return _coerce_status((await self._fetch_row(subscription_id))["status"])

    async def _patch_status(
        self, subscription_id: str, current: SubscriptionStatus, target: SubscriptionStatus
    ) -> bool:
        # Conditioned on the status just read, so a concurrent writer cannot be overwritten.
        response = await self._request(
            "PATCH",
            "user_subscriptions",
            params={"id": f"eq.{subscription_id}", "status": f"eq.{current.value}"},
            json={"status": target.value},
            headers=self._headers(prefer="return=representation"),
        )
        if response.json():
            logger.info("Subscription %s moved %s -> %s", subscription_id, current.value, target.value)
            return True
        if await self._current_status(subscription_id) == target:
            return False
        raise InvalidTransitionError(f"Subscription {subscription_id} changed status concurrently")

    async def update_status(self, subscription_id: str, status: SubscriptionStatus | str) -> bool:
        target = _coerce_status(status)
        current = await self._current_status(subscription_id)
        if current == target:
            return False
        _check_transition(subscription_id, current, target)
        return await self._patch_status(subscription_id, current, target)

    async def _has_history(self, subscription_id: str, status: SubscriptionStatus) -> bool:
        response = await self._request(
            "GET",
            "subscription_history",
            params={
                "select": "id",
                "subscription_id": f"eq.{subscription_id}",
                "status": f"eq.{status.value}",
                "limit": "1",
            },
            headers=self._headers(),
        )
        return bool(response.json())

    async def _insert_history(self, row: Dict[str, Any], status: SubscriptionStatus, timestamp: datetime) -> None:
        await self._request(
            "POST",
            "subscription_history",
            json={
                "subscription_id": row["id"],
                "user_id": row["user_id"],
                "agency_id": row.get("agency_id"),
                "plan_id": row.get("plan_id"),
                "status": status.value,
                "created_at": timestamp.isoformat(),
            },
            headers=self._headers(prefer="return=minimal"),
        )

    async def expire(self, subscription_id: str, timestamp: datetime) -> bool:
        """
        PostgREST offers no transaction across the two tables, so the history
        row is written before the status. A failure in between leaves the
        subscription active and the next scan finishes the job without a
        second history row.
        """
        row = await self._fetch_row(subscription_id)
        current = _coerce_status(row["status"])
        if current == SubscriptionStatus.EXPIRED:
            return False
        _check_transition(subscription_id, current, SubscriptionStatus.EXPIRED)

        if not await self._has_history(subscription_id, SubscriptionStatus.EXPIRED):
            await self._insert_history(row, SubscriptionStatus.EXPIRED, timestamp)
        return await self._patch_status(subscription_id, current, SubscriptionStatus.EXPIRED)

    async def append_history(
        self, subscription_id: str, status: SubscriptionStatus | str, timestamp: datetime
    ) -> None:
        target = _coerce_status(status)
        await self._insert_history(await self._fetch_row(subscription_id), target, timestamp)
