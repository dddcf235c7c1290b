"""
SQLAlchemy models for the subscription monitor.
"""
from __future__ import annotations

import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

from subscription_monitor.models.subscription import (
    ReminderKey,
    ScheduledReminderRecord,
    Subscription,
    SubscriptionStatus,
)

Base = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


class SubscriptionPlan(Base):
    __tablename__ = "subscription_plans"

    id = Column(String(36), primary_key=True, default=_uuid)
    agency_id = Column(String(36), nullable=False, index=True)
    name = Column(Text, nullable=False)
    price = Column(Numeric(12, 2))
    duration_days = Column(Integer, default=30)


class Agency(Base):
    __tablename__ = "agencies"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(Text, nullable=False)


class UserSubscription(Base):
    __tablename__ = "user_subscriptions"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(64), nullable=False, index=True)
    agency_id = Column(String(36), ForeignKey("agencies.id"), nullable=False)
    plan_id = Column(String(36), ForeignKey("subscription_plans.id"), nullable=False)
    status = Column(String(16), nullable=False, default=SubscriptionStatus.PENDING.value)
    auto_renew = Column(Boolean, default=False)
    start_date = Column(DateTime(timezone=True), nullable=False)
    end_date = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class SubscriptionHistory(Base):
    __tablename__ = "subscription_history"

    id = Column(String(36), primary_key=True, default=_uuid)
    subscription_id = Column(String(36), ForeignKey("user_subscriptions.id"), nullable=False, index=True)
    user_id = Column(String(64), nullable=False)
    agency_id = Column(String(36))
    plan_id = Column(String(36))
    status = Column(String(16), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)


class LocalStorageEntry(Base):
    __tablename__ = "local_storage"

    key = Column(String(255), primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


__all__ = [
    "Agency",
    "Base",
    "LocalStorageEntry",
    "ReminderKey",
    "ScheduledReminderRecord",
    "Subscription",
    "SubscriptionHistory",
    "SubscriptionPlan",
    "SubscriptionStatus",
    "UserSubscription",
]
