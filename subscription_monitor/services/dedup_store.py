"""
Notification dedup store.

One persisted local-storage entry holds every scheduled reminder, keyed by
``subscription_{id}_{threshold}days``. Each key has its own asyncio lock so a
get-then-put on one key is never interleaved with another writer of the same
key; the shared entry itself is rewritten under a single write lock.
"""
from __future__ import annotations

import asyncio
import json
import logging
import weakref
from datetime import datetime
from typing import Dict, List, Optional

from subscription_monitor.models.subscription import ReminderKey, ScheduledReminderRecord
from subscription_monitor.services.local_storage import KeyValueStorage

logger = logging.getLogger(__name__)

DEFAULT_NAMESPACE = "@subscription_notifications"


class DedupStore:
    def __init__(self, storage: KeyValueStorage, namespace: str = DEFAULT_NAMESPACE):
        self.storage = storage
        self.namespace = namespace
        self._key_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._write_lock = asyncio.Lock()

    def key_lock(self, key: ReminderKey) -> asyncio.Lock:
        """Shared lock for one key; dropped once no caller holds or awaits it."""
        lock = self._key_locks.get(key.storage_key)
        if lock is None:
            lock = asyncio.Lock()
            self._key_locks[key.storage_key] = lock
        return lock

    async def _load(self) -> Dict[str, dict]:
        raw = await self.storage.get_item(self.namespace)
        if not raw:
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.error("Discarding unreadable reminder store %s", self.namespace)
            return {}
        if not isinstance(data, dict):
            logger.error("Reminder store %s is not a mapping, discarding", self.namespace)
            return {}
        return data

    async def _save(self, mapping: Dict[str, dict]) -> None:
        await self.storage.set_item(self.namespace, json.dumps(mapping, sort_keys=True))

    @staticmethod
    def _decode(storage_key: str, data: dict) -> Optional[ScheduledReminderRecord]:
        try:
            return ScheduledReminderRecord.from_json(storage_key, data)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Skipping malformed reminder record %s: %s", storage_key, exc)
            return None

    async def get(self, key: ReminderKey) -> Optional[ScheduledReminderRecord]:
        mapping = await self._load()
        data = mapping.get(key.storage_key)
        return self._decode(key.storage_key, data) if data is not None else None

    async def put(self, key: ReminderKey, record: ScheduledReminderRecord) -> None:
        async with self._write_lock:
            mapping = await self._load()
            mapping[key.storage_key] = record.to_json()
            await self._save(mapping)

    async def put_if_absent(
        self, key: ReminderKey, record: ScheduledReminderRecord
    ) -> ScheduledReminderRecord:
        """Store ``record`` unless the key is already taken; return whichever record is stored."""
        async with self._write_lock:
            mapping = await self._load()
            existing = mapping.get(key.storage_key)
            if existing is not None:
                current = self._decode(key.storage_key, existing)
                if current is not None:
                    return current
            mapping[key.storage_key] = record.to_json()
            await self._save(mapping)
            return record

    async def remove(self, key: ReminderKey) -> bool:
        async with self._write_lock:
            mapping = await self._load()
            if mapping.pop(key.storage_key, None) is None:
                return False
            await self._save(mapping)
            return True

    async def mark_delivered(self, key: ReminderKey, delivered_at: datetime) -> bool:
        async with self._write_lock:
            mapping = await self._load()
            data = mapping.get(key.storage_key)
            if data is None:
                return False
            data["deliveredAt"] = delivered_at.isoformat()
            await self._save(mapping)
            return True

    async def all(self) -> List[ScheduledReminderRecord]:
        mapping = await self._load()
        records = (self._decode(k, v) for k, v in sorted(mapping.items()))
        return [r for r in records if r is not None]

    async def list_by_subscription(self, subscription_id: str) -> List[ScheduledReminderRecord]:
        return [r for r in await self.all() if r.key.subscription_id == str(subscription_id)]
