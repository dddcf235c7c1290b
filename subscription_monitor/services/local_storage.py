"""
Persisted key-value storage backed by the local_storage table.
Values are opaque strings; callers own their serialization.
"""
from __future__ import annotations

import logging
from typing import Callable, Optional, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from subscription_monitor.core.exceptions import RepositoryError
from subscription_monitor.models import LocalStorageEntry

logger = logging.getLogger(__name__)


class KeyValueStorage(Protocol):
    async def get_item(self, key: str) -> Optional[str]: ...

    async def set_item(self, key: str, value: str) -> None: ...

    async def remove_item(self, key: str) -> None: ...


class SqlKeyValueStorage:
    """KeyValueStorage over SQLAlchemy; survives process restarts."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    async def get_item(self, key: str) -> Optional[str]:
        db = self.session_factory()
        try:
            entry = db.get(LocalStorageEntry, key)
            return entry.value if entry else None
        except SQLAlchemyError as exc:
            raise RepositoryError(f"Could not read local storage key {key}: {exc}") from exc
        finally:
            db.close()

    async def set_item(self, key: str, value: str) -> None:
        db = self.session_factory()
        try:
            entry = db.get(LocalStorageEntry, key)
            if entry is None:
                db.add(LocalStorageEntry(key=key, value=value))
            else:
                entry.value = value
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            raise RepositoryError(f"Could not write local storage key {key}: {exc}") from exc
        finally:
            db.close()

    async def remove_item(self, key: str) -> None:
        db = self.session_factory()
        try:
            entry = db.get(LocalStorageEntry, key)
            if entry is not None:
                db.delete(entry)
                db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            raise RepositoryError(f"Could not remove local storage key {key}: {exc}") from exc
        finally:
            db.close()
