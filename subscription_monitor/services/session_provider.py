"""
Session providers: who is signed in, as seen by background runs.

The foreground API remembers the caller's bearer token in local storage so a
freshly started process can still find the session.
"""
from __future__ import annotations

import logging
from typing import Optional, Protocol

import jwt

from subscription_monitor.core.exceptions import AppError
from subscription_monitor.core.security import decode_token
from subscription_monitor.services.local_storage import KeyValueStorage

logger = logging.getLogger(__name__)

DEFAULT_SESSION_KEY = "@auth_session"


class SessionProvider(Protocol):
    async def get_current_user(self) -> Optional[str]: ...


class StaticSessionProvider:
    def __init__(self, user_id: Optional[str] = None):
        self.user_id = user_id

    async def get_current_user(self) -> Optional[str]:
        return self.user_id


class SessionStore:
    def __init__(self, storage: KeyValueStorage, key: str = DEFAULT_SESSION_KEY):
        self.storage = storage
        self.key = key

    async def remember(self, token: str) -> None:
        await self.storage.set_item(self.key, token)

    async def forget(self) -> None:
        await self.storage.remove_item(self.key)

    async def token(self) -> Optional[str]:
        return await self.storage.get_item(self.key)


class TokenSessionProvider:
    """Reads the remembered JWT; missing, expired or invalid tokens mean no session."""

    def __init__(self, store: SessionStore):
        self.store = store

    async def get_current_user(self) -> Optional[str]:
        try:
            token = await self.store.token()
        except AppError as exc:
            logger.error("Could not read stored session: %s", exc)
            return None
        if not token:
            return None
        try:
            payload = decode_token(token)
        except jwt.ExpiredSignatureError:
            logger.info("Stored session has expired")
            return None
        except jwt.PyJWTError as exc:
            logger.warning("Stored session token is invalid: %s", exc)
            return None
        user_id = str(payload.get("sub") or "").strip()
        return user_id or None
