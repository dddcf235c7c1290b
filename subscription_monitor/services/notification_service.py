from __future__ import annotations

from typing import Any

from subscription_monitor.core.logger import get_logger

logger = get_logger(__name__)


def send_notification(channel: str, message: str, metadata: dict | None = None) -> dict:
    logger.info('Notification channel=%s message=%s metadata=%s', channel, message, metadata or {})
    return {'success': True, 'channel': channel}


async def deliver_local_notification(notification: Any) -> dict:
    """Default delivery sink for due local notifications."""
    return send_notification(
        'local',
        f'{notification.title}: {notification.body}',
        {'handle': notification.handle, **(notification.data or {})},
    )
