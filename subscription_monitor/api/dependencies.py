"""Shared API dependencies."""
from fastapi import HTTPException, Request, status

from subscription_monitor.core.security import get_bearer_token, get_current_user
from subscription_monitor.services.lifecycle import MonitorServices


def get_services(request: Request) -> MonitorServices:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Subscription monitor is not initialised",
        )
    return services


__all__ = ["get_bearer_token", "get_current_user", "get_services"]
