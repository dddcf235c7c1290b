"""
Session API Routes
Remember the caller's session so background checks can run without the app open.
"""
from __future__ import annotations

from fastapi import APIRouter, Depends

from subscription_monitor.api.dependencies import get_bearer_token, get_current_user, get_services
from subscription_monitor.schemas.auth import SessionResponse, UserOut
from subscription_monitor.services.lifecycle import MonitorServices

router = APIRouter()


@router.post("/session", response_model=SessionResponse)
async def remember_session(
    token: str = Depends(get_bearer_token),
    user: dict = Depends(get_current_user),
    services: MonitorServices = Depends(get_services),
) -> SessionResponse:
    await services.sessions.remember(token)
    return SessionResponse(user=UserOut(**user), remembered=True)


@router.delete("/session", response_model=SessionResponse)
async def forget_session(
    user: dict = Depends(get_current_user),
    services: MonitorServices = Depends(get_services),
) -> SessionResponse:
    await services.sessions.forget()
    return SessionResponse(user=UserOut(**user), remembered=False)


@router.get("/me", response_model=UserOut)
async def me(user: dict = Depends(get_current_user)) -> UserOut:
    return UserOut(**user)
