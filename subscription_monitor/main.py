"""
Subscription Lifecycle Monitor - FastAPI Application
Expiry checks and reminder scheduling for waste-collection subscriptions
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import logging
from datetime import datetime, timezone
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from subscription_monitor.config import settings
from subscription_monitor.core.logger import configure_logging
from subscription_monitor.database import SessionLocal, init_db
from subscription_monitor.services.lifecycle import build_services

from subscription_monitor.api.routes import (
    health,
    auth,
    subscriptions,
    reminders,
    background,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle startup and shutdown events."""
    configure_logging(settings.log_level)
    logger.info("Starting %s...", settings.app_name)

    init_db()
    logger.info("Database initialized")

    services = build_services(settings, SessionLocal)
    await services.startup(start_background=settings.background_start_on_boot)
    app.state.services = services
    logger.info(
        "Subscription monitor ready (thresholds %s, window %s days, background %s)",
        settings.reminder_thresholds,
        settings.notification_window_days,
        "on" if services.host.is_running else "off",
    )
    yield
    # Shutdown
    await services.shutdown()
    logger.info("Shutting down %s...", settings.app_name)


app = FastAPI(
    title=settings.app_name,
    description="Subscription expiry monitor and reminder scheduler",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/")
async def root() -> dict:
    return {
        "name": settings.app_name,
        "environment": settings.app_env,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


prefix = settings.api_v1_prefix

app.include_router(health.router, prefix=prefix, tags=["Health"])
app.include_router(auth.router, prefix=f"{prefix}/auth", tags=["Auth"])
app.include_router(subscriptions.router, prefix=f"{prefix}/subscriptions", tags=["Subscriptions"])
app.include_router(reminders.router, prefix=f"{prefix}/reminders", tags=["Reminders"])
app.include_router(background.router, prefix=f"{prefix}/background", tags=["Background"])
