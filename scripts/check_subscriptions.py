"""
Run one subscription expiry check from the shell.

Usage:
  python scripts/check_subscriptions.py <user_id>
  python scripts/check_subscriptions.py --background
"""
from __future__ import annotations

import argparse
import asyncio

from subscription_monitor.config import settings
from subscription_monitor.core.logger import configure_logging
from subscription_monitor.database import SessionLocal, init_db
from subscription_monitor.services.lifecycle import build_services


async def run(user_id: str | None) -> None:
    services = build_services(settings, SessionLocal)
    await services.startup(start_background=False)
    try:
        if user_id:
            result = await services.runner.run_foreground(user_id)
            print(
                f"expired={result.expired_count} scheduled={result.scheduled_count} "
                f"cancelled={result.cancelled_count} errors={len(result.errors)}"
            )
            for error in result.errors:
                print(f"  - [{error.kind}] {error.subscription_id}: {error.message}")
        else:
            outcome = await services.host.run_once()
            print(f"background result={outcome.value}")
    finally:
        await services.shutdown()


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the subscription expiry check once")
    parser.add_argument("user_id", nargs="?", help="user to check (foreground path)")
    parser.add_argument("--background", action="store_true", help="use the stored session instead")
    args = parser.parse_args()
    if not args.user_id and not args.background:
        parser.error("pass a user_id or --background")

    configure_logging(settings.log_level)
    init_db()
    asyncio.run(run(None if args.background else args.user_id))


if __name__ == "__main__":
    main()
