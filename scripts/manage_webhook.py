"""
Manage the Strava webhook subscription from the command line.

    python scripts/manage_webhook.py status
    python scripts/manage_webhook.py setup [--url https://your-domain.com]
    python scripts/manage_webhook.py delete
"""
import argparse
import asyncio
import logging
import sys

from strava_weather.config import settings
from strava_weather.logging_config import setup_logging
from strava_weather.services.subscription import SubscriptionError, SubscriptionManager

logger = logging.getLogger("manage_webhook")


async def show_status(manager: SubscriptionManager, args) -> int:
    subscription = await manager.view_subscription()
    if not subscription:
        print("No webhook subscription found.")
        print("Create one with: python scripts/manage_webhook.py setup")
        return 0

    print(f"Subscription ID: {subscription.get('id')}")
    print(f"Callback URL:    {subscription.get('callback_url')}")
    print(f"Created:         {subscription.get('created_at')}")
    print(f"Updated:         {subscription.get('updated_at')}")
    return 0


async def setup(manager: SubscriptionManager, args) -> int:
    existing = await manager.view_subscription()
    if existing:
        print(f"Subscription {existing.get('id')} already exists -> {existing.get('callback_url')}")
        print("Delete it first with: python scripts/manage_webhook.py delete")
        return 0

    if args.url:
        callback_url = f"{args.url.rstrip('/')}/api/strava/webhook"
    else:
        callback_url = manager.determine_callback_url()
    if not callback_url:
        print("No callback URL. Pass --url or set APP_URL (production) / NGROK_URL (development).")
        return 1

    print(f"Verifying {callback_url} ...")
    if not await manager.verify_endpoint(callback_url):
        print("Endpoint verification failed. Is the server running and publicly reachable?")
        return 1

    subscription = await manager.create_subscription(callback_url)
    print(f"Created subscription {subscription.get('id')} -> {subscription.get('callback_url')}")
    return 0


async def delete(manager: SubscriptionManager, args) -> int:
    subscription = await manager.view_subscription()
    if not subscription:
        print("No webhook subscription to delete.")
        return 0

    await manager.delete_subscription(subscription["id"])
    print(f"Deleted subscription {subscription['id']}")
    return 0


COMMANDS = {"status": show_status, "setup": setup, "delete": delete}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Strava webhook subscription management")
    parser.add_argument("command", nargs="?", default="status", choices=sorted(COMMANDS))
    parser.add_argument("--url", help="Public base URL of the API (setup only)")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging()

    if not settings.STRAVA_CLIENT_ID or not settings.STRAVA_CLIENT_SECRET:
        print("STRAVA_CLIENT_ID and STRAVA_CLIENT_SECRET must be set")
        return 1

    manager = SubscriptionManager(settings)
    try:
        return asyncio.run(COMMANDS[args.command](manager, args))
    except SubscriptionError as e:
        logger.error(f"{args.command} failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
