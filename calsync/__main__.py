"""Command-line entry for calsync."""

import argparse
import asyncio
import logging
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from .config.settings import load_settings
from .utils.logging import setup_logging

logger = logging.getLogger(__name__)


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser for the calsync CLI.

    Returns:
        Configured argument parser
    """
    parser = argparse.ArgumentParser(
        prog="calsync",
        description="Mirror remote iCalendar subscriptions and publish calendar feeds",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  calsync serve                              # HTTP server with background sync
  calsync serve --port 3000 --no-scheduler   # HTTP only
  calsync sync --user alice                  # Sync alice's subscriptions once
  calsync create-token --user alice --name Phone
        """,
    )
    parser.add_argument("--config", type=Path, metavar="FILE", help="YAML configuration file")
    parser.add_argument("--log-level", metavar="LEVEL", help="Console log level")

    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP server")
    serve_parser.add_argument("--host", help="Bind address")
    serve_parser.add_argument("--port", type=int, help="Listen port")
    serve_parser.add_argument(
        "--no-scheduler", action="store_true", help="Disable background subscription sync"
    )

    sync_parser = subparsers.add_parser("sync", help="Sync subscriptions once and exit")
    sync_parser.add_argument("--user", help="Only sync this user's subscriptions")

    token_parser = subparsers.add_parser("create-token", help="Issue a feed token")
    token_parser.add_argument("--user", required=True, help="Owner of the feed")
    token_parser.add_argument("--name", default="Calendar feed", help="Token label")
    token_parser.add_argument(
        "--expires-in-days", type=int, metavar="DAYS", help="Expire the token after DAYS days"
    )

    return parser


async def _run_sync(settings, user: Optional[str]) -> int:
    from .api.services import build_services

    services = build_services(settings)
    try:
        results = await services.orchestrator.sync_all(user)
    finally:
        await services.close()

    for result in results:
        if result.success:
            status = "skipped" if result.skipped else (
                f"+{result.inserted} ~{result.updated} -{result.deleted}"
            )
        else:
            status = f"FAILED: {result.error}"
        print(f"{result.subscription_id}: {status}")

    return 0 if all(result.success for result in results) else 1


async def _create_token(settings, user: str, name: str, expires_in_days: Optional[int]) -> int:
    from .api.services import build_services

    services = build_services(settings)
    expires_at = None
    if expires_in_days:
        expires_at = datetime.now(timezone.utc) + timedelta(days=expires_in_days)

    try:
        feed_token = await services.feed_tokens.create(user, name, expires_at)
    finally:
        await services.close()

    base = settings.public_url or f"http://{settings.host}:{settings.port}"
    print(f"{base.rstrip('/')}/feed/{feed_token.token}")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    """Run the calsync CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    overrides = {}
    if getattr(args, "host", None):
        overrides["host"] = args.host
    if getattr(args, "port", None):
        overrides["port"] = args.port

    settings = load_settings(args.config, **overrides)
    setup_logging(settings, args.log_level)

    if args.command == "serve":
        from .api.server import serve

        asyncio.run(serve(settings, enable_scheduler=False if args.no_scheduler else None))
        return 0
    if args.command == "sync":
        return asyncio.run(_run_sync(settings, args.user))
    if args.command == "create-token":
        return asyncio.run(
            _create_token(settings, args.user, args.name, args.expires_in_days)
        )

    parser.error(f"Unknown command {args.command}")
    return 2


if __name__ == "__main__":
    sys.exit(main())
