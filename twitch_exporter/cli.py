from __future__ import annotations

import argparse
import asyncio
import json
import sys

from twitch_exporter.collector.watchlist import ChannelRole
from twitch_exporter.config import Settings, load_settings
from twitch_exporter.core.errors import ConfigError
from twitch_exporter.main import build_reward_grouping, build_watchlist, configure_logging, run
from twitch_exporter.twitch import TwitchApiError, TwitchClient


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Prometheus exporter for Twitch channel metrics")
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("serve", help="Run the exporter HTTP server (default)")
    sub.add_parser("check-config", help="Validate configuration and print the resolved watchlist")
    sub.add_parser("list-subscriptions", help="Print current EventSub subscriptions as JSON")
    return parser.parse_args(argv)


def check_config(settings: Settings) -> int:
    try:
        grouping = build_reward_grouping(settings)
        watchlist = build_watchlist(settings)
    except ConfigError as exc:
        print(f"invalid configuration: {exc}", file=sys.stderr)
        return 2

    print(f"self: {watchlist.self_login or '-'}")
    print(f"watch ({watchlist.count_by_role(ChannelRole.WATCH)}): {', '.join(watchlist.watch_logins) or '-'}")
    print(f"reward groups: {', '.join(grouping.config().groups())}")
    print(f"app credentials: {'yes' if settings.app_credentials_present else 'no'}")
    print(f"user credentials: {'yes' if settings.user_credentials_present else 'no'}")
    print(f"eventsub: {'configured' if settings.eventsub_configured else 'disabled'}")
    return 0


async def list_subscriptions(settings: Settings) -> int:
    if not settings.app_credentials_present:
        print("TWITCH_CLIENT_ID and TWITCH_CLIENT_SECRET are required", file=sys.stderr)
        return 2
    client = TwitchClient(settings.twitch_client_id, settings.twitch_client_secret)
    try:
        subscriptions = await client.list_eventsub_subscriptions()
    except TwitchApiError as exc:
        print(f"failed to list subscriptions: {exc}", file=sys.stderr)
        return 1
    finally:
        await client.close()
    print(json.dumps(subscriptions, indent=2, sort_keys=True))
    return 0


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    settings = load_settings()
    command = args.command or "serve"
    if command == "check-config":
        return check_config(settings)
    if command == "list-subscriptions":
        configure_logging(settings.app_log_level)
        return asyncio.run(list_subscriptions(settings))
    return run(settings)


if __name__ == "__main__":
    raise SystemExit(main())
