from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass, field
from datetime import timedelta

import uvicorn
from fastapi import FastAPI
from prometheus_client import CollectorRegistry

from twitch_exporter.collector import CollectorContext, Exporter
from twitch_exporter.collector.capabilities import KNOWN_USER_SCOPES, CapabilityRegistry
from twitch_exporter.collector.reward_grouping import RewardGrouping
from twitch_exporter.collector.runtime_metrics import RuntimeMetrics
from twitch_exporter.collector.watchlist import ChannelWatchlist, resolve_channel_logins
from twitch_exporter.config import Settings, load_settings, parse_key_value_pairs
from twitch_exporter.core.errors import ConfigError
from twitch_exporter.core.message_dedup import EventSubMessageDeduper
from twitch_exporter.core.normalization import split_csv
from twitch_exporter.eventsub import EventSubClient, SignatureVerifier, SubscriptionReconciler
from twitch_exporter.routes import register_system_routes, register_webhook_routes
from twitch_exporter.twitch import TwitchApiError, TwitchClient

logger = logging.getLogger(__name__)

EVENTSUB_MESSAGE_DEDUP_TTL = timedelta(minutes=10)
EVENTSUB_SELF_COLLECTOR = "eventsub_self"


@dataclass(slots=True)
class ExporterState:
    settings: Settings
    registry: CollectorRegistry
    runtime_metrics: RuntimeMetrics
    capabilities: CapabilityRegistry
    reward_grouping: RewardGrouping
    watchlist: ChannelWatchlist
    twitch: TwitchClient | None = None
    eventsub: EventSubClient | None = None
    exporter: Exporter | None = None
    stop_event: asyncio.Event = field(default_factory=asyncio.Event)
    startup_task: asyncio.Task | None = None
    poll_task: asyncio.Task | None = None


def build_reward_grouping(settings: Settings) -> RewardGrouping:
    grouping = RewardGrouping()
    grouping.configure(
        default_group=settings.reward_group_default,
        unknown_group=settings.reward_group_unknown,
        max_groups=settings.reward_group_max,
        by_id=parse_key_value_pairs(settings.reward_group_by_id, setting="REWARD_GROUP_BY_ID"),
        by_title=parse_key_value_pairs(settings.reward_group_by_title, setting="REWARD_GROUP_BY_TITLE"),
    )
    return grouping


def build_watchlist(settings: Settings) -> ChannelWatchlist:
    legacy = split_csv(settings.twitch_channels)
    self_login, watch, ambiguous = resolve_channel_logins(
        settings.twitch_self_channel,
        split_csv(settings.twitch_watch_channels),
        legacy,
    )
    if legacy:
        logger.warning("TWITCH_CHANNELS is deprecated; use TWITCH_SELF_CHANNEL and TWITCH_WATCH_CHANNELS")
    if ambiguous:
        logger.warning(
            "TWITCH_CHANNELS lists %d channels without TWITCH_SELF_CHANNEL; treating %s as self",
            len(legacy),
            self_login,
        )
    return ChannelWatchlist.build(self_login, watch)


def build_eventsub(
    settings: Settings,
    twitch: TwitchClient | None,
    runtime_metrics: RuntimeMetrics,
) -> EventSubClient | None:
    if not settings.eventsub_enabled:
        return None
    if not settings.eventsub_configured:
        logger.error("EventSub is enabled but EVENTSUB_WEBHOOK_URL or EVENTSUB_WEBHOOK_SECRET is missing; disabling")
        return None
    if twitch is None:
        logger.error("EventSub is enabled but Twitch app credentials are missing; disabling")
        return None

    max_age = None
    if settings.eventsub_max_message_age_seconds > 0:
        max_age = timedelta(seconds=settings.eventsub_max_message_age_seconds)
    verifier = SignatureVerifier(
        settings.eventsub_webhook_secret,
        on_failure=runtime_metrics.inc_eventsub_signature_fail,
        max_message_age=max_age,
    )
    return EventSubClient(
        registry_client=twitch,
        verifier=verifier,
        reconciler=SubscriptionReconciler(settings.eventsub_webhook_url, settings.eventsub_webhook_secret),
        deduper=EventSubMessageDeduper(ttl=EVENTSUB_MESSAGE_DEDUP_TTL),
    )


async def discover_capabilities(state: ExporterState) -> None:
    settings = state.settings
    app_present = settings.app_credentials_present
    user_present = settings.user_credentials_present
    scopes: list[str] = []
    if user_present and state.twitch is not None:
        scopes = await _validated_user_scopes(state.twitch, settings)

    state.runtime_metrics.set_oauth_token_present("app", app_present)
    state.runtime_metrics.set_oauth_token_present("user", user_present)
    state.runtime_metrics.set_known_oauth_scopes(KNOWN_USER_SCOPES, scopes)
    snapshot = state.capabilities.publish(
        app_token_present=app_present,
        user_token_present=user_present,
        user_scopes=scopes,
    )
    logger.info(
        "Capabilities: app_token=%s user_token=%s scopes=%s",
        snapshot.app_token_present,
        snapshot.user_token_present,
        sorted(snapshot.user_scopes),
    )


async def _validated_user_scopes(twitch: TwitchClient, settings: Settings) -> list[str]:
    try:
        info = await twitch.validate_user_token(settings.twitch_access_token)
    except TwitchApiError as exc:
        logger.info("Configured user token did not validate (%s); refreshing", exc)
    else:
        return list(info.get("scopes") or [])

    try:
        token = await twitch.refresh_token(settings.twitch_refresh_token)
        info = await twitch.validate_user_token(token.access_token)
    except TwitchApiError as exc:
        logger.warning("Failed to validate user token scopes: %s", exc)
        return []
    return list(info.get("scopes") or [])


async def start_exporter(state: ExporterState) -> Exporter:
    settings = state.settings
    await discover_capabilities(state)
    state.runtime_metrics.set_configured(settings.app_credentials_present)
    if not settings.app_credentials_present:
        logger.warning("Twitch credentials not configured; exporter will start but collectors are disabled")

    enabled = split_csv(settings.collectors_enabled)
    if state.eventsub is not None:
        enabled.append(EVENTSUB_SELF_COLLECTOR)
    ctx = CollectorContext(
        watchlist=state.watchlist,
        capabilities=state.capabilities,
        reward_grouping=state.reward_grouping,
        runtime_metrics=state.runtime_metrics,
        twitch=state.twitch,
        eventsub=state.eventsub,
    )
    exporter = await Exporter.create(
        ctx,
        enabled=enabled,
        disabled=split_csv(settings.collectors_disabled),
        disable_defaults=not settings.app_credentials_present,
    )
    state.registry.register(exporter)
    state.exporter = exporter
    await exporter.refresh()
    state.startup_task = asyncio.create_task(exporter.start())
    state.stop_event = asyncio.Event()
    state.poll_task = asyncio.create_task(exporter.run(settings.poll_interval_seconds, state.stop_event))
    return exporter


async def stop_exporter(state: ExporterState) -> None:
    state.stop_event.set()
    if state.startup_task is not None:
        if not state.startup_task.done():
            state.startup_task.cancel()
        with suppress(asyncio.CancelledError):
            await state.startup_task
        state.startup_task = None
    if state.poll_task is not None:
        await state.poll_task
        state.poll_task = None
    if state.exporter is not None:
        state.registry.unregister(state.exporter)
        state.exporter = None
    if state.twitch is not None:
        await state.twitch.close()


def create_app(settings: Settings | None = None) -> FastAPI:
    """Build every component up front; configuration errors raise here."""
    settings = settings or load_settings()
    registry = CollectorRegistry()
    runtime_metrics = RuntimeMetrics(registry)
    reward_grouping = build_reward_grouping(settings)
    watchlist = build_watchlist(settings)

    twitch = None
    if settings.app_credentials_present:
        twitch = TwitchClient(
            client_id=settings.twitch_client_id,
            client_secret=settings.twitch_client_secret,
            runtime_metrics=runtime_metrics,
        )
    state = ExporterState(
        settings=settings,
        registry=registry,
        runtime_metrics=runtime_metrics,
        capabilities=CapabilityRegistry(),
        reward_grouping=reward_grouping,
        watchlist=watchlist,
        twitch=twitch,
        eventsub=build_eventsub(settings, twitch, runtime_metrics),
    )

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        await start_exporter(state)
        try:
            yield
        finally:
            await stop_exporter(state)

    app = FastAPI(title="Twitch Exporter", lifespan=lifespan, docs_url=None, redoc_url=None)
    app.state.exporter_state = state
    register_system_routes(app, registry=registry, metrics_path=settings.metrics_path)
    if state.eventsub is not None:
        register_webhook_routes(app, path=settings.eventsub_webhook_path, eventsub=state.eventsub)
        logger.info("EventSub webhook listening on %s", settings.eventsub_webhook_path)
    return app


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def run(settings: Settings | None = None) -> int:
    settings = settings or load_settings()
    configure_logging(settings.app_log_level)
    try:
        app = create_app(settings)
    except ConfigError as exc:
        logger.error("Invalid configuration: %s", exc)
        return 2
    logger.info("Listening on %s:%d", settings.app_host, settings.app_port)
    uvicorn.run(
        app,
        host=settings.app_host,
        port=settings.app_port,
        log_level=settings.app_log_level,
    )
    return 0
