"""
EventSub metrics for the self channel only.

Notifications arrive at-least-once and in no particular order across types;
every handler only ever adds to counters, so redeliveries inflate counts but
never corrupt them. All label values come from small fixed enums or from the
bounded reward grouping, and every reachable label combination is seeded at
zero when the collector is built so series never appear mid-run.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from functools import partial
from types import MappingProxyType
from typing import Any

from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily
from prometheus_client.metrics_core import Metric
from pydantic import ValidationError

from twitch_exporter.collector.base import (
    Collector,
    CollectorContext,
    metric_name,
    register_collector,
)
from twitch_exporter.collector.capabilities import CapabilityRegistry
from twitch_exporter.collector.reward_grouping import RewardGrouping
from twitch_exporter.collector.runtime_metrics import RuntimeMetrics
from twitch_exporter.collector.watchlist import ChannelRole
from twitch_exporter.core.errors import SubscriptionError
from twitch_exporter.eventsub.client import EventSubClient
from twitch_exporter.eventsub.events import (
    AdBreakEvent,
    BanEvent,
    CheerEvent,
    EventPayload,
    RaidEvent,
    RedemptionEvent,
    SubscribeEvent,
    decode_event,
)
from twitch_exporter.twitch import TwitchApiError

logger = logging.getLogger(__name__)

COLLECTOR_NAME = "eventsub_self"

STAGES = ("begin", "progress", "end")
SUBSCRIPTION_KINDS = ("new", "resub")
MODERATION_ACTIONS = ("timeout", "ban", "unban", "delete", "shield_on", "shield_off", "warn", "other")

NOTIFICATIONS = "notifications"
FOLLOWS = "follows"
SUBSCRIPTIONS = "subscriptions"
GIFT_SUBSCRIPTIONS = "gift_subscriptions"
BITS_EVENTS = "bits_events"
BITS = "bits"
POINTS_REDEMPTIONS = "points_redemptions"
RAIDS_IN = "raids_in"
RAIDS_OUT = "raids_out"
AD_BREAKS = "ad_breaks"
AD_MINUTES = "ad_minutes"
HYPE_TRAIN = "hype_train"
GOALS = "goals"
POLLS = "polls"
PREDICTIONS = "predictions"
CHARITY = "charity"
MODERATION = "moderation"

SCALAR_FAMILIES = (FOLLOWS, GIFT_SUBSCRIPTIONS, BITS_EVENTS, BITS, RAIDS_IN, RAIDS_OUT, AD_BREAKS, AD_MINUTES)
STAGE_FAMILIES = (HYPE_TRAIN, GOALS, POLLS, PREDICTIONS, CHARITY)

# Lifecycle events of the multi-stage families. Prediction "lock" is folded
# into progress and charity start/stop map onto begin/end.
STAGE_EVENTS: tuple[tuple[str, str, str], ...] = (
    ("channel.hype_train.begin", HYPE_TRAIN, "begin"),
    ("channel.hype_train.progress", HYPE_TRAIN, "progress"),
    ("channel.hype_train.end", HYPE_TRAIN, "end"),
    ("channel.goal.begin", GOALS, "begin"),
    ("channel.goal.progress", GOALS, "progress"),
    ("channel.goal.end", GOALS, "end"),
    ("channel.poll.begin", POLLS, "begin"),
    ("channel.poll.progress", POLLS, "progress"),
    ("channel.poll.end", POLLS, "end"),
    ("channel.prediction.begin", PREDICTIONS, "begin"),
    ("channel.prediction.progress", PREDICTIONS, "progress"),
    ("channel.prediction.lock", PREDICTIONS, "progress"),
    ("channel.prediction.end", PREDICTIONS, "end"),
    ("channel.charity_campaign.start", CHARITY, "begin"),
    ("channel.charity_campaign.progress", CHARITY, "progress"),
    ("channel.charity_campaign.stop", CHARITY, "end"),
)


@dataclass(frozen=True, slots=True)
class EventCounterSnapshot:
    counters: Mapping[str, Mapping[str, float]]
    desired: frozenset[str]

    def value(self, family: str, key: str = "") -> float:
        return self.counters.get(family, {}).get(key, 0.0)

    def family(self, name: str) -> Mapping[str, float]:
        return self.counters.get(name, {})


class EventCounterStore:
    """
    Monotonic counters keyed by (family, secondary label), plus the set of
    desired subscription types. One lock guards both; it is never held across
    I/O.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: dict[str, dict[str, float]] = {}
        self._desired: set[str] = set()

    def seed(self, family: str, keys: Iterable[str] = ("",)) -> None:
        with self._lock:
            bucket = self._counters.setdefault(family, {})
            for key in keys:
                bucket.setdefault(key, 0.0)

    def inc(self, family: str, key: str = "", *, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError("counters can only increase")
        with self._lock:
            bucket = self._counters.setdefault(family, {})
            bucket[key] = bucket.get(key, 0.0) + amount

    def desire(self, event_type: str) -> None:
        with self._lock:
            self._desired.add(event_type)

    def snapshot(self) -> EventCounterSnapshot:
        with self._lock:
            counters = {family: dict(bucket) for family, bucket in self._counters.items()}
            desired = frozenset(self._desired)
        return EventCounterSnapshot(counters=MappingProxyType(counters), desired=desired)


@dataclass(frozen=True, slots=True)
class EventHandler:
    update: Callable[[EventCounterStore, Any], None]
    decode: Callable[[Any], EventPayload] | None = None


def _ignore(store: EventCounterStore, event: Any) -> None:
    return None


def counting(family: str, key: str = "") -> EventHandler:
    """Handler that bumps one fixed counter and ignores the payload."""

    def update(store: EventCounterStore, event: Any) -> None:
        store.inc(family, key)

    return EventHandler(update=update)


def stage_counter(family: str, stage: str) -> EventHandler:
    if stage not in STAGES:
        raise ValueError(f"unknown stage {stage!r}")
    return counting(family, stage)


def decoding(model: type[EventPayload], update: Callable[[EventCounterStore, Any], None]) -> EventHandler:
    return EventHandler(update=update, decode=partial(decode_event, model))


def _apply_subscribe(store: EventCounterStore, event: SubscribeEvent) -> None:
    if event.is_gift:
        store.inc(GIFT_SUBSCRIPTIONS)
    else:
        store.inc(SUBSCRIPTIONS, "new")


def _apply_cheer(store: EventCounterStore, event: CheerEvent) -> None:
    store.inc(BITS_EVENTS)
    store.inc(BITS, amount=event.bits)


def _apply_raid(self_user_id: str, store: EventCounterStore, event: RaidEvent) -> None:
    if event.to_broadcaster_user_id == self_user_id:
        store.inc(RAIDS_IN)
    elif event.from_broadcaster_user_id == self_user_id:
        store.inc(RAIDS_OUT)


def _apply_ad_break(store: EventCounterStore, event: AdBreakEvent) -> None:
    store.inc(AD_BREAKS)
    if event.duration_seconds > 0:
        store.inc(AD_MINUTES, amount=event.duration_seconds / 60.0)


def _apply_ban(store: EventCounterStore, event: BanEvent) -> None:
    store.inc(MODERATION, "ban" if event.is_permanent else "timeout")


def build_handlers(self_user_id: str, grouping: RewardGrouping) -> dict[str, EventHandler]:
    def apply_redemption(store: EventCounterStore, event: RedemptionEvent) -> None:
        store.inc(POINTS_REDEMPTIONS, grouping.group_for(event.reward.id, event.reward.title))

    handlers: dict[str, EventHandler] = {
        # Liveness is owned by the poller; these are only counted.
        "stream.online": EventHandler(update=_ignore),
        "stream.offline": EventHandler(update=_ignore),
        "channel.follow": counting(FOLLOWS),
        "channel.subscribe": decoding(SubscribeEvent, _apply_subscribe),
        "channel.subscription.message": counting(SUBSCRIPTIONS, "resub"),
        "channel.subscription.gift": counting(GIFT_SUBSCRIPTIONS),
        "channel.cheer": decoding(CheerEvent, _apply_cheer),
        "channel.channel_points_custom_reward_redemption.add": decoding(RedemptionEvent, apply_redemption),
        "channel.raid": decoding(RaidEvent, partial(_apply_raid, self_user_id)),
        "channel.ad_break.begin": decoding(AdBreakEvent, _apply_ad_break),
        "channel.ban": decoding(BanEvent, _apply_ban),
        "channel.unban": counting(MODERATION, "unban"),
        "channel.chat.message_delete": counting(MODERATION, "delete"),
        "channel.shield_mode.begin": counting(MODERATION, "shield_on"),
        "channel.shield_mode.end": counting(MODERATION, "shield_off"),
        "channel.warning.send": counting(MODERATION, "warn"),
    }
    for event_type, family, stage in STAGE_EVENTS:
        handlers[event_type] = stage_counter(family, stage)
    return handlers


class EventAggregator:
    def __init__(
        self,
        self_user_id: str,
        grouping: RewardGrouping,
        store: EventCounterStore | None = None,
    ) -> None:
        self.self_user_id = self_user_id
        self.grouping = grouping
        self.store = store or EventCounterStore()
        self.handlers = build_handlers(self_user_id, grouping)
        self._seed()

    def _seed(self) -> None:
        self.store.seed(NOTIFICATIONS, self.handlers)
        for family in SCALAR_FAMILIES:
            self.store.seed(family)
        self.store.seed(SUBSCRIPTIONS, SUBSCRIPTION_KINDS)
        self.store.seed(POINTS_REDEMPTIONS, self.grouping.config().groups())
        for family in STAGE_FAMILIES:
            self.store.seed(family, STAGES)
        self.store.seed(MODERATION, MODERATION_ACTIONS)

    def event_types(self) -> list[str]:
        return sorted(self.handlers)

    def dispatch(self, event_type: str, raw: Any) -> bool:
        """
        Count one notification. The per-type counter always moves; a payload
        that fails to decode only skips the payload-specific update.
        """
        handler = self.handlers.get(event_type)
        if handler is None:
            logger.debug("Ignoring unhandled EventSub type %s", event_type)
            return False
        self.store.inc(NOTIFICATIONS, event_type)
        event = raw
        if handler.decode is not None:
            try:
                event = handler.decode(raw)
            except (ValidationError, ValueError, TypeError) as exc:
                logger.debug("Failed to decode %s payload: %s", event_type, exc)
                return True
        handler.update(self.store, event)
        return True


@dataclass(frozen=True, slots=True)
class DesiredSubscription:
    event_type: str
    version: str
    condition: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    requires_scope: str | None = None


# (event type, version, condition shape, required user scope)
_SUBSCRIPTION_PLAN: tuple[tuple[str, str, str, str | None], ...] = (
    ("stream.online", "1", "broadcaster", None),
    ("stream.offline", "1", "broadcaster", None),
    ("channel.raid", "1", "raid_to", None),
    ("channel.raid", "1", "raid_from", None),
    ("channel.follow", "2", "moderator", "moderator:read:followers"),
    ("channel.subscribe", "1", "broadcaster", "channel:read:subscriptions"),
    ("channel.subscription.message", "1", "broadcaster", "channel:read:subscriptions"),
    ("channel.subscription.gift", "1", "broadcaster", "channel:read:subscriptions"),
    ("channel.cheer", "1", "broadcaster", "bits:read"),
    ("channel.channel_points_custom_reward_redemption.add", "1", "broadcaster", "channel:read:redemptions"),
    ("channel.hype_train.begin", "1", "broadcaster", "channel:read:hype_train"),
    ("channel.hype_train.progress", "1", "broadcaster", "channel:read:hype_train"),
    ("channel.hype_train.end", "1", "broadcaster", "channel:read:hype_train"),
    ("channel.goal.begin", "1", "broadcaster", "channel:read:goals"),
    ("channel.goal.progress", "1", "broadcaster", "channel:read:goals"),
    ("channel.goal.end", "1", "broadcaster", "channel:read:goals"),
    ("channel.poll.begin", "1", "broadcaster", "channel:read:polls"),
    ("channel.poll.progress", "1", "broadcaster", "channel:read:polls"),
    ("channel.poll.end", "1", "broadcaster", "channel:read:polls"),
    ("channel.prediction.begin", "1", "broadcaster", "channel:read:predictions"),
    ("channel.prediction.progress", "1", "broadcaster", "channel:read:predictions"),
    ("channel.prediction.lock", "1", "broadcaster", "channel:read:predictions"),
    ("channel.prediction.end", "1", "broadcaster", "channel:read:predictions"),
    ("channel.charity_campaign.start", "1", "broadcaster", "channel:read:charity"),
    ("channel.charity_campaign.progress", "1", "broadcaster", "channel:read:charity"),
    ("channel.charity_campaign.stop", "1", "broadcaster", "channel:read:charity"),
    ("channel.ban", "1", "broadcaster", "moderation:read"),
    ("channel.unban", "1", "broadcaster", "moderation:read"),
    ("channel.chat.message_delete", "1", "moderator", "moderation:read"),
    ("channel.shield_mode.begin", "1", "moderator", "moderation:read"),
    ("channel.shield_mode.end", "1", "moderator", "moderation:read"),
    ("channel.warning.send", "1", "moderator", "moderator:read:warnings"),
    ("channel.ad_break.begin", "1", "broadcaster", "channel:read:ads"),
)


def _condition(shape: str, user_id: str) -> Mapping[str, str]:
    if shape == "broadcaster":
        condition = {"broadcaster_user_id": user_id}
    elif shape == "moderator":
        condition = {"broadcaster_user_id": user_id, "moderator_user_id": user_id}
    elif shape == "raid_to":
        condition = {"to_broadcaster_user_id": user_id}
    elif shape == "raid_from":
        condition = {"from_broadcaster_user_id": user_id}
    else:
        raise ValueError(f"unknown condition shape {shape!r}")
    return MappingProxyType(condition)


def desired_subscriptions(self_user_id: str) -> tuple[DesiredSubscription, ...]:
    return tuple(
        DesiredSubscription(
            event_type=event_type,
            version=version,
            condition=_condition(shape, self_user_id),
            requires_scope=scope,
        )
        for event_type, version, shape, scope in _SUBSCRIPTION_PLAN
    )


class EventSubSelfCollector(Collector):
    name = COLLECTOR_NAME

    def __init__(
        self,
        eventsub: EventSubClient,
        capabilities: CapabilityRegistry,
        runtime_metrics: RuntimeMetrics,
        grouping: RewardGrouping,
        self_login: str,
        self_user_id: str,
    ) -> None:
        self.eventsub = eventsub
        self.capabilities = capabilities
        self.runtime_metrics = runtime_metrics
        self.self_login = self_login
        self.self_user_id = self_user_id
        self.aggregator = EventAggregator(self_user_id, grouping)
        self.subscriptions = desired_subscriptions(self_user_id)
        self._active: frozenset[str] = frozenset()
        for event_type in self.aggregator.event_types():
            eventsub.on(event_type, partial(self.aggregator.dispatch, event_type))

    async def subscribe_all(self) -> None:
        for desired in self.subscriptions:
            if desired.requires_scope and not self.capabilities.has_user_scope(desired.requires_scope):
                logger.info(
                    "Skipping EventSub %s: user token lacks scope %s",
                    desired.event_type,
                    desired.requires_scope,
                )
                self.runtime_metrics.inc_collector_disabled(COLLECTOR_NAME, "missing_scope")
                continue
            self.aggregator.store.desire(desired.event_type)
            try:
                await self.eventsub.ensure(desired.event_type, desired.version, desired.condition)
            except (SubscriptionError, TwitchApiError) as exc:
                # One rejected type must not stop the remaining ones.
                logger.warning("Failed to subscribe to EventSub %s: %s", desired.event_type, exc)

    async def start(self) -> None:
        # Twitch posts a verification challenge per created subscription, so
        # this must run while the webhook route is already serving.
        await self.subscribe_all()
        await self.refresh()

    async def refresh(self) -> None:
        self._active = await self.eventsub.active_event_types()

    def collect(self) -> Iterable[Metric]:
        snapshot = self.aggregator.store.snapshot()
        active = self._active
        channel = self.self_login
        role = ChannelRole.SELF.value

        desired_family = GaugeMetricFamily(
            metric_name("eventsub", "subscription_desired"),
            "Whether the exporter desires an EventSub subscription for this event type (1 = yes, 0 = no).",
            labels=["event_type"],
        )
        active_family = GaugeMetricFamily(
            metric_name("eventsub", "subscription_active"),
            "Whether an EventSub subscription is currently active/enabled for this event type (1 = yes, 0 = no).",
            labels=["event_type"],
        )
        for event_type in sorted(snapshot.desired | active):
            desired_family.add_metric([event_type], 1 if event_type in snapshot.desired else 0)
            active_family.add_metric([event_type], 1 if event_type in active else 0)

        notifications = CounterMetricFamily(
            metric_name("eventsub", "notifications_total"),
            "Total number of EventSub notifications received.",
            labels=["channel", "role", "event_type"],
        )
        for event_type, value in sorted(snapshot.family(NOTIFICATIONS).items()):
            notifications.add_metric([channel, role, event_type], value)

        families: list[Metric] = [desired_family, active_family, notifications]
        families.extend(
            _scalar_counter(name, doc, channel, snapshot.value(family))
            for name, doc, family in (
                ("channel_follows_total", "Total number of follows for the channel (EventSub).", FOLLOWS),
                (
                    "channel_gift_subscriptions_total",
                    "Total number of gifted subscription events for the channel (EventSub).",
                    GIFT_SUBSCRIPTIONS,
                ),
                ("channel_bits_total", "Total number of bits cheered for the channel (EventSub).", BITS),
                ("channel_bits_events_total", "Total number of cheer events for the channel (EventSub).", BITS_EVENTS),
                ("channel_raids_in_total", "Total number of raids into the channel (EventSub).", RAIDS_IN),
                ("channel_raids_out_total", "Total number of raids out of the channel (EventSub).", RAIDS_OUT),
                ("ads_ad_breaks_total", "Total number of ad breaks for the channel (EventSub).", AD_BREAKS),
                ("ads_minutes_total", "Total ad minutes for the channel (EventSub), if durations are provided.", AD_MINUTES),
            )
        )
        families.extend(
            _labelled_counter(name, doc, channel, label, snapshot.family(family))
            for name, doc, label, family in (
                (
                    "channel_subscriptions_total",
                    "Total number of subscription events for the channel (EventSub).",
                    "kind",
                    SUBSCRIPTIONS,
                ),
                (
                    "channel_points_redemptions_total",
                    "Total number of channel points redemptions for the channel (EventSub).",
                    "reward_group",
                    POINTS_REDEMPTIONS,
                ),
                ("hype_train_events_total", "Total number of hype train events for the channel (EventSub).", "stage", HYPE_TRAIN),
                ("goals_events_total", "Total number of goal events for the channel (EventSub).", "stage", GOALS),
                ("polls_events_total", "Total number of poll events for the channel (EventSub).", "stage", POLLS),
                ("predictions_events_total", "Total number of prediction events for the channel (EventSub).", "stage", PREDICTIONS),
                ("charity_events_total", "Total number of charity campaign events for the channel (EventSub).", "stage", CHARITY),
                (
                    "moderation_actions_total",
                    "Total number of moderation actions observed for the channel (EventSub).",
                    "action",
                    MODERATION,
                ),
            )
        )
        return families


def _scalar_counter(name: str, documentation: str, channel: str, value: float) -> Metric:
    family = CounterMetricFamily(metric_name(name), documentation, labels=["channel"])
    family.add_metric([channel], value)
    return family


def _labelled_counter(
    name: str,
    documentation: str,
    channel: str,
    label: str,
    values: Mapping[str, float],
) -> Metric:
    family = CounterMetricFamily(metric_name(name), documentation, labels=["channel", label])
    for key, value in sorted(values.items()):
        family.add_metric([channel, key], value)
    return family


@register_collector(COLLECTOR_NAME, enabled_by_default=False)
async def create_eventsub_self_collector(ctx: CollectorContext) -> Collector | None:
    self_login = ctx.watchlist.self_login
    if not self_login:
        ctx.runtime_metrics.inc_collector_disabled(COLLECTOR_NAME, "not_self_channel")
        return None
    if ctx.eventsub is None:
        ctx.runtime_metrics.inc_collector_disabled(COLLECTOR_NAME, "config_disabled")
        return None
    if ctx.twitch is None:
        ctx.runtime_metrics.inc_collector_disabled(COLLECTOR_NAME, "missing_token")
        return None

    users = await ctx.twitch.get_users([self_login])
    if not users:
        logger.warning("Self channel %s does not resolve to a Twitch user", self_login)
        ctx.runtime_metrics.inc_collector_disabled(COLLECTOR_NAME, "not_self_channel")
        return None

    collector = EventSubSelfCollector(
        eventsub=ctx.eventsub,
        capabilities=ctx.capabilities,
        runtime_metrics=ctx.runtime_metrics,
        grouping=ctx.reward_grouping,
        self_login=self_login,
        self_user_id=str(users[0]["id"]),
    )
    return collector
