from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from prometheus_client.metrics_core import Metric

if TYPE_CHECKING:
    from twitch_exporter.collector.capabilities import CapabilityRegistry
    from twitch_exporter.collector.reward_grouping import RewardGrouping
    from twitch_exporter.collector.runtime_metrics import RuntimeMetrics
    from twitch_exporter.collector.watchlist import ChannelWatchlist
    from twitch_exporter.eventsub.client import EventSubClient
    from twitch_exporter.twitch import TwitchClient

NAMESPACE = "twitch"


def metric_name(*parts: str) -> str:
    return "_".join([NAMESPACE, *[p for p in parts if p]])


class NoDataError(Exception):
    """Raised by ``Collector.refresh`` when there is nothing to observe."""


class Collector:
    name = ""

    async def start(self) -> None:
        """One-off work run in the background once the HTTP server is up."""
        return None

    async def refresh(self) -> None:
        """Run one poll cycle. May raise; previously collected state is kept."""
        return None

    def collect(self) -> Iterable[Metric]:
        """Emit a point-in-time view without doing any I/O."""
        raise NotImplementedError


@dataclass(slots=True)
class CollectorContext:
    watchlist: ChannelWatchlist
    capabilities: CapabilityRegistry
    reward_grouping: RewardGrouping
    runtime_metrics: RuntimeMetrics
    twitch: TwitchClient | None = None
    eventsub: EventSubClient | None = None


CollectorFactory = Callable[[CollectorContext], Awaitable["Collector | None"]]


@dataclass(frozen=True, slots=True)
class CollectorRegistration:
    name: str
    enabled_by_default: bool
    factory: CollectorFactory


_REGISTRATIONS: dict[str, CollectorRegistration] = {}


def register_collector(
    name: str,
    *,
    enabled_by_default: bool,
) -> Callable[[CollectorFactory], CollectorFactory]:
    def decorator(factory: CollectorFactory) -> CollectorFactory:
        _REGISTRATIONS[name] = CollectorRegistration(name, enabled_by_default, factory)
        return factory

    return decorator


def registered_collectors() -> dict[str, CollectorRegistration]:
    return dict(_REGISTRATIONS)
