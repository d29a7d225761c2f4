from __future__ import annotations

from collections.abc import Iterable

from prometheus_client.core import GaugeMetricFamily
from prometheus_client.metrics_core import Metric

from twitch_exporter.collector.base import Collector, CollectorContext, metric_name, register_collector
from twitch_exporter.collector.watchlist import ChannelRole, ChannelWatchlist


class WatchlistSizeCollector(Collector):
    name = "watchlist"

    def __init__(self, watchlist: ChannelWatchlist) -> None:
        self.watchlist = watchlist

    def collect(self) -> Iterable[Metric]:
        size = GaugeMetricFamily(
            metric_name("watchlist_size"),
            "Number of channels configured in the watchlist by role.",
            labels=["role"],
        )
        for role in (ChannelRole.SELF, ChannelRole.WATCH):
            size.add_metric([role.value], self.watchlist.count_by_role(role))
        return [size]


@register_collector("watchlist", enabled_by_default=True)
async def create_watchlist_collector(ctx: CollectorContext) -> Collector | None:
    return WatchlistSizeCollector(ctx.watchlist)
