from twitch_exporter.collector import channel_core, eventsub_self, watchlist_size  # noqa: F401  registers collectors
from twitch_exporter.collector.base import (
    Collector,
    CollectorContext,
    NoDataError,
    register_collector,
    registered_collectors,
)
from twitch_exporter.collector.exporter import Exporter

__all__ = [
    "Collector",
    "CollectorContext",
    "Exporter",
    "NoDataError",
    "register_collector",
    "registered_collectors",
]
