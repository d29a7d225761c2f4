from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily
from prometheus_client.metrics_core import Metric

from twitch_exporter.collector.base import (
    Collector,
    CollectorContext,
    NoDataError,
    metric_name,
    register_collector,
)
from twitch_exporter.collector.watchlist import ChannelRole, ChannelWatchlist
from twitch_exporter.core.normalization import normalize_login
from twitch_exporter.twitch import MAX_LOGINS_PER_REQUEST, TwitchClient

logger = logging.getLogger(__name__)

LABELS = ["channel", "role"]


@dataclass(frozen=True, slots=True)
class StreamSnapshot:
    login: str
    viewer_count: int = 0
    started_at: datetime | None = None
    title: str = ""
    category_id: str = ""

    @classmethod
    def from_api(cls, raw: Mapping[str, Any]) -> StreamSnapshot:
        started_at = None
        raw_started = str(raw.get("started_at") or "")
        if raw_started:
            try:
                started_at = datetime.fromisoformat(raw_started.replace("Z", "+00:00"))
            except ValueError:
                logger.debug("Ignoring unparseable started_at %r", raw_started)
        return cls(
            login=normalize_login(str(raw.get("user_login", ""))),
            viewer_count=int(raw.get("viewer_count") or 0),
            started_at=started_at,
            title=str(raw.get("title") or ""),
            category_id=str(raw.get("game_id") or ""),
        )


@dataclass(slots=True)
class ChannelLiveState:
    live: bool = False
    started_at: datetime | None = None
    last_title: str = ""
    last_category_id: str = ""
    last_transition_at: datetime | None = None

    stream_starts: int = 0
    stream_ends: int = 0
    title_changes: int = 0
    category_changes: int = 0

    def observe(self, stream: StreamSnapshot | None, now: datetime) -> None:
        """Apply one poll observation. ``None`` means the channel is offline."""
        is_live = stream is not None
        if not self.live and is_live:
            self.stream_starts += 1
            self.last_transition_at = now
            self.started_at = stream.started_at
        elif self.live and not is_live:
            self.stream_ends += 1
            self.last_transition_at = now
            self.started_at = None
            self.last_title = ""
            self.last_category_id = ""

        if stream is not None:
            # Only non-empty to non-empty changes count; the first observation
            # after going live has nothing to compare against.
            if self.last_title and stream.title and stream.title != self.last_title:
                self.title_changes += 1
            if self.last_category_id and stream.category_id and stream.category_id != self.last_category_id:
                self.category_changes += 1
            self.last_title = stream.title
            self.last_category_id = stream.category_id

        self.live = is_live


class LivenessTracker:
    """Per-channel liveness state. Only the polling loop mutates it."""

    def __init__(self) -> None:
        self._states: dict[str, ChannelLiveState] = {}

    def state(self, login: str) -> ChannelLiveState:
        login = normalize_login(login)
        st = self._states.get(login)
        if st is None:
            st = ChannelLiveState()
            self._states[login] = st
        return st

    def observe(
        self,
        logins: Iterable[str],
        streams_by_login: Mapping[str, StreamSnapshot],
        now: datetime,
    ) -> None:
        for login in logins:
            login = normalize_login(login)
            self.state(login).observe(streams_by_login.get(login), now)


def chunked(items: list[str], size: int) -> list[list[str]]:
    size = max(1, size)
    return [items[i:i + size] for i in range(0, len(items), size)]


class ChannelCoreCollector(Collector):
    name = "channel_core"

    def __init__(self, client: TwitchClient | None, watchlist: ChannelWatchlist) -> None:
        self.client = client
        self.watchlist = watchlist
        self.tracker = LivenessTracker()
        self._streams: dict[str, StreamSnapshot] = {}
        self._observed_at: datetime | None = None
        self._families: list[Metric] = []

    async def refresh(self) -> None:
        logins = self.watchlist.all_logins()
        if not logins or self.client is None:
            raise NoDataError("no channels or no API client")

        # Fetch every batch before touching state so a failed cycle leaves the
        # previous observation intact.
        streams: dict[str, StreamSnapshot] = {}
        for batch in chunked(logins, MAX_LOGINS_PER_REQUEST):
            for raw in await self.client.get_streams(batch):
                snapshot = StreamSnapshot.from_api(raw)
                streams[snapshot.login] = snapshot

        now = datetime.now(UTC)
        self.observe(streams, now)

    def observe(self, streams: Mapping[str, StreamSnapshot], now: datetime) -> None:
        logins = self.watchlist.all_logins()
        self.tracker.observe(logins, streams, now)
        self._streams = dict(streams)
        self._observed_at = now
        self._families = self._build_families(logins, now)

    def collect(self) -> Iterable[Metric]:
        return list(self._families)

    def _build_families(self, logins: list[str], now: datetime) -> list[Metric]:
        live = GaugeMetricFamily(
            metric_name("channel_live"),
            "Whether the channel is currently live (1 = live, 0 = offline).",
            labels=LABELS,
        )
        viewers = GaugeMetricFamily(
            metric_name("channel_viewers"),
            "Current viewer count for the channel (0 when offline).",
            labels=LABELS,
        )
        started_at = GaugeMetricFamily(
            metric_name("channel_stream_started_at_seconds"),
            "Unix timestamp when the current stream started (0 when offline).",
            labels=LABELS,
        )
        uptime = GaugeMetricFamily(
            metric_name("channel_stream_uptime_seconds"),
            "Stream uptime in seconds (0 when offline).",
            labels=LABELS,
        )
        category = GaugeMetricFamily(
            metric_name("channel_category_id"),
            "Current category/game numeric ID for the channel (0 when offline/unknown).",
            labels=LABELS,
        )
        title_changes = CounterMetricFamily(
            metric_name("channel_title_change_total"),
            "Total number of observed title changes for the channel.",
            labels=LABELS,
        )
        category_changes = CounterMetricFamily(
            metric_name("channel_category_change_total"),
            "Total number of observed category/game changes for the channel.",
            labels=LABELS,
        )
        starts = CounterMetricFamily(
            metric_name("channel_stream_starts_total"),
            "Total number of observed stream start transitions (offline -> live).",
            labels=LABELS,
        )
        ends = CounterMetricFamily(
            metric_name("channel_stream_ends_total"),
            "Total number of observed stream end transitions (live -> offline).",
            labels=LABELS,
        )

        for login in logins:
            role = self.watchlist.role_label_for_login(login) or ChannelRole.WATCH.value
            labels = [login, role]
            st = self.tracker.state(login)
            stream = self._streams.get(login)

            stream_started = 0.0
            stream_uptime = 0.0
            category_id = 0.0
            if stream is not None:
                if stream.started_at is not None:
                    stream_started = stream.started_at.timestamp()
                    stream_uptime = max(0.0, (now - stream.started_at).total_seconds())
                category_id = _numeric_id(stream.category_id)

            live.add_metric(labels, 1 if stream is not None else 0)
            viewers.add_metric(labels, stream.viewer_count if stream is not None else 0)
            started_at.add_metric(labels, stream_started)
            uptime.add_metric(labels, stream_uptime)
            category.add_metric(labels, category_id)
            title_changes.add_metric(labels, st.title_changes)
            category_changes.add_metric(labels, st.category_changes)
            starts.add_metric(labels, st.stream_starts)
            ends.add_metric(labels, st.stream_ends)

        return [live, viewers, started_at, uptime, category, title_changes, category_changes, starts, ends]


def _numeric_id(value: str) -> float:
    if not value:
        return 0.0
    try:
        return float(value)
    except ValueError:
        return 0.0


@register_collector("channel_core", enabled_by_default=True)
async def create_channel_core_collector(ctx: CollectorContext) -> Collector | None:
    return ChannelCoreCollector(ctx.twitch, ctx.watchlist)
