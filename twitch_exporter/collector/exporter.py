from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Iterator
from datetime import UTC, datetime

from prometheus_client.metrics_core import Metric

from twitch_exporter.collector.base import (
    Collector,
    CollectorContext,
    NoDataError,
    registered_collectors,
)
from twitch_exporter.collector.runtime_metrics import RuntimeMetrics, classify_error_reason

logger = logging.getLogger(__name__)


class Exporter:
    """
    Custom ``prometheus_client`` collector fanning out to the enabled
    collectors. ``refresh`` is driven by a timer; scrapes only read the state
    each collector built during its last successful refresh.
    """

    def __init__(self, collectors: Iterable[Collector], runtime_metrics: RuntimeMetrics) -> None:
        self.collectors = list(collectors)
        self.runtime_metrics = runtime_metrics

    @classmethod
    async def create(
        cls,
        ctx: CollectorContext,
        *,
        enabled: Iterable[str] = (),
        disabled: Iterable[str] = (),
        disable_defaults: bool = False,
    ) -> Exporter:
        registrations = registered_collectors()
        enabled = set(enabled)
        disabled = set(disabled)
        for name in sorted((enabled | disabled) - set(registrations)):
            logger.warning("Unknown collector %s in collector overrides", name)

        collectors: list[Collector] = []
        for name, registration in sorted(registrations.items()):
            is_enabled = registration.enabled_by_default and not disable_defaults
            if name in enabled:
                is_enabled = True
            if name in disabled:
                is_enabled = False
            if not is_enabled:
                logger.info("Collector %s is disabled", name)
                continue
            try:
                collector = await registration.factory(ctx)
            except Exception as exc:
                reason = classify_error_reason(exc)
                logger.warning("Failed to create collector %s (%s): %s", name, reason, exc)
                ctx.runtime_metrics.observe_collector_error(name, reason)
                continue
            if collector is None:
                logger.info("Collector %s is not available with the current configuration", name)
                continue
            logger.info("Collector %s enabled", name)
            collectors.append(collector)
        return cls(collectors, ctx.runtime_metrics)

    @property
    def names(self) -> list[str]:
        return [collector.name for collector in self.collectors]

    async def start(self) -> None:
        for collector in self.collectors:
            try:
                await collector.start()
            except Exception as exc:
                reason = classify_error_reason(exc)
                logger.warning("Collector %s startup failed (%s): %s", collector.name, reason, exc)
                self.runtime_metrics.observe_collector_error(collector.name, reason)

    async def refresh(self) -> None:
        for collector in self.collectors:
            try:
                await collector.refresh()
            except NoDataError:
                continue
            except Exception as exc:
                # A failing collector must not take the others down; it is
                # retried on the next cycle with its previous state intact.
                reason = classify_error_reason(exc)
                logger.warning("Collector %s refresh failed (%s): %s", collector.name, reason, exc)
                self.runtime_metrics.observe_collector_error(collector.name, reason)
                continue
            self.runtime_metrics.observe_collector_success(collector.name, datetime.now(UTC))

    def collect(self) -> Iterator[Metric]:
        for collector in self.collectors:
            yield from collector.collect()

    async def run(self, interval: float, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                await self.refresh()
