"""Shared pytest fixtures for exporter tests.

Fixture summary
---------------
registry          - Fresh Prometheus ``CollectorRegistry`` per test.
runtime_metrics   - ``RuntimeMetrics`` bound to ``registry``.
fake_registry     - In-memory EventSub subscription registry.
make_settings     - Build ``Settings`` from keyword overrides without reading
                    any ``.env`` file.
"""

from __future__ import annotations

import itertools
from typing import Any

import pytest
from prometheus_client import CollectorRegistry

from twitch_exporter.collector.runtime_metrics import RuntimeMetrics
from twitch_exporter.config import Settings
from twitch_exporter.twitch import CreateSubscriptionResult, TwitchApiError


class FakeSubscriptionRegistry:
    """Stores created subscriptions and lists them the way Helix does."""

    def __init__(self) -> None:
        self.subscriptions: list[dict[str, Any]] = []
        self.created: list[dict[str, Any]] = []
        self.list_calls: list[dict[str, str | None]] = []
        self.reject_with: str | None = None
        self.fail_listing = False
        self._ids = itertools.count(1)

    async def list_eventsub_subscriptions(
        self,
        event_type: str | None = None,
        user_id: str | None = None,
    ) -> list[dict[str, Any]]:
        self.list_calls.append({"event_type": event_type, "user_id": user_id})
        if self.fail_listing:
            raise TwitchApiError("Failed listing subscriptions: status 503")
        return [dict(s) for s in self.subscriptions]

    async def create_eventsub_subscription(
        self,
        event_type: str,
        version: str,
        condition: dict[str, str],
        transport: dict[str, str],
    ) -> CreateSubscriptionResult:
        if self.reject_with is not None:
            return CreateSubscriptionResult(accepted=False, status_code=403, error_message=self.reject_with)
        record = {
            "id": f"sub-{next(self._ids)}",
            "type": event_type,
            "version": version,
            "status": "webhook_callback_verification_pending",
            "condition": dict(condition),
            "transport": {"method": transport["method"], "callback": transport["callback"]},
        }
        self.created.append(record)
        self.subscriptions.append(record)
        return CreateSubscriptionResult(accepted=True, status_code=202, subscription=record)


@pytest.fixture
def registry() -> CollectorRegistry:
    return CollectorRegistry()


@pytest.fixture
def runtime_metrics(registry: CollectorRegistry) -> RuntimeMetrics:
    return RuntimeMetrics(registry)


@pytest.fixture
def fake_registry() -> FakeSubscriptionRegistry:
    return FakeSubscriptionRegistry()


@pytest.fixture
def make_settings():
    def factory(**overrides: Any) -> Settings:
        return Settings(_env_file=None, **overrides)

    return factory
