from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable, Mapping
from typing import Any

from twitch_exporter.core.message_dedup import EventSubMessageDeduper
from twitch_exporter.eventsub.reconciler import SubscriptionReconciler, SubscriptionRegistryClient
from twitch_exporter.eventsub.signature import SignatureVerifier

logger = logging.getLogger(__name__)
eventsub_audit_logger = logging.getLogger("eventsub.audit")

EventCallback = Callable[[Any], None]


class EventSubClient:
    """
    Webhook-side EventSub plumbing: authenticates deliveries, routes decoded
    notifications to registered callbacks and keeps subscriptions in place.
    """

    def __init__(
        self,
        registry_client: SubscriptionRegistryClient,
        verifier: SignatureVerifier,
        reconciler: SubscriptionReconciler,
        deduper: EventSubMessageDeduper,
    ) -> None:
        self.registry_client = registry_client
        self.verifier = verifier
        self.reconciler = reconciler
        self.deduper = deduper
        self._callbacks: dict[str, list[EventCallback]] = defaultdict(list)

    def on(self, event_type: str, callback: EventCallback) -> None:
        self._callbacks[event_type].append(callback)

    def verify(self, headers: Mapping[str, str], raw_body: bytes) -> bool:
        return self.verifier.verify(headers, raw_body)

    async def is_new_message_id(self, message_id: str) -> bool:
        return await self.deduper.is_new(message_id)

    def dispatch(self, event_type: str, event: Any) -> bool:
        callbacks = list(self._callbacks.get(event_type, ()))
        if not callbacks:
            logger.debug("No handler registered for EventSub notification type %s", event_type)
            return False
        for callback in callbacks:
            callback(event)
        return True

    def handle_revocation(self, payload: Mapping[str, Any]) -> None:
        subscription = payload.get("subscription") or {}
        eventsub_audit_logger.warning(
            "subscription revoked: type=%s id=%s status=%s",
            subscription.get("type", ""),
            subscription.get("id", ""),
            subscription.get("status", ""),
        )

    async def ensure(self, event_type: str, version: str, condition: Mapping[str, str]) -> None:
        logger.info("Ensuring EventSub subscription %s", event_type)
        await self.reconciler.ensure(event_type, version, condition, self.registry_client)

    async def active_event_types(self) -> frozenset[str]:
        return await self.reconciler.active_event_types(self.registry_client)
