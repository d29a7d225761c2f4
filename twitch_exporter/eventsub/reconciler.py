from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

from twitch_exporter.core.errors import SubscriptionError
from twitch_exporter.twitch import CreateSubscriptionResult

logger = logging.getLogger(__name__)
eventsub_audit_logger = logging.getLogger("eventsub.audit")

ACTIVE_STATUSES = frozenset({"enabled", "webhook_callback_verification_pending"})


class SubscriptionRegistryClient(Protocol):
    async def list_eventsub_subscriptions(
        self,
        event_type: str | None = None,
        user_id: str | None = None,
    ) -> list[dict[str, Any]]: ...

    async def create_eventsub_subscription(
        self,
        event_type: str,
        version: str,
        condition: dict[str, str],
        transport: dict[str, str],
    ) -> CreateSubscriptionResult: ...


@dataclass(frozen=True, slots=True)
class SubscriptionRecord:
    type: str
    condition: dict[str, str] = field(default_factory=dict)
    callback: str = ""
    status: str = ""
    id: str = ""
    version: str = ""

    @classmethod
    def from_api(cls, raw: Mapping[str, Any]) -> SubscriptionRecord:
        transport = raw.get("transport") or {}
        return cls(
            type=str(raw.get("type", "")),
            condition=canonical_condition(raw.get("condition") or {}),
            callback=str(transport.get("callback", "")),
            status=str(raw.get("status", "")),
            id=str(raw.get("id", "")),
            version=str(raw.get("version", "")),
        )

    @property
    def active(self) -> bool:
        return self.status in ACTIVE_STATUSES


def canonical_condition(condition: Mapping[str, Any]) -> dict[str, str]:
    """
    Drop unset keys. Helix echoes every condition field of a type, with empty
    strings for the ones that were not part of the create request.
    """
    return {str(k): str(v) for k, v in condition.items() if v not in (None, "")}


def condition_user_id(condition: Mapping[str, str]) -> str:
    return (
        condition.get("broadcaster_user_id")
        or condition.get("user_id")
        or condition.get("to_broadcaster_user_id")
        or condition.get("from_broadcaster_user_id")
        or ""
    )


class SubscriptionReconciler:
    """Creates a webhook subscription only when no matching active one exists."""

    def __init__(self, callback_url: str, secret: str) -> None:
        self.callback_url = callback_url
        self._secret = secret

    async def ensure(
        self,
        event_type: str,
        version: str,
        condition: Mapping[str, str],
        client: SubscriptionRegistryClient,
    ) -> None:
        wanted = canonical_condition(condition)
        existing = await client.list_eventsub_subscriptions(
            event_type=event_type,
            user_id=condition_user_id(wanted) or None,
        )
        for raw in existing:
            record = SubscriptionRecord.from_api(raw)
            if record.type != event_type or record.callback != self.callback_url:
                continue
            if record.condition != wanted:
                # Exact match is required; a registry that rewrites conditions
                # would make every restart create a duplicate.
                if record.active and condition_user_id(record.condition) == condition_user_id(wanted):
                    logger.warning(
                        "EventSub subscription %s for %s has a differing condition %s (wanted %s)",
                        record.id,
                        event_type,
                        record.condition,
                        wanted,
                    )
                continue
            if record.active:
                eventsub_audit_logger.info(
                    "subscription already exists: type=%s status=%s id=%s",
                    event_type,
                    record.status,
                    record.id,
                )
                return

        result = await client.create_eventsub_subscription(
            event_type=event_type,
            version=version or "1",
            condition=dict(wanted),
            transport={
                "method": "webhook",
                "callback": self.callback_url,
                "secret": self._secret,
            },
        )
        if not result.accepted:
            eventsub_audit_logger.warning(
                "subscription rejected: type=%s status_code=%s message=%s",
                event_type,
                result.status_code,
                result.error_message,
            )
            raise SubscriptionError(event_type, result.error_message or f"status {result.status_code}")
        eventsub_audit_logger.info(
            "subscription created: type=%s id=%s status=%s",
            event_type,
            result.subscription.get("id", ""),
            result.subscription.get("status", ""),
        )

    async def active_event_types(self, client: SubscriptionRegistryClient) -> frozenset[str]:
        """Event types with an enabled or pending subscription for this callback."""
        records = [SubscriptionRecord.from_api(raw) for raw in await client.list_eventsub_subscriptions()]
        return frozenset(
            record.type
            for record in records
            if record.active and (not record.callback or record.callback == self.callback_url)
        )
