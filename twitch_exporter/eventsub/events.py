from __future__ import annotations

from collections.abc import Mapping
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, Field

EventT = TypeVar("EventT", bound="EventPayload")


class EventPayload(BaseModel):
    """Only the fields the aggregator reads; Twitch sends many more."""

    model_config = ConfigDict(extra="ignore")


class SubscribeEvent(EventPayload):
    is_gift: bool = False


class CheerEvent(EventPayload):
    bits: int = Field(default=0, ge=0)


class Reward(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = ""
    title: str = ""


class RedemptionEvent(EventPayload):
    reward: Reward = Field(default_factory=Reward)


class RaidEvent(EventPayload):
    from_broadcaster_user_id: str = ""
    to_broadcaster_user_id: str = ""


class AdBreakEvent(EventPayload):
    duration_seconds: int = 0


class BanEvent(EventPayload):
    is_permanent: bool = False


def decode_event(model: type[EventT], raw: bytes | str | Mapping[str, Any]) -> EventT:
    """Raises ``pydantic.ValidationError`` on malformed input."""
    if isinstance(raw, (bytes, str)):
        return model.model_validate_json(raw)
    return model.model_validate(raw)
