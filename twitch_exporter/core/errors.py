from __future__ import annotations


class ConfigError(ValueError):
    """Invalid startup configuration. The process must not start with it."""


class CardinalityError(ConfigError):
    """A label configuration would exceed its allowed number of distinct values."""


class SubscriptionError(RuntimeError):
    def __init__(self, event_type: str, message: str) -> None:
        super().__init__(f"failed to create subscription {event_type}: {message}")
        self.event_type = event_type
        self.upstream_message = message
