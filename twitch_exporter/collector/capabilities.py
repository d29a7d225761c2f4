from __future__ import annotations

import threading
from collections.abc import Iterable
from dataclasses import dataclass, field

# Bounded set of OAuth scopes this exporter understands; anything else a token
# carries is ignored when exposing scope presence.
KNOWN_USER_SCOPES: tuple[str, ...] = (
    "bits:read",
    "channel:read:subscriptions",
    "channel:read:redemptions",
    "channel:read:ads",
    "channel:read:charity",
    "channel:read:goals",
    "channel:read:hype_train",
    "channel:read:polls",
    "channel:read:predictions",
    "moderator:read:followers",
    "moderator:read:chatters",
    "moderator:read:warnings",
    "moderation:read",
    "user:read:chat",
    "chat:read",
)


@dataclass(frozen=True, slots=True)
class CapabilitySnapshot:
    app_token_present: bool = False
    user_token_present: bool = False
    user_scopes: frozenset[str] = field(default_factory=frozenset)
    version: int = 0

    def has_user_scope(self, scope: str) -> bool:
        if not self.user_token_present:
            return False
        return scope in self.user_scopes


class CapabilityRegistry:
    """Holds the current capability snapshot; publishing replaces it wholesale."""

    def __init__(self, snapshot: CapabilitySnapshot | None = None) -> None:
        self._lock = threading.Lock()
        self._snapshot = snapshot or CapabilitySnapshot()

    def publish(
        self,
        *,
        app_token_present: bool,
        user_token_present: bool,
        user_scopes: Iterable[str] = (),
    ) -> CapabilitySnapshot:
        scopes = frozenset(s.strip() for s in user_scopes if s and s.strip())
        with self._lock:
            snapshot = CapabilitySnapshot(
                app_token_present=app_token_present,
                user_token_present=user_token_present,
                user_scopes=scopes,
                version=self._snapshot.version + 1,
            )
            self._snapshot = snapshot
        return snapshot

    def snapshot(self) -> CapabilitySnapshot:
        with self._lock:
            return self._snapshot

    def has_user_scope(self, scope: str) -> bool:
        return self.snapshot().has_user_scope(scope)
