"""
Bounded grouping of channel points rewards.

Reward ids and titles are user-controlled and unbounded, so they are never used
as label values directly. Operators map known rewards onto a small set of
groups; everything else collapses into the configured default/unknown group.
The cardinality bound is enforced when a configuration is built, so a running
``RewardGrouping`` can never emit more than ``max_groups`` distinct labels.
"""

from __future__ import annotations

import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from twitch_exporter.core.errors import CardinalityError
from twitch_exporter.core.normalization import normalize_title

DEFAULT_GROUP = "default"
UNKNOWN_GROUP = "other"
DEFAULT_MAX_GROUPS = 20


@dataclass(frozen=True, slots=True)
class RewardGroupConfig:
    default_group: str = DEFAULT_GROUP
    unknown_group: str = UNKNOWN_GROUP
    max_groups: int = DEFAULT_MAX_GROUPS
    by_id: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    by_title: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))

    @classmethod
    def build(
        cls,
        default_group: str = "",
        unknown_group: str = "",
        max_groups: int = 0,
        by_id: Mapping[str, str] | None = None,
        by_title: Mapping[str, str] | None = None,
    ) -> RewardGroupConfig:
        default_group = default_group.strip() or DEFAULT_GROUP
        unknown_group = unknown_group.strip() or UNKNOWN_GROUP
        if max_groups <= 0:
            max_groups = DEFAULT_MAX_GROUPS

        norm_id: dict[str, str] = {}
        for key, group in (by_id or {}).items():
            key = key.strip()
            group = group.strip()
            if key and group:
                norm_id[key] = group

        norm_title: dict[str, str] = {}
        for key, group in (by_title or {}).items():
            key = normalize_title(key)
            group = group.strip()
            if key and group:
                norm_title[key] = group

        config = cls(
            default_group=default_group,
            unknown_group=unknown_group,
            max_groups=max_groups,
            by_id=MappingProxyType(norm_id),
            by_title=MappingProxyType(norm_title),
        )
        groups = config.groups()
        if len(groups) > max_groups:
            raise CardinalityError(
                f"reward_group cardinality too high: {len(groups)} groups "
                f"(max {max_groups}): {groups}"
            )
        return config

    def groups(self) -> list[str]:
        """Every label value ``group_for`` can return, sorted."""
        out = {self.default_group, self.unknown_group}
        out.update(self.by_id.values())
        out.update(self.by_title.values())
        return sorted(out)

    def group_for(self, reward_id: str, reward_title: str) -> str:
        reward_id = (reward_id or "").strip()
        if reward_id:
            group = self.by_id.get(reward_id)
            if group is not None:
                return group

        title = normalize_title(reward_title)
        if title:
            group = self.by_title.get(title)
            if group is not None:
                return group

        if not reward_id and not title:
            return self.default_group
        return self.unknown_group


class RewardGrouping:
    """Copy-on-write holder for the active ``RewardGroupConfig``."""

    def __init__(self, config: RewardGroupConfig | None = None) -> None:
        self._lock = threading.Lock()
        self._config = config or RewardGroupConfig()

    def configure(
        self,
        default_group: str = "",
        unknown_group: str = "",
        max_groups: int = 0,
        by_id: Mapping[str, str] | None = None,
        by_title: Mapping[str, str] | None = None,
    ) -> RewardGroupConfig:
        # Build (and validate) before swapping so a rejected config leaves the
        # previous one in place.
        config = RewardGroupConfig.build(default_group, unknown_group, max_groups, by_id, by_title)
        with self._lock:
            self._config = config
        return config

    def config(self) -> RewardGroupConfig:
        with self._lock:
            return self._config

    def group_for(self, reward_id: str, reward_title: str) -> str:
        return self.config().group_for(reward_id, reward_title)
