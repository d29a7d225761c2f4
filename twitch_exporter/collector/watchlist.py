from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType

from twitch_exporter.core.errors import ConfigError
from twitch_exporter.core.normalization import normalize_login

MAX_WATCH_CHANNELS = 100


class ChannelRole(str, Enum):
    SELF = "self"
    WATCH = "watch"


@dataclass(frozen=True, slots=True)
class ChannelWatchlist:
    # Logins are always stored normalized.
    self_login: str = ""
    watch_logins: tuple[str, ...] = ()
    role_by_login: Mapping[str, ChannelRole] = field(
        default_factory=lambda: MappingProxyType({})
    )

    @classmethod
    def build(cls, self_login: str, watch_logins: Iterable[str] = ()) -> ChannelWatchlist:
        normalized_self = normalize_login(self_login)
        roles: dict[str, ChannelRole] = {}
        if normalized_self:
            roles[normalized_self] = ChannelRole.SELF

        watch: list[str] = []
        for raw in watch_logins:
            login = normalize_login(raw)
            if not login or login in roles:
                continue
            roles[login] = ChannelRole.WATCH
            watch.append(login)

        if len(watch) > MAX_WATCH_CHANNELS:
            raise ConfigError(
                f"watchlist role=watch exceeds {MAX_WATCH_CHANNELS} channels ({len(watch)})"
            )

        return cls(
            self_login=normalized_self,
            watch_logins=tuple(sorted(watch)),
            role_by_login=MappingProxyType(roles),
        )

    def all_logins(self) -> list[str]:
        out = [self.self_login] if self.self_login else []
        out.extend(self.watch_logins)
        return out

    def role_for_login(self, login: str) -> ChannelRole | None:
        return self.role_by_login.get(normalize_login(login))

    def role_label_for_login(self, login: str) -> str:
        role = self.role_for_login(login)
        return role.value if role else ""

    def count_by_role(self, role: ChannelRole) -> int:
        if role is ChannelRole.SELF:
            return 1 if self.self_login else 0
        if role is ChannelRole.WATCH:
            return len(self.watch_logins)
        return 0


def resolve_channel_logins(
    self_channel: str,
    watch_channels: Sequence[str],
    legacy_channels: Sequence[str] = (),
) -> tuple[str, list[str], bool]:
    """
    Merge the deprecated flat channel list into self/watch roles.

    When no explicit self channel is given the first legacy channel becomes
    self and the remaining ones are watched. The returned flag is true when
    that fallback had to guess (more than one legacy channel).
    """
    self_login = self_channel.strip()
    ambiguous = False
    legacy = list(legacy_channels)
    watch = list(watch_channels)
    if not self_login and legacy:
        self_login = legacy[0]
        ambiguous = len(legacy) > 1
        watch.extend(legacy[1:])
    else:
        watch.extend(legacy)
    return self_login, watch, ambiguous
