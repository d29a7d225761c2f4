from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from twitch_exporter.core.errors import ConfigError
from twitch_exporter.core.normalization import split_csv


PROJECT_ROOT = Path(__file__).resolve().parent.parent
ENV_FILE = PROJECT_ROOT / ".env"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE),
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    app_host: str = Field(default="0.0.0.0", alias="APP_HOST")
    app_port: int = Field(default=9184, alias="APP_PORT")
    app_log_level: str = Field(default="info", alias="APP_LOG_LEVEL")

    metrics_path: str = Field(default="/metrics", alias="METRICS_PATH")
    poll_interval_seconds: float = Field(default=30.0, gt=0, alias="POLL_INTERVAL_SECONDS")

    twitch_client_id: str = Field(default="", alias="TWITCH_CLIENT_ID")
    twitch_client_secret: str = Field(default="", alias="TWITCH_CLIENT_SECRET")
    twitch_access_token: str = Field(default="", alias="TWITCH_ACCESS_TOKEN")
    twitch_refresh_token: str = Field(default="", alias="TWITCH_REFRESH_TOKEN")

    # Deprecated: first entry is treated as self, the rest as watch.
    twitch_channels: str = Field(default="", alias="TWITCH_CHANNELS")
    twitch_self_channel: str = Field(default="", alias="TWITCH_SELF_CHANNEL")
    twitch_watch_channels: str = Field(default="", alias="TWITCH_WATCH_CHANNELS")

    eventsub_enabled: bool = Field(default=False, alias="EVENTSUB_ENABLED")
    eventsub_webhook_url: str = Field(default="", alias="EVENTSUB_WEBHOOK_URL")
    eventsub_webhook_secret: str = Field(default="", alias="EVENTSUB_WEBHOOK_SECRET")
    eventsub_webhook_path: str = Field(default="/eventsub", alias="EVENTSUB_WEBHOOK_PATH")
    eventsub_max_message_age_seconds: int = Field(
        default=0,
        ge=0,
        alias="EVENTSUB_MAX_MESSAGE_AGE_SECONDS",
    )

    reward_group_default: str = Field(default="default", alias="REWARD_GROUP_DEFAULT")
    reward_group_unknown: str = Field(default="other", alias="REWARD_GROUP_UNKNOWN")
    reward_group_max: int = Field(default=20, alias="REWARD_GROUP_MAX")
    reward_group_by_id: str = Field(default="", alias="REWARD_GROUP_BY_ID")
    reward_group_by_title: str = Field(default="", alias="REWARD_GROUP_BY_TITLE")

    collectors_enabled: str = Field(default="", alias="COLLECTORS_ENABLED")
    collectors_disabled: str = Field(default="", alias="COLLECTORS_DISABLED")

    @property
    def app_credentials_present(self) -> bool:
        return bool(self.twitch_client_id and self.twitch_client_secret)

    @property
    def user_credentials_present(self) -> bool:
        return bool(self.twitch_access_token and self.twitch_refresh_token)

    @property
    def eventsub_configured(self) -> bool:
        return bool(
            self.eventsub_enabled
            and self.eventsub_webhook_url
            and self.eventsub_webhook_secret
        )


def parse_key_value_pairs(raw: str, *, setting: str) -> dict[str, str]:
    """Parse ``key:value,key:value``. Values may contain ``:``; keys may not."""
    out: dict[str, str] = {}
    for item in split_csv(raw):
        key, sep, value = item.partition(":")
        key = key.strip()
        value = value.strip()
        if not sep:
            raise ConfigError(f"{setting}: expected <key>:<value>, got {item!r}")
        if not key or not value:
            raise ConfigError(f"{setting}: expected non-empty <key>:<value>, got {item!r}")
        out[key] = value
    return out


def load_settings() -> Settings:
    return Settings()
