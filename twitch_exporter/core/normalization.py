from __future__ import annotations

from urllib.parse import urlsplit


def normalize_login(raw: str) -> str:
    """
    Accept a Twitch login or a twitch.tv channel URL and normalize it to a
    lowercase login without surrounding whitespace or punctuation.
    """
    value = (raw or "").strip()
    if not value:
        return ""
    if value.startswith(("http://", "https://")):
        split = urlsplit(value)
        host = (split.netloc or "").lower()
        if host.endswith("twitch.tv"):
            path = (split.path or "").strip("/")
            if path:
                value = path.split("/", 1)[0]
    value = value.strip().lstrip("@")
    if "?" in value:
        value = value.split("?", 1)[0]
    return value.strip().lower()


def normalize_title(raw: str) -> str:
    return (raw or "").strip().lower()


def split_csv(values: str | None) -> list[str]:
    if not values:
        return []
    return [v.strip() for v in values.split(",") if v.strip()]
