from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import datetime

import httpx
from prometheus_client import CollectorRegistry, Counter, Gauge

from twitch_exporter.collector.base import metric_name

SIGNATURE_FAIL_REASONS = ("missing_headers", "bad_signature")


class RuntimeMetrics:
    """Exporter self-observability: collector health, credentials, API usage."""

    def __init__(self, registry: CollectorRegistry) -> None:
        self.configured = Gauge(
            metric_name("exporter", "configured"),
            "Whether the exporter has the minimum Twitch credentials configured (1 = yes, 0 = no).",
            registry=registry,
        )
        self.collector_last_success = Gauge(
            metric_name("collector", "last_success_timestamp_seconds"),
            "Unix timestamp of the last successful collector run.",
            ["collector"],
            registry=registry,
        )
        self.collector_errors_total = Counter(
            metric_name("collector", "errors_total"),
            "Total number of collector errors by reason.",
            ["collector", "reason"],
            registry=registry,
        )
        self.collector_disabled_total = Counter(
            metric_name("collector", "disabled_total"),
            "Total number of times a collector was disabled due to missing capabilities or config.",
            ["collector", "reason"],
            registry=registry,
        )
        self.oauth_token_present = Gauge(
            metric_name("oauth", "token_present"),
            "Whether an OAuth token is present (1 = yes, 0 = no).",
            ["token_type"],
            registry=registry,
        )
        self.oauth_scope_present = Gauge(
            metric_name("oauth", "scope_present"),
            "Whether a known OAuth scope is present on the validated user token (1 = yes, 0 = no).",
            ["scope"],
            registry=registry,
        )
        self.api_requests_total = Counter(
            metric_name("api", "requests_total"),
            "Total Twitch API HTTP requests by API surface, endpoint, and status class.",
            ["api", "endpoint", "code_class"],
            registry=registry,
        )
        self.api_rate_limit_remaining = Gauge(
            metric_name("api", "rate_limit_remaining"),
            "Twitch API rate limit remaining, if provided by response headers.",
            ["api"],
            registry=registry,
        )
        self.api_rate_limit_reset_at = Gauge(
            metric_name("api", "rate_limit_reset_at_seconds"),
            "Unix timestamp when the Twitch API rate limit resets, if provided by response headers.",
            ["api"],
            registry=registry,
        )
        self.eventsub_signature_fail_total = Counter(
            metric_name("eventsub", "signature_fail_total"),
            "Total number of EventSub webhook signature verification failures.",
            ["reason"],
            registry=registry,
        )
        for reason in SIGNATURE_FAIL_REASONS:
            self.eventsub_signature_fail_total.labels(reason=reason)

    def set_configured(self, configured: bool) -> None:
        self.configured.set(1 if configured else 0)

    def set_oauth_token_present(self, token_type: str, present: bool) -> None:
        self.oauth_token_present.labels(token_type=token_type).set(1 if present else 0)

    def set_known_oauth_scopes(self, known_scopes: Iterable[str], present_scopes: Iterable[str]) -> None:
        # Scopes outside known_scopes are ignored to keep the label bounded.
        present = {s.strip() for s in present_scopes}
        for scope in known_scopes:
            self.oauth_scope_present.labels(scope=scope).set(1 if scope in present else 0)

    def inc_collector_disabled(self, collector: str, reason: str) -> None:
        self.collector_disabled_total.labels(collector=collector, reason=reason).inc()

    def observe_collector_success(self, collector: str, at: datetime) -> None:
        self.collector_last_success.labels(collector=collector).set(int(at.timestamp()))

    def observe_collector_error(self, collector: str, reason: str) -> None:
        self.collector_errors_total.labels(collector=collector, reason=reason).inc()

    def observe_api_response(
        self,
        api: str,
        endpoint: str,
        status_code: int,
        headers: Mapping[str, str],
    ) -> None:
        self.api_requests_total.labels(
            api=api,
            endpoint=endpoint,
            code_class=code_class(status_code),
        ).inc()
        remaining = _header_float(headers, "Ratelimit-Remaining")
        if remaining is not None:
            self.api_rate_limit_remaining.labels(api=api).set(remaining)
        reset = _header_float(headers, "Ratelimit-Reset")
        if reset is not None:
            self.api_rate_limit_reset_at.labels(api=api).set(reset)

    def inc_eventsub_signature_fail(self, reason: str) -> None:
        self.eventsub_signature_fail_total.labels(reason=reason or "other").inc()


def code_class(status_code: int) -> str:
    if 200 <= status_code < 300:
        return "2xx"
    if 400 <= status_code < 500:
        return "4xx"
    if 500 <= status_code < 600:
        return "5xx"
    return "other"


def classify_error_reason(exc: BaseException | None) -> str:
    if exc is None:
        return "other"
    if isinstance(exc, (httpx.TimeoutException, TimeoutError)):
        return "timeout"
    cause = exc.__cause__
    if isinstance(cause, (httpx.TimeoutException, TimeoutError)):
        return "timeout"
    message = str(exc).lower()
    if "rate limit" in message or "ratelimit" in message or "429" in message:
        return "rate_limited"
    if "401" in message or "unauthorized" in message or "invalid oauth" in message:
        return "auth"
    if "status 4" in message or " 4" in message:
        return "http_4xx"
    if "status 5" in message or " 5" in message:
        return "http_5xx"
    if "json" in message or "decode" in message or "validation" in message:
        return "decode"
    return "other"


def _header_float(headers: Mapping[str, str], key: str) -> float | None:
    raw = headers.get(key) or headers.get(key.lower())
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError:
        return None
