"""
EventSub webhook signature verification.

Twitch signs every webhook delivery with
``sha256=<hex(HMAC-SHA256(secret, message_id + timestamp + raw_body))>``.
The digest must be computed over the raw request bytes exactly as received;
re-serializing decoded JSON changes the bytes and breaks verification.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import re
from collections.abc import Callable, Mapping
from datetime import UTC, datetime, timedelta

MESSAGE_ID_HEADER = "Twitch-Eventsub-Message-Id"
MESSAGE_TIMESTAMP_HEADER = "Twitch-Eventsub-Message-Timestamp"
MESSAGE_SIGNATURE_HEADER = "Twitch-Eventsub-Message-Signature"
MESSAGE_TYPE_HEADER = "Twitch-Eventsub-Message-Type"
SIGNATURE_PREFIX = "sha256="
HEX_DIGEST = re.compile(r"[0-9a-fA-F]{64}")

REASON_MISSING_HEADERS = "missing_headers"
REASON_BAD_SIGNATURE = "bad_signature"
REASON_STALE_TIMESTAMP = "stale_timestamp"

logger = logging.getLogger(__name__)


def compute_signature(secret: str, message_id: str, timestamp: str, raw_body: bytes) -> str:
    signed = message_id.encode("utf-8") + timestamp.encode("utf-8") + raw_body
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


class SignatureVerifier:
    """Stateless per request; safe to call from concurrent deliveries."""

    def __init__(
        self,
        secret: str,
        on_failure: Callable[[str], None] | None = None,
        max_message_age: timedelta | None = None,
    ) -> None:
        self._secret = secret.encode("utf-8")
        self._on_failure = on_failure
        self._max_message_age = max_message_age

    def verify(self, headers: Mapping[str, str], raw_body: bytes) -> bool:
        lowered = {str(k).lower(): v for k, v in headers.items()}
        message_id = lowered.get(MESSAGE_ID_HEADER.lower(), "")
        timestamp = lowered.get(MESSAGE_TIMESTAMP_HEADER.lower(), "")
        signature = lowered.get(MESSAGE_SIGNATURE_HEADER.lower(), "")
        if not message_id or not timestamp or not signature:
            return self._fail(REASON_MISSING_HEADERS)

        hex_digest = signature[len(SIGNATURE_PREFIX):]
        if not signature.startswith(SIGNATURE_PREFIX) or not HEX_DIGEST.fullmatch(hex_digest):
            return self._fail(REASON_BAD_SIGNATURE)
        provided = bytes.fromhex(hex_digest)

        mac = hmac.new(self._secret, digestmod=hashlib.sha256)
        mac.update(message_id.encode("utf-8"))
        mac.update(timestamp.encode("utf-8"))
        mac.update(raw_body)
        if not hmac.compare_digest(provided, mac.digest()):
            return self._fail(REASON_BAD_SIGNATURE)

        if self._max_message_age is not None and self._is_stale(timestamp):
            return self._fail(REASON_STALE_TIMESTAMP)
        return True

    def _is_stale(self, timestamp: str) -> bool:
        try:
            sent_at = datetime.fromisoformat(timestamp.replace("Z", "+00:00"))
        except ValueError:
            return True
        if sent_at.tzinfo is None:
            sent_at = sent_at.replace(tzinfo=UTC)
        return abs(datetime.now(UTC) - sent_at) > self._max_message_age

    def _fail(self, reason: str) -> bool:
        logger.debug("EventSub signature verification failed: %s", reason)
        if self._on_failure is not None:
            self._on_failure(reason)
        return False
