from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta


class EventSubMessageDeduper:
    """Remembers recently seen EventSub message ids to drop redeliveries."""

    def __init__(self, ttl: timedelta, max_entries: int = 50_000) -> None:
        self._ttl = ttl
        self._max_entries = max_entries
        self._seen: dict[str, datetime] = {}
        self._lock = asyncio.Lock()

    async def is_new(self, message_id: str) -> bool:
        if not message_id:
            return False
        now = datetime.now(UTC)
        async with self._lock:
            threshold = now - self._ttl
            expired = [k for k, seen_at in self._seen.items() if seen_at < threshold]
            for key in expired:
                self._seen.pop(key, None)
            if message_id in self._seen:
                return False
            if len(self._seen) >= self._max_entries:
                # Insertion order is arrival order; evict the oldest.
                self._seen.pop(next(iter(self._seen)))
            self._seen[message_id] = now
            return True
