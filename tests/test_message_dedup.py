from __future__ import annotations

from datetime import timedelta

import pytest

from twitch_exporter.core.message_dedup import EventSubMessageDeduper


@pytest.mark.asyncio
class TestEventSubMessageDeduper:
    async def test_repeated_id_is_not_new(self) -> None:
        deduper = EventSubMessageDeduper(ttl=timedelta(minutes=10))
        assert await deduper.is_new("a") is True
        assert await deduper.is_new("a") is False
        assert await deduper.is_new("b") is True

    async def test_empty_id_is_never_new(self) -> None:
        assert await EventSubMessageDeduper(ttl=timedelta(minutes=10)).is_new("") is False

    async def test_expired_ids_are_forgotten(self) -> None:
        deduper = EventSubMessageDeduper(ttl=timedelta(seconds=-1))
        assert await deduper.is_new("a") is True
        assert await deduper.is_new("a") is True

    async def test_oldest_entry_is_evicted_at_capacity(self) -> None:
        deduper = EventSubMessageDeduper(ttl=timedelta(minutes=10), max_entries=2)
        for message_id in ("a", "b", "c"):
            assert await deduper.is_new(message_id) is True
        assert await deduper.is_new("a") is True
        assert await deduper.is_new("c") is False
