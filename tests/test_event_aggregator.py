from __future__ import annotations

import pytest

from twitch_exporter.collector.eventsub_self import (
    BITS,
    BITS_EVENTS,
    EventAggregator,
    EventCounterStore,
    MODERATION_ACTIONS,
    NOTIFICATIONS,
    STAGES,
    desired_subscriptions,
)
from twitch_exporter.collector.reward_grouping import RewardGrouping

SELF_ID = "1001"


@pytest.fixture
def grouping() -> RewardGrouping:
    grouping = RewardGrouping()
    grouping.configure(by_id={"r-water": "hydrate"}, by_title={"Stretch": "fitness"})
    return grouping


@pytest.fixture
def aggregator(grouping: RewardGrouping) -> EventAggregator:
    return EventAggregator(SELF_ID, grouping)


def _value(aggregator: EventAggregator, family: str, key: str = "") -> float:
    return aggregator.store.snapshot().value(family, key)


class TestEventCounterStore:
    def test_counters_never_decrease(self) -> None:
        store = EventCounterStore()
        with pytest.raises(ValueError):
            store.inc("bits", amount=-1)

    def test_amount_is_keyword_only(self) -> None:
        store = EventCounterStore()
        with pytest.raises(TypeError):
            store.inc("bits", "", 500)
        store.inc("bits", amount=500)
        assert store.snapshot().family("bits") == {"": 500}

    def test_snapshot_is_detached(self) -> None:
        store = EventCounterStore()
        store.inc("follows")
        snapshot = store.snapshot()
        store.inc("follows")
        assert snapshot.value("follows") == 1
        assert store.snapshot().value("follows") == 2


class TestSeeding:
    def test_every_label_combination_starts_at_zero(self, aggregator: EventAggregator) -> None:
        snapshot = aggregator.store.snapshot()
        assert set(snapshot.family("points_redemptions")) == {"default", "fitness", "hydrate", "other"}
        assert set(snapshot.family("moderation")) == set(MODERATION_ACTIONS)
        for family in ("hype_train", "goals", "polls", "predictions", "charity"):
            assert set(snapshot.family(family)) == set(STAGES)
        assert set(snapshot.family("subscriptions")) == {"new", "resub"}
        assert set(snapshot.family(NOTIFICATIONS)) == set(aggregator.handlers)
        assert all(v == 0 for family in snapshot.counters.values() for v in family.values())


class TestDispatch:
    def test_cheers_accumulate(self, aggregator: EventAggregator) -> None:
        aggregator.dispatch("channel.cheer", {"bits": 500})
        aggregator.dispatch("channel.cheer", b'{"bits": 250, "message": "gg"}')
        assert _value(aggregator, BITS_EVENTS) == 2
        assert _value(aggregator, BITS) == 750
        assert _value(aggregator, NOTIFICATIONS, "channel.cheer") == 2
        # Amounts add to the single seeded series instead of becoming labels.
        assert set(aggregator.store.snapshot().family(BITS)) == {""}

    def test_decode_failure_only_skips_payload_counters(self, aggregator: EventAggregator) -> None:
        assert aggregator.dispatch("channel.cheer", b"{not json") is True
        aggregator.dispatch("channel.cheer", {"bits": -5})
        assert _value(aggregator, NOTIFICATIONS, "channel.cheer") == 2
        assert _value(aggregator, BITS_EVENTS) == 0
        assert _value(aggregator, BITS) == 0

    def test_unknown_type_is_ignored(self, aggregator: EventAggregator) -> None:
        assert aggregator.dispatch("channel.update", {}) is False
        assert "channel.update" not in aggregator.store.snapshot().family(NOTIFICATIONS)

    def test_subscriptions(self, aggregator: EventAggregator) -> None:
        aggregator.dispatch("channel.subscribe", {"is_gift": False, "tier": "1000"})
        aggregator.dispatch("channel.subscribe", {"is_gift": True})
        aggregator.dispatch("channel.subscription.message", {"cumulative_months": 5})
        aggregator.dispatch("channel.subscription.gift", {"total": 5})
        assert _value(aggregator, "subscriptions", "new") == 1
        assert _value(aggregator, "subscriptions", "resub") == 1
        assert _value(aggregator, "gift_subscriptions") == 2

    def test_redemptions_use_reward_groups(self, aggregator: EventAggregator) -> None:
        aggregator.dispatch(
            "channel.channel_points_custom_reward_redemption.add",
            {"reward": {"id": "r-water", "title": "Drink water"}},
        )
        aggregator.dispatch(
            "channel.channel_points_custom_reward_redemption.add",
            {"reward": {"id": "r-77", "title": "STRETCH"}},
        )
        aggregator.dispatch(
            "channel.channel_points_custom_reward_redemption.add",
            {"reward": {"id": "r-99", "title": "Something new"}},
        )
        aggregator.dispatch("channel.channel_points_custom_reward_redemption.add", {})
        assert _value(aggregator, "points_redemptions", "hydrate") == 1
        assert _value(aggregator, "points_redemptions", "fitness") == 1
        assert _value(aggregator, "points_redemptions", "other") == 1
        assert _value(aggregator, "points_redemptions", "default") == 1
        assert len(aggregator.store.snapshot().family("points_redemptions")) == 4

    def test_raid_direction(self, aggregator: EventAggregator) -> None:
        aggregator.dispatch("channel.raid", {"from_broadcaster_user_id": "42", "to_broadcaster_user_id": SELF_ID})
        aggregator.dispatch("channel.raid", {"from_broadcaster_user_id": SELF_ID, "to_broadcaster_user_id": "42"})
        aggregator.dispatch("channel.raid", {"from_broadcaster_user_id": "7", "to_broadcaster_user_id": "8"})
        assert _value(aggregator, "raids_in") == 1
        assert _value(aggregator, "raids_out") == 1
        assert _value(aggregator, NOTIFICATIONS, "channel.raid") == 3

    def test_ad_breaks(self, aggregator: EventAggregator) -> None:
        aggregator.dispatch("channel.ad_break.begin", {"duration_seconds": 90})
        aggregator.dispatch("channel.ad_break.begin", {"duration_seconds": 0})
        assert _value(aggregator, "ad_breaks") == 2
        assert _value(aggregator, "ad_minutes") == 1.5
        assert set(aggregator.store.snapshot().family("ad_minutes")) == {""}

    def test_stage_events(self, aggregator: EventAggregator) -> None:
        for event_type in (
            "channel.prediction.begin",
            "channel.prediction.lock",
            "channel.prediction.progress",
            "channel.prediction.end",
            "channel.charity_campaign.start",
            "channel.charity_campaign.stop",
            "channel.hype_train.progress",
        ):
            aggregator.dispatch(event_type, {})
        assert _value(aggregator, "predictions", "begin") == 1
        assert _value(aggregator, "predictions", "progress") == 2
        assert _value(aggregator, "predictions", "end") == 1
        assert _value(aggregator, "charity", "begin") == 1
        assert _value(aggregator, "charity", "end") == 1
        assert _value(aggregator, "hype_train", "progress") == 1

    def test_moderation(self, aggregator: EventAggregator) -> None:
        aggregator.dispatch("channel.ban", {"is_permanent": True})
        aggregator.dispatch("channel.ban", {"is_permanent": False, "ends_at": "2024-05-01T12:10:00Z"})
        aggregator.dispatch("channel.unban", {})
        aggregator.dispatch("channel.chat.message_delete", {})
        aggregator.dispatch("channel.shield_mode.begin", {})
        aggregator.dispatch("channel.shield_mode.end", {})
        aggregator.dispatch("channel.warning.send", {})
        for action in ("ban", "timeout", "unban", "delete", "shield_on", "shield_off", "warn"):
            assert _value(aggregator, "moderation", action) == 1
        assert _value(aggregator, "moderation", "other") == 0

    def test_stream_online_only_counts_notification(self, aggregator: EventAggregator) -> None:
        aggregator.dispatch("stream.online", {"type": "live"})
        snapshot = aggregator.store.snapshot()
        assert snapshot.value(NOTIFICATIONS, "stream.online") == 1
        assert sum(snapshot.family(NOTIFICATIONS).values()) == 1


class TestDesiredSubscriptions:
    def test_every_desired_type_has_a_handler(self, aggregator: EventAggregator) -> None:
        assert {d.event_type for d in desired_subscriptions(SELF_ID)} == set(aggregator.handlers)

    def test_raid_is_subscribed_both_ways(self) -> None:
        raids = [d for d in desired_subscriptions(SELF_ID) if d.event_type == "channel.raid"]
        assert [dict(d.condition) for d in raids] == [
            {"to_broadcaster_user_id": SELF_ID},
            {"from_broadcaster_user_id": SELF_ID},
        ]
        assert all(d.requires_scope is None for d in raids)

    def test_follow_uses_v2_with_moderator(self) -> None:
        (follow,) = [d for d in desired_subscriptions(SELF_ID) if d.event_type == "channel.follow"]
        assert follow.version == "2"
        assert dict(follow.condition) == {"broadcaster_user_id": SELF_ID, "moderator_user_id": SELF_ID}
        assert follow.requires_scope == "moderator:read:followers"
