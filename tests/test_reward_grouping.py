from __future__ import annotations

import pytest

from twitch_exporter.collector.reward_grouping import RewardGroupConfig, RewardGrouping
from twitch_exporter.config import parse_key_value_pairs
from twitch_exporter.core.errors import CardinalityError, ConfigError


class TestRewardGroupConfig:
    def test_id_match_wins_over_title(self) -> None:
        config = RewardGroupConfig.build(by_id={"r-1": "hydrate"}, by_title={"Stretch": "fitness"})
        assert config.group_for("r-1", "stretch") == "hydrate"

    def test_title_match_is_case_insensitive(self) -> None:
        config = RewardGroupConfig.build(by_title={"  Stretch Break ": "fitness"})
        assert config.group_for("r-9", "stretch break") == "fitness"
        assert config.group_for("", "STRETCH BREAK") == "fitness"

    def test_unmatched_reward_goes_to_unknown_group(self) -> None:
        config = RewardGroupConfig.build(by_id={"r-1": "hydrate"})
        assert config.group_for("r-2", "Something else") == "other"

    def test_empty_reward_goes_to_default_group(self) -> None:
        config = RewardGroupConfig.build(default_group="misc", unknown_group="unmapped")
        assert config.group_for("", "  ") == "misc"
        assert config.group_for("x", "") == "unmapped"

    def test_groups_are_sorted_and_deduplicated(self) -> None:
        config = RewardGroupConfig.build(by_id={"a": "zeta", "b": "alpha"}, by_title={"c": "alpha"})
        assert config.groups() == ["alpha", "default", "other", "zeta"]

    def test_cardinality_limit(self) -> None:
        by_id = {f"id-{i}": f"group-{i}" for i in range(3)}
        with pytest.raises(CardinalityError):
            RewardGroupConfig.build(max_groups=4, by_id=by_id)
        assert len(RewardGroupConfig.build(max_groups=5, by_id=by_id).groups()) == 5

    def test_non_positive_max_uses_default(self) -> None:
        assert RewardGroupConfig.build(max_groups=0).max_groups == 20


class TestRewardGrouping:
    def test_rejected_config_keeps_previous(self) -> None:
        grouping = RewardGrouping()
        grouping.configure(by_id={"r-1": "hydrate"})
        with pytest.raises(CardinalityError):
            grouping.configure(max_groups=1, by_id={"r-1": "hydrate"})
        assert grouping.group_for("r-1", "") == "hydrate"


class TestParseKeyValuePairs:
    def test_splits_on_first_colon(self) -> None:
        assert parse_key_value_pairs("a:one, b : two:extra", setting="X") == {"a": "one", "b": "two:extra"}

    def test_empty_input(self) -> None:
        assert parse_key_value_pairs("", setting="X") == {}

    @pytest.mark.parametrize("raw", ["novalue", ":group", "key:"])
    def test_invalid_entries(self, raw: str) -> None:
        with pytest.raises(ConfigError):
            parse_key_value_pairs(raw, setting="REWARD_GROUP_BY_ID")
