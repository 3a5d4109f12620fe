"""Tests for the conversation grouping engine."""

from __future__ import annotations

import math

import pytest


def _tags(messages, category="troubleshooting"):
    from docflow.core.models import MessageTag

    return [MessageTag(message_id=m.id, category=category, reason="useful") for m in messages]


class TestGroupingPartition:
    """Tests for channel, gap, window and size partitioning."""

    def test_example_window(self, make_message):
        """Three messages 5 minutes apart form one conversation; +30m starts another."""
        from docflow.grouping import GroupingConfig, group_conversations

        messages = [
            make_message(1, 0),
            make_message(2, 5),
            make_message(3, 10),
            make_message(4, 30),
        ]
        config = GroupingConfig(time_window_minutes=15, min_gap_minutes=5)

        conversations = group_conversations(_tags(messages), messages, config)

        assert [c.message_count for c in conversations] == [3, 1]
        assert [m.id for m in conversations[0].messages] == [1, 2, 3]
        assert conversations[1].messages[0].id == 4

    def test_gap_exactly_at_threshold_does_not_split(self, make_message):
        """A gap equal to min_gap_minutes keeps messages together."""
        from docflow.grouping import GroupingConfig, group_conversations

        messages = [make_message(1, 0), make_message(2, 5)]
        conversations = group_conversations(
            _tags(messages), messages, GroupingConfig(min_gap_minutes=5)
        )

        assert len(conversations) == 1

    def test_gap_over_threshold_splits(self, make_message):
        """A gap just over min_gap_minutes starts a new conversation."""
        from docflow.grouping import GroupingConfig, group_conversations

        messages = [make_message(1, 0), make_message(2, 5.01)]
        conversations = group_conversations(
            _tags(messages), messages, GroupingConfig(min_gap_minutes=5)
        )

        assert len(conversations) == 2

    def test_time_window_caps_span(self, make_message):
        """Messages chained under the gap still split after the window."""
        from docflow.grouping import GroupingConfig, group_conversations

        messages = [make_message(i, i * 4) for i in range(1, 7)]  # 4..24 minutes
        config = GroupingConfig(time_window_minutes=15, min_gap_minutes=5)

        conversations = group_conversations(_tags(messages), messages, config)

        for conversation in conversations:
            span = conversation.time_end - conversation.time_start
            assert span.total_seconds() <= 15 * 60
        assert [c.message_count for c in conversations] == [4, 2]

    @pytest.mark.parametrize("count,cap", [(7, 3), (6, 3), (1, 5), (20, 20), (21, 20)])
    def test_size_cap(self, make_message, count, cap):
        """N messages split into ceil(N/cap) groups no larger than cap."""
        from docflow.grouping import GroupingConfig, group_conversations

        messages = [make_message(i, 0) for i in range(1, count + 1)]
        config = GroupingConfig(max_conversation_size=cap)

        conversations = group_conversations(_tags(messages), messages, config)

        assert len(conversations) == math.ceil(count / cap)
        assert all(c.message_count <= cap for c in conversations)
        assert sum(c.message_count for c in conversations) == count

    def test_size_cap_splits_get_distinct_ids(self, make_message):
        """Splits at an identical timestamp still get unique ids."""
        from docflow.grouping import GroupingConfig, group_conversations

        messages = [make_message(i, 0) for i in range(1, 5)]
        conversations = group_conversations(
            _tags(messages), messages, GroupingConfig(max_conversation_size=2)
        )

        ids = [c.id for c in conversations]
        assert len(set(ids)) == 2
        assert ids[1] == f"{ids[0]}_2"

    def test_channel_isolation(self, make_message):
        """Interleaved channels never share a conversation."""
        from docflow.grouping import GroupingConfig, group_conversations

        messages = [
            make_message(1, 0, channel="help"),
            make_message(2, 1, channel="dev"),
            make_message(3, 2, channel="help"),
            make_message(4, 3, channel="dev"),
        ]

        conversations = group_conversations(_tags(messages), messages, GroupingConfig())

        assert len(conversations) == 2
        for conversation in conversations:
            assert len({m.channel for m in conversation.messages}) == 1
        assert [c.channel for c in conversations] == ["dev", "help"]

    def test_null_channel_is_its_own_key(self, make_message):
        """Messages without a channel group apart from named channels."""
        from docflow.grouping import GroupingConfig, group_conversations

        messages = [
            make_message(1, 0, channel=None),
            make_message(2, 1, channel="general"),
            make_message(3, 2, channel=None),
        ]

        conversations = group_conversations(_tags(messages), messages, GroupingConfig())

        assert len(conversations) == 2
        none_conv = next(c for c in conversations if c.channel is None)
        assert [m.id for m in none_conv.messages] == [1, 3]
        assert none_conv.id.startswith("thread_~none_")

    def test_reply_across_large_gap_still_splits(self, make_message):
        """Reply metadata does not override the gap rule."""
        from docflow.grouping import GroupingConfig, group_conversations

        messages = [
            make_message(1, 0),
            make_message(2, 60, metadata={"reply_to": "m1"}),
        ]

        conversations = group_conversations(_tags(messages), messages, GroupingConfig())

        assert len(conversations) == 2


class TestGroupingDeterminism:
    """Tests for ids, ordering and input handling."""

    def test_empty_input(self, make_message):
        from docflow.grouping import GroupingConfig, group_conversations

        assert group_conversations([], [], GroupingConfig()) == []
        assert group_conversations([], [make_message(1)], GroupingConfig()) == []

    def test_identical_input_identical_output(self, make_message):
        """Grouping is a pure function of its input."""
        from docflow.grouping import GroupingConfig, group_conversations

        messages = [make_message(i, i * 3, channel=("a" if i % 2 else "b")) for i in range(1, 12)]
        config = GroupingConfig(time_window_minutes=10, max_conversation_size=3, min_gap_minutes=7)

        first = group_conversations(_tags(messages), messages, config)
        second = group_conversations(_tags(messages), list(reversed(messages)), config)

        assert [c.id for c in first] == [c.id for c in second]
        assert [[m.id for m in c.messages] for c in first] == [
            [m.id for m in c.messages] for c in second
        ]

    def test_id_from_channel_and_first_timestamp(self, make_message, t0):
        from docflow.core.models import epoch_ms
        from docflow.grouping import GroupingConfig, group_conversations

        messages = [make_message(1, 0), make_message(2, 1)]
        conversations = group_conversations(_tags(messages), messages, GroupingConfig())

        assert conversations[0].id == f"thread_help_{epoch_ms(t0)}"
        assert conversations[0].time_start == t0

    def test_only_tagged_messages_grouped(self, make_message):
        """Untagged messages and tags for unknown ids are ignored."""
        from docflow.core.models import MessageTag
        from docflow.grouping import GroupingConfig, group_conversations

        messages = [make_message(1, 0), make_message(2, 1), make_message(3, 2)]
        tags = [
            MessageTag(message_id=1, category="setup", reason="r"),
            MessageTag(message_id=3, category="setup", reason="r"),
            MessageTag(message_id=99, category="setup", reason="r"),
        ]

        conversations = group_conversations(tags, messages, GroupingConfig())

        assert len(conversations) == 1
        assert [m.id for m in conversations[0].messages] == [1, 3]
        assert set(conversations[0].tags) == {1, 3}

    def test_config_validation(self):
        from docflow.grouping import GroupingConfig

        with pytest.raises(ValueError):
            GroupingConfig(max_conversation_size=0)
        with pytest.raises(ValueError):
            GroupingConfig(min_gap_minutes=-1)

    def test_config_from_settings(self, test_settings):
        from docflow.grouping import GroupingConfig

        config = GroupingConfig.from_settings(test_settings)

        assert config.time_window_minutes == 15
        assert config.max_conversation_size == 20
        assert config.min_gap_minutes == 5


class TestConversationModel:
    """Tests for conversation-level accessors."""

    def test_merged_retrieval_criteria(self, make_message):
        from docflow.core.models import MessageTag, RetrievalCriteria
        from docflow.grouping import GroupingConfig, group_conversations

        messages = [make_message(1, 0), make_message(2, 1)]
        tags = [
            MessageTag(
                1, "setup", "r", summary="First",
                criteria=RetrievalCriteria(["install", "docker"], "docker install"),
            ),
            MessageTag(
                2, "setup", "r", summary="Second",
                criteria=RetrievalCriteria(["docker", "ports"], "docker install"),
            ),
        ]

        conversation = group_conversations(tags, messages, GroupingConfig())[0]
        criteria = conversation.retrieval_criteria()

        assert criteria.keywords == ["install", "docker", "ports"]
        assert criteria.semantic_query == "docker install"
        assert conversation.summary == "First"
        assert conversation.category == "setup"
        assert conversation.member_ids == {1, 2}
