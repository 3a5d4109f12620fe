"""Conversation grouping engine.

Clusters valuable messages into conversations by channel and time. The
function is pure: identical input always yields identical groups and ids.

Partition rules, applied while walking messages sorted by (channel, time):
- a different channel always starts a new conversation
- a gap of more than ``min_gap_minutes`` from the previous message starts a
  new conversation (a gap of exactly ``min_gap_minutes`` does not)
- a message more than ``time_window_minutes`` after the conversation's first
  message starts a new conversation
- a conversation never holds more than ``max_conversation_size`` messages

Reply links in message metadata never override these rules.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING

from docflow.core.models import ChatMessage, Conversation, MessageTag, epoch_ms

if TYPE_CHECKING:
    from docflow.config import Settings

# Id segment used for messages without a channel
NO_CHANNEL_SEGMENT = "~none"


@dataclass(frozen=True)
class GroupingConfig:
    """Tunable thresholds for conversation grouping."""

    time_window_minutes: float = 15.0
    max_conversation_size: int = 20
    min_gap_minutes: float = 5.0

    def __post_init__(self) -> None:
        if self.max_conversation_size < 1:
            msg = f"max_conversation_size must be >= 1, got {self.max_conversation_size}"
            raise ValueError(msg)
        if self.min_gap_minutes < 0 or self.time_window_minutes < 0:
            msg = "Grouping time thresholds must be non-negative"
            raise ValueError(msg)

    @classmethod
    def from_settings(cls, settings: "Settings") -> GroupingConfig:
        return cls(
            time_window_minutes=settings.conversation_time_window_minutes,
            max_conversation_size=settings.max_conversation_size,
            min_gap_minutes=settings.min_conversation_gap_minutes,
        )


def _channel_key(channel: str | None) -> tuple[int, str]:
    # None sorts after every named channel and never equals one
    return (1, "") if channel is None else (0, channel)


def conversation_id(channel: str | None, first: ChatMessage) -> str:
    """Deterministic conversation id from channel and first member timestamp."""
    segment = NO_CHANNEL_SEGMENT if channel is None else channel
    return f"thread_{segment}_{epoch_ms(first.timestamp)}"


def group_conversations(
    tags: Sequence[MessageTag],
    messages: Sequence[ChatMessage],
    config: GroupingConfig,
) -> list[Conversation]:
    """Cluster tagged messages into ordered conversations.

    Args:
        tags: Valuable-message tags from classification.
        messages: The full message set; tags for unknown ids are ignored.
        config: Grouping thresholds.

    Returns:
        Conversations ordered by channel, then by start time.
    """
    by_id = {m.id: m for m in messages}
    tag_by_id: dict[int, MessageTag] = {}
    for tag in tags:
        if tag.message_id in by_id and tag.message_id not in tag_by_id:
            tag_by_id[tag.message_id] = tag

    valuable = sorted(
        (by_id[message_id] for message_id in tag_by_id),
        key=lambda m: (_channel_key(m.channel), m.timestamp, m.id),
    )

    gap = timedelta(minutes=config.min_gap_minutes)
    window = timedelta(minutes=config.time_window_minutes)

    groups: list[list[ChatMessage]] = []
    current: list[ChatMessage] = []
    for message in valuable:
        if current:
            first, previous = current[0], current[-1]
            if (
                _channel_key(message.channel) != _channel_key(previous.channel)
                or message.timestamp - previous.timestamp > gap
                or message.timestamp - first.timestamp > window
                or len(current) >= config.max_conversation_size
            ):
                groups.append(current)
                current = []
        current.append(message)
    if current:
        groups.append(current)

    conversations: list[Conversation] = []
    seen_ids: dict[str, int] = {}
    for members in groups:
        base_id = conversation_id(members[0].channel, members[0])
        # Size-cap splits of identical timestamps would otherwise collide
        seen_ids[base_id] = seen_ids.get(base_id, 0) + 1
        conv_id = base_id if seen_ids[base_id] == 1 else f"{base_id}_{seen_ids[base_id]}"
        conversations.append(
            Conversation(
                id=conv_id,
                channel=members[0].channel,
                time_start=members[0].timestamp,
                time_end=members[-1].timestamp,
                messages=list(members),
                tags={m.id: tag_by_id[m.id] for m in members},
            )
        )
    return conversations
