"""Core data models shared by the pipeline stages.

These are plain dataclasses, detached from the database session, so the
grouping engine and the pipeline steps can work on them without I/O.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


def utcnow() -> datetime:
    """Current time as a naive UTC datetime (the storage convention)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive values are assumed UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def epoch_ms(value: datetime) -> int:
    """Milliseconds since the epoch for a naive UTC datetime."""
    return int(value.replace(tzinfo=timezone.utc).timestamp() * 1000)


@dataclass
class ChatMessage:
    """Snapshot of a stored message."""

    id: int
    stream_id: str
    timestamp: datetime
    author: str
    content: str
    channel: str | None = None
    message_id: str = ""  # source-native id
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def reply_to(self) -> str | None:
        """Source-native id of the message this one replies to."""
        value = self.metadata.get("reply_to") or self.metadata.get("replyToMessageId")
        return str(value) if value is not None else None

    @property
    def topic(self) -> str | None:
        value = self.metadata.get("topic")
        return str(value) if value else None


@dataclass
class RetrievalCriteria:
    """Search hints produced by classification."""

    keywords: list[str] = field(default_factory=list)
    semantic_query: str = ""


@dataclass
class MessageTag:
    """Classification outcome for one valuable message."""

    message_id: int
    category: str
    reason: str
    summary: str = ""
    criteria: RetrievalCriteria | None = None


@dataclass
class Conversation:
    """A group of related valuable messages, ordered by timestamp."""

    id: str
    channel: str | None
    time_start: datetime
    time_end: datetime
    messages: list[ChatMessage] = field(default_factory=list)
    tags: dict[int, MessageTag] = field(default_factory=dict)

    @property
    def message_count(self) -> int:
        return len(self.messages)

    @property
    def member_ids(self) -> set[int]:
        return {m.id for m in self.messages}

    @property
    def category(self) -> str:
        """Category of the first member."""
        if not self.messages:
            return ""
        tag = self.tags.get(self.messages[0].id)
        return tag.category if tag else ""

    @property
    def reason(self) -> str:
        """Classification reason of the first member."""
        if not self.messages:
            return ""
        tag = self.tags.get(self.messages[0].id)
        return tag.reason if tag else ""

    @property
    def summary(self) -> str:
        """Summary of the first thread that contributed members."""
        for message in self.messages:
            tag = self.tags.get(message.id)
            if tag and tag.summary:
                return tag.summary
        return ""

    def retrieval_criteria(self) -> RetrievalCriteria:
        """Merge member retrieval criteria, preserving first-seen order."""
        keywords: list[str] = []
        queries: list[str] = []
        for message in self.messages:
            tag = self.tags.get(message.id)
            if tag is None or tag.criteria is None:
                continue
            for keyword in tag.criteria.keywords:
                if keyword and keyword not in keywords:
                    keywords.append(keyword)
            query = tag.criteria.semantic_query.strip()
            if query and query not in queries:
                queries.append(query)
        return RetrievalCriteria(keywords=keywords, semantic_query=" ".join(queries))


@dataclass
class RetrievedDocument:
    """A documentation passage returned by similarity search."""

    path: str
    title: str
    content: str
    score: float


@dataclass
class RagContext:
    """Retrieved grounding for one conversation."""

    query: str
    documents: list[RetrievedDocument] = field(default_factory=list)
    token_estimate: int = 0


@dataclass
class ProposalDraft:
    """A validated documentation edit, not yet persisted."""

    conversation_id: str
    update_type: str  # INSERT/UPDATE/DELETE
    page: str
    reasoning: str
    source_message_ids: list[int]
    section: str | None = None
    location: dict[str, Any] | None = None
    suggested_text: str | None = None
    raw_suggested_text: str | None = None
    warnings: list[str] = field(default_factory=list)
    model: str = ""
    enrichment: dict[str, Any] = field(default_factory=dict)
