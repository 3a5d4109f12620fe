"""Database models for Docflow.

Ingestion-owned tables:
- Message: normalized chat/feed messages written by connectors
- StreamDescriptor: connector configuration (read-only to the pipeline)

Pipeline-owned tables:
- Watermark: per-stream processing checkpoint
- Classification: per-message outcome for valuable messages
- ConversationContext: retrieved grounding per conversation and batch
- Proposal: candidate documentation edits awaiting review
- BatchRun: execution tracking per batch
- DocPage: documentation pages backing the FTS5 similarity index
"""

import json
from datetime import datetime
from typing import Any, ClassVar
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Connection,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from docflow.core.models import ChatMessage

PENDING = "PENDING"
COMPLETED = "COMPLETED"
FAILED = "FAILED"


class Base(DeclarativeBase):
    """Base class for Docflow models."""

    type_annotation_map: ClassVar[dict[type, Any]] = {}


class StreamDescriptor(Base):
    """Connector configuration for one stream."""

    __tablename__ = "stream_descriptors"

    stream_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    connector_type: Mapped[str] = mapped_column(String(64), nullable=False)
    config_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )

    @property
    def config(self) -> dict[str, Any]:
        """Get deserialized connector config."""
        return json.loads(self.config_json)  # type: ignore[no-any-return]

    @config.setter
    def config(self, value: dict[str, Any]) -> None:
        """Set serialized connector config."""
        self.config_json = json.dumps(value)


class Message(Base):
    """A normalized message from any source."""

    __tablename__ = "messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    stream_id: Mapped[str] = mapped_column(String(128), nullable=False)
    message_id: Mapped[str] = mapped_column(String(256), nullable=False)  # source-native id
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    author: Mapped[str] = mapped_column(String(256), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    channel: Mapped[str | None] = mapped_column(String(256), nullable=True)
    metadata_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=PENDING
    )  # PENDING/COMPLETED/FAILED
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )

    @property
    def metadata_(self) -> dict[str, Any]:
        """Get deserialized metadata."""
        return json.loads(self.metadata_json)  # type: ignore[no-any-return]

    @metadata_.setter
    def metadata_(self, value: dict[str, Any]) -> None:
        """Set serialized metadata."""
        self.metadata_json = json.dumps(value)

    def to_chat_message(self) -> ChatMessage:
        """Detach into a plain ChatMessage."""
        return ChatMessage(
            id=self.id,
            stream_id=self.stream_id,
            message_id=self.message_id,
            timestamp=self.timestamp,
            author=self.author,
            content=self.content,
            channel=self.channel,
            metadata=self.metadata_,
        )

    __table_args__ = (
        UniqueConstraint("stream_id", "message_id", name="uq_message_stream_native"),
        Index("idx_messages_stream_status_ts", "stream_id", "status", "timestamp"),
    )


class Watermark(Base):
    """Per-stream processing checkpoint.

    ``watermark_time`` is the start of the next batch window; every message
    before it has been part of a committed batch.
    """

    __tablename__ = "watermarks"

    stream_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    watermark_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    last_batch_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now(), onupdate=func.now()
    )


class Classification(Base):
    """Classification of one valuable message."""

    __tablename__ = "classifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    message_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("messages.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    batch_id: Mapped[str] = mapped_column(String(64), nullable=False)
    conversation_id: Mapped[str] = mapped_column(String(320), nullable=False)
    category: Mapped[str] = mapped_column(String(64), nullable=False)
    reasoning: Mapped[str] = mapped_column(Text, nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )

    __table_args__ = (
        Index("idx_classifications_batch", "batch_id"),
        Index("idx_classifications_conversation", "conversation_id", "batch_id"),
    )


class ConversationContext(Base):
    """Retrieved grounding and outcome for one conversation in one batch."""

    __tablename__ = "conversation_contexts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    conversation_id: Mapped[str] = mapped_column(String(320), nullable=False)
    batch_id: Mapped[str] = mapped_column(String(64), nullable=False)
    stream_id: Mapped[str] = mapped_column(String(128), nullable=False)
    channel: Mapped[str | None] = mapped_column(String(256), nullable=True)
    category: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    summary: Mapped[str] = mapped_column(Text, nullable=False, default="")
    message_ids_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    time_start: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    time_end: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    rag_query: Mapped[str] = mapped_column(Text, nullable=False, default="")
    documents_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    token_estimate: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    proposals_rejected: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )

    proposals: Mapped[list["Proposal"]] = relationship(
        "Proposal", back_populates="context", cascade="all, delete-orphan"
    )

    @property
    def message_ids(self) -> list[int]:
        return json.loads(self.message_ids_json)  # type: ignore[no-any-return]

    @message_ids.setter
    def message_ids(self, value: list[int]) -> None:
        self.message_ids_json = json.dumps(value)

    @property
    def documents(self) -> list[dict[str, Any]]:
        """Get deserialized retrieved documents."""
        return json.loads(self.documents_json)  # type: ignore[no-any-return]

    @documents.setter
    def documents(self, value: list[dict[str, Any]]) -> None:
        """Set serialized retrieved documents."""
        self.documents_json = json.dumps(value)

    __table_args__ = (
        UniqueConstraint("conversation_id", "batch_id", name="uq_context_conversation_batch"),
        Index("idx_contexts_batch", "batch_id"),
    )


class Proposal(Base):
    """A candidate documentation edit awaiting human review."""

    __tablename__ = "proposals"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    context_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("conversation_contexts.id", ondelete="CASCADE"), nullable=False
    )
    conversation_id: Mapped[str] = mapped_column(String(320), nullable=False)
    batch_id: Mapped[str] = mapped_column(String(64), nullable=False)
    update_type: Mapped[str] = mapped_column(String(16), nullable=False)  # INSERT/UPDATE/DELETE
    page: Mapped[str] = mapped_column(String(256), nullable=False)
    section: Mapped[str | None] = mapped_column(String(256), nullable=True)
    location_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    suggested_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    raw_suggested_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    reasoning: Mapped[str] = mapped_column(Text, nullable=False, default="")
    source_messages_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    warnings_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    enrichment_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    model: Mapped[str] = mapped_column(String(128), nullable=False, default="")
    review_status: Mapped[str] = mapped_column(
        String(16), nullable=False, default="pending"
    )  # pending/approved/rejected
    reviewed_by: Mapped[str | None] = mapped_column(String(256), nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )

    context: Mapped[ConversationContext] = relationship(
        "ConversationContext", back_populates="proposals"
    )

    @property
    def location(self) -> dict[str, Any] | None:
        if self.location_json is None:
            return None
        return json.loads(self.location_json)  # type: ignore[no-any-return]

    @location.setter
    def location(self, value: dict[str, Any] | None) -> None:
        self.location_json = json.dumps(value) if value is not None else None

    @property
    def source_messages(self) -> list[int]:
        """Get cited message ids."""
        return json.loads(self.source_messages_json)  # type: ignore[no-any-return]

    @source_messages.setter
    def source_messages(self, value: list[int]) -> None:
        """Set cited message ids."""
        self.source_messages_json = json.dumps(value)

    @property
    def warnings(self) -> list[str]:
        return json.loads(self.warnings_json)  # type: ignore[no-any-return]

    @warnings.setter
    def warnings(self, value: list[str]) -> None:
        self.warnings_json = json.dumps(value)

    @property
    def enrichment(self) -> dict[str, Any]:
        """Related pages, duplication check and source analysis."""
        return json.loads(self.enrichment_json)  # type: ignore[no-any-return]

    @enrichment.setter
    def enrichment(self, value: dict[str, Any]) -> None:
        self.enrichment_json = json.dumps(value)

    __table_args__ = (
        Index("idx_proposals_batch", "batch_id"),
        Index("idx_proposals_review_status", "review_status"),
        Index("idx_proposals_created_at", "created_at"),
    )


class BatchRun(Base):
    """Execution tracking for one batch of one stream."""

    __tablename__ = "batch_runs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    batch_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    stream_id: Mapped[str] = mapped_column(String(128), nullable=False)
    window_start: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    window_end: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default="running"
    )  # running/committed/failed
    message_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    messages_completed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    conversation_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    proposal_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    discarded_proposals: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    stats_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )

    @property
    def stats(self) -> dict[str, Any]:
        """Get deserialized run stats."""
        return json.loads(self.stats_json)  # type: ignore[no-any-return]

    @stats.setter
    def stats(self, value: dict[str, Any]) -> None:
        """Set serialized run stats."""
        self.stats_json = json.dumps(value)

    __table_args__ = (
        Index("idx_batch_runs_stream_window", "stream_id", "window_start"),
        Index("idx_batch_runs_status", "status"),
        Index("idx_batch_runs_created_at", "created_at"),
    )


class DocPage(Base):
    """A documentation page available for retrieval."""

    __tablename__ = "doc_pages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    path: Mapped[str] = mapped_column(String(512), nullable=False, unique=True)
    title: Mapped[str] = mapped_column(String(512), nullable=False, default="")
    content: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now(), onupdate=func.now()
    )


# FTS5 index over doc_pages; the FTS rowid mirrors doc_pages.id
FTS_CREATE_TABLE = """
CREATE VIRTUAL TABLE IF NOT EXISTS doc_pages_fts USING fts5(
    title,
    content
);
"""

FTS_INSERT_TRIGGER = """
CREATE TRIGGER IF NOT EXISTS doc_pages_fts_insert AFTER INSERT ON doc_pages BEGIN
    INSERT INTO doc_pages_fts(rowid, title, content)
    VALUES (NEW.id, NEW.title, NEW.content);
END;
"""

FTS_UPDATE_TRIGGER = """
CREATE TRIGGER IF NOT EXISTS doc_pages_fts_update AFTER UPDATE ON doc_pages BEGIN
    DELETE FROM doc_pages_fts WHERE rowid = OLD.id;
    INSERT INTO doc_pages_fts(rowid, title, content)
    VALUES (NEW.id, NEW.title, NEW.content);
END;
"""

FTS_DELETE_TRIGGER = """
CREATE TRIGGER IF NOT EXISTS doc_pages_fts_delete AFTER DELETE ON doc_pages BEGIN
    DELETE FROM doc_pages_fts WHERE rowid = OLD.id;
END;
"""


def init_fts(conn: Connection) -> None:
    """Initialize FTS5 virtual table and triggers."""
    conn.execute(text(FTS_CREATE_TABLE))
    conn.execute(text(FTS_INSERT_TRIGGER))
    conn.execute(text(FTS_UPDATE_TRIGGER))
    conn.execute(text(FTS_DELETE_TRIGGER))
