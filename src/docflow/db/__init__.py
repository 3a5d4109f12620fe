"""Database models and engine for Docflow."""

from docflow.db.engine import (
    get_engine,
    get_session,
    get_session_factory,
    init_database,
    reset_engine,
    session_scope,
)
from docflow.db.models import (
    COMPLETED,
    FAILED,
    PENDING,
    Base,
    BatchRun,
    Classification,
    ConversationContext,
    DocPage,
    Message,
    Proposal,
    StreamDescriptor,
    Watermark,
)

__all__ = [
    "COMPLETED",
    "FAILED",
    "PENDING",
    "Base",
    "BatchRun",
    "Classification",
    "ConversationContext",
    "DocPage",
    "Message",
    "Proposal",
    "StreamDescriptor",
    "Watermark",
    "get_engine",
    "get_session",
    "get_session_factory",
    "init_database",
    "reset_engine",
    "session_scope",
]
