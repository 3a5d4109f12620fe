"""Conversation context persistence."""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from docflow.core.models import Conversation, RagContext
from docflow.db.models import ConversationContext

# Stored document previews are truncated to this many characters
DOCUMENT_PREVIEW_CHARS = 1000


async def save_context(
    session: AsyncSession,
    *,
    conversation: Conversation,
    batch_id: str,
    stream_id: str,
    rag: RagContext | None,
    rejection_reason: str | None = None,
) -> ConversationContext:
    """Store the retrieved grounding and outcome of one conversation.

    Args:
        session: Database session.
        conversation: The grouped conversation.
        batch_id: Batch that produced the conversation.
        stream_id: Stream the conversation belongs to.
        rag: Retrieved documents, or None when enrichment did not run.
        rejection_reason: Why the model declined to propose changes.

    Returns:
        The created ConversationContext (flushed, so its id is set).
    """
    context = ConversationContext(
        conversation_id=conversation.id,
        batch_id=batch_id,
        stream_id=stream_id,
        channel=conversation.channel,
        category=conversation.category,
        summary=conversation.summary,
        time_start=conversation.time_start,
        time_end=conversation.time_end,
        rag_query=rag.query if rag else "",
        token_estimate=rag.token_estimate if rag else 0,
        proposals_rejected=rejection_reason is not None,
        rejection_reason=rejection_reason,
    )
    context.message_ids = [m.id for m in conversation.messages]
    context.documents = [
        {
            "path": doc.path,
            "title": doc.title,
            "score": doc.score,
            "preview": doc.content[:DOCUMENT_PREVIEW_CHARS],
        }
        for doc in (rag.documents if rag else [])
    ]
    session.add(context)
    await session.flush()
    return context


async def list_contexts(session: AsyncSession, batch_id: str) -> list[ConversationContext]:
    stmt = (
        select(ConversationContext)
        .where(ConversationContext.batch_id == batch_id)
        .order_by(ConversationContext.time_start, ConversationContext.conversation_id)
    )
    return list(await session.scalars(stmt))
