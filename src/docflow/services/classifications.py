"""Classification persistence."""

from __future__ import annotations

from collections.abc import Sequence

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from docflow.core.models import Conversation
from docflow.db.models import Classification


async def upsert_classification(
    session: AsyncSession,
    *,
    message_id: int,
    batch_id: str,
    conversation_id: str,
    category: str,
    reasoning: str,
) -> Classification:
    """Create or replace the classification of one message.

    Args:
        session: Database session.
        message_id: Message primary key.
        batch_id: Batch that produced the classification.
        conversation_id: Conversation the message was grouped into.
        category: Documentation category.
        reasoning: Why the message has documentation value.

    Returns:
        The stored Classification.
    """
    stmt = select(Classification).where(Classification.message_id == message_id)
    classification = await session.scalar(stmt)
    if classification is None:
        classification = Classification(message_id=message_id)
        session.add(classification)

    classification.batch_id = batch_id
    classification.conversation_id = conversation_id
    classification.category = category
    classification.reasoning = reasoning
    return classification


async def save_conversation_classifications(
    session: AsyncSession,
    batch_id: str,
    conversations: Sequence[Conversation],
) -> int:
    """Store one Classification per valuable message of each conversation.

    Returns:
        Number of classifications written.
    """
    count = 0
    for conversation in conversations:
        for message in conversation.messages:
            tag = conversation.tags[message.id]
            await upsert_classification(
                session,
                message_id=message.id,
                batch_id=batch_id,
                conversation_id=conversation.id,
                category=tag.category,
                reasoning=tag.reason,
            )
            count += 1
    await session.flush()
    return count


async def delete_for_batch(session: AsyncSession, batch_id: str) -> int:
    """Delete all classifications written by a batch.

    Returns:
        Number of rows deleted.
    """
    stmt = delete(Classification).where(Classification.batch_id == batch_id)
    result = await session.execute(stmt)
    return result.rowcount or 0


async def get_for_batch(session: AsyncSession, batch_id: str) -> list[Classification]:
    stmt = (
        select(Classification)
        .where(Classification.batch_id == batch_id)
        .order_by(Classification.message_id)
    )
    return list(await session.scalars(stmt))
