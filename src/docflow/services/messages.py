"""Message queries and status transitions."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from docflow.db.models import COMPLETED, PENDING, Message


async def create_message(
    session: AsyncSession,
    *,
    stream_id: str,
    message_id: str,
    timestamp: datetime,
    author: str,
    content: str,
    channel: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> tuple[Message, bool]:
    """Write a PENDING message, the upstream producer contract.

    Args:
        session: Database session.
        stream_id: Stream the message belongs to.
        message_id: Source-native message id, unique per stream.
        timestamp: Naive UTC timestamp.
        author: Display name of the author.
        content: Message text.
        channel: Channel or topic name, if any.
        metadata: Free-form metadata (reply_to, topic, ...).

    Returns:
        Tuple of (message, created). An existing message with the same
        source-native id is returned unchanged.
    """
    stmt = select(Message).where(
        Message.stream_id == stream_id,
        Message.message_id == message_id,
    )
    existing = await session.scalar(stmt)
    if existing is not None:
        return existing, False

    message = Message(
        stream_id=stream_id,
        message_id=message_id,
        timestamp=timestamp,
        author=author,
        content=content,
        channel=channel,
        status=PENDING,
    )
    message.metadata_ = metadata or {}
    session.add(message)
    await session.flush()
    return message, True


async def list_pending_streams(
    session: AsyncSession,
    *,
    stream_id: str | None = None,
    exclude: Iterable[str] = (),
) -> list[str]:
    """Get distinct stream ids with at least one PENDING message.

    Args:
        session: Database session.
        stream_id: Restrict discovery to this stream (isolated test mode).
        exclude: Stream ids to skip when no explicit stream is given.

    Returns:
        Sorted list of stream ids.
    """
    stmt = select(Message.stream_id).where(Message.status == PENDING).distinct()
    if stream_id is not None:
        stmt = stmt.where(Message.stream_id == stream_id)
    else:
        excluded = list(exclude)
        if excluded:
            stmt = stmt.where(Message.stream_id.not_in(excluded))
    return sorted(await session.scalars(stmt))


async def earliest_pending_timestamp(session: AsyncSession, stream_id: str) -> datetime | None:
    """Get the timestamp of the oldest PENDING message in a stream."""
    stmt = select(func.min(Message.timestamp)).where(
        Message.stream_id == stream_id,
        Message.status == PENDING,
    )
    return await session.scalar(stmt)


async def count_pending(
    session: AsyncSession,
    stream_id: str,
    start: datetime | None = None,
    end: datetime | None = None,
) -> int:
    """Count PENDING messages with ``start <= timestamp < end``.

    Either bound may be omitted.
    """
    stmt = select(func.count(Message.id)).where(
        Message.stream_id == stream_id,
        Message.status == PENDING,
    )
    if start is not None:
        stmt = stmt.where(Message.timestamp >= start)
    if end is not None:
        stmt = stmt.where(Message.timestamp < end)
    return (await session.scalar(stmt)) or 0


async def fetch_pending_window(
    session: AsyncSession,
    stream_id: str,
    start: datetime,
    end: datetime,
    limit: int,
) -> list[Message]:
    """Get up to ``limit`` PENDING messages in ``[start, end)``, oldest first."""
    stmt = (
        select(Message)
        .where(
            Message.stream_id == stream_id,
            Message.status == PENDING,
            Message.timestamp >= start,
            Message.timestamp < end,
        )
        .order_by(Message.timestamp, Message.id)
        .limit(limit)
    )
    return list(await session.scalars(stmt))


async def fetch_context(
    session: AsyncSession,
    stream_id: str,
    start: datetime,
    end: datetime,
    limit: int,
) -> list[Message]:
    """Get the most recent COMPLETED messages in ``[start, end)``.

    Returns at most ``limit`` messages, oldest first.
    """
    stmt = (
        select(Message)
        .where(
            Message.stream_id == stream_id,
            Message.status == COMPLETED,
            Message.timestamp >= start,
            Message.timestamp < end,
        )
        .order_by(Message.timestamp.desc(), Message.id.desc())
        .limit(limit)
    )
    messages = list(await session.scalars(stmt))
    messages.reverse()
    return messages


async def mark_completed(session: AsyncSession, message_ids: Sequence[int]) -> int:
    """Bulk-mark PENDING messages as COMPLETED.

    Returns:
        Number of rows updated.
    """
    if not message_ids:
        return 0
    stmt = (
        update(Message)
        .where(Message.id.in_(list(message_ids)), Message.status == PENDING)
        .values(status=COMPLETED)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return result.rowcount or 0


async def get_messages(session: AsyncSession, message_ids: Sequence[int]) -> list[Message]:
    """Get messages by id, ordered by timestamp."""
    if not message_ids:
        return []
    stmt = (
        select(Message)
        .where(Message.id.in_(list(message_ids)))
        .order_by(Message.timestamp, Message.id)
    )
    return list(await session.scalars(stmt))


async def count_by_status(session: AsyncSession) -> dict[str, dict[str, int]]:
    """Count messages per stream and status.

    Returns:
        Mapping of stream id to ``{status: count}``.
    """
    stmt = (
        select(Message.stream_id, Message.status, func.count(Message.id))
        .group_by(Message.stream_id, Message.status)
        .order_by(Message.stream_id)
    )
    counts: dict[str, dict[str, int]] = {}
    for stream_id, status, count in await session.execute(stmt):
        counts.setdefault(stream_id, {})[status] = count
    return counts
