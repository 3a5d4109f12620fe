"""Batch run tracking."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from docflow.core.errors import RecordNotFoundError
from docflow.core.models import epoch_ms, utcnow
from docflow.db.models import BatchRun


def format_batch_id(stream_id: str, window_start: datetime, sequence: int = 1) -> str:
    """Build a batch id from the stream prefix and window start.

    Later batches over the same window get a ``_<n>`` suffix.
    """
    batch_id = f"{stream_id[:10]}_{epoch_ms(window_start)}"
    if sequence > 1:
        batch_id = f"{batch_id}_{sequence}"
    return batch_id


async def next_batch_id(session: AsyncSession, stream_id: str, window_start: datetime) -> str:
    """Get an unused batch id for a window of a stream."""
    stmt = select(func.count(BatchRun.id)).where(
        BatchRun.stream_id == stream_id,
        BatchRun.window_start == window_start,
    )
    existing = (await session.scalar(stmt)) or 0
    return format_batch_id(stream_id, window_start, existing + 1)


async def create_batch_run(
    session: AsyncSession,
    *,
    batch_id: str,
    stream_id: str,
    window_start: datetime,
    window_end: datetime,
    message_count: int,
) -> BatchRun:
    """Create a batch run with status 'running'.

    Returns:
        Created BatchRun (flushed, so its id is set).
    """
    run = BatchRun(
        batch_id=batch_id,
        stream_id=stream_id,
        window_start=window_start,
        window_end=window_end,
        message_count=message_count,
        status="running",
        started_at=utcnow(),
    )
    session.add(run)
    await session.flush()
    return run


async def commit_batch_run(
    session: AsyncSession,
    run_id: str,
    *,
    messages_completed: int,
    conversation_count: int,
    proposal_count: int,
    discarded_proposals: int,
    stats: dict[str, Any],
) -> BatchRun:
    """Mark a batch run as committed.

    Args:
        session: Database session.
        run_id: BatchRun id.
        messages_completed: Messages marked COMPLETED by the batch.
        conversation_count: Conversations persisted.
        proposal_count: Proposals persisted.
        discarded_proposals: Proposals dropped by validation.
        stats: Per-step metrics.

    Returns:
        Updated BatchRun.
    """
    run = await session.get(BatchRun, run_id)
    if run is None:
        msg = f"Batch run {run_id} not found"
        raise RecordNotFoundError(msg)

    run.status = "committed"
    run.completed_at = utcnow()
    run.messages_completed = messages_completed
    run.conversation_count = conversation_count
    run.proposal_count = proposal_count
    run.discarded_proposals = discarded_proposals
    run.stats = stats
    return run


async def fail_batch_run(
    session: AsyncSession,
    run_id: str,
    error: str,
    stats: dict[str, Any] | None = None,
) -> BatchRun:
    """Mark a batch run as failed with zero progress."""
    run = await session.get(BatchRun, run_id)
    if run is None:
        msg = f"Batch run {run_id} not found"
        raise RecordNotFoundError(msg)

    run.status = "failed"
    run.completed_at = utcnow()
    run.messages_completed = 0
    run.error_message = error
    if stats is not None:
        run.stats = stats
    return run


async def get_batch_runs(
    session: AsyncSession,
    stream_id: str | None = None,
    limit: int = 10,
    status: str | None = None,
) -> list[BatchRun]:
    """Get batch runs, newest first."""
    stmt = select(BatchRun).order_by(BatchRun.created_at.desc(), BatchRun.window_start.desc())
    if stream_id:
        stmt = stmt.where(BatchRun.stream_id == stream_id)
    if status:
        stmt = stmt.where(BatchRun.status == status)
    return list(await session.scalars(stmt.limit(limit)))
