"""Proposal persistence and queries."""

from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from docflow.core.models import ProposalDraft
from docflow.db.models import Proposal


async def create_proposal(
    session: AsyncSession,
    draft: ProposalDraft,
    *,
    context_id: str,
    batch_id: str,
) -> Proposal:
    """Store a validated proposal with review status 'pending'.

    Args:
        session: Database session.
        draft: Proposal produced by the generation step.
        context_id: Owning ConversationContext id.
        batch_id: Batch that produced the proposal.

    Returns:
        Created Proposal.
    """
    proposal = Proposal(
        context_id=context_id,
        conversation_id=draft.conversation_id,
        batch_id=batch_id,
        update_type=draft.update_type,
        page=draft.page,
        section=draft.section,
        suggested_text=draft.suggested_text,
        raw_suggested_text=draft.raw_suggested_text,
        reasoning=draft.reasoning,
        model=draft.model,
        review_status="pending",
    )
    proposal.location = draft.location
    proposal.source_messages = list(draft.source_message_ids)
    proposal.warnings = list(draft.warnings)
    proposal.enrichment = dict(draft.enrichment)
    session.add(proposal)
    return proposal


async def list_proposals(
    session: AsyncSession,
    review_status: str | None = None,
    batch_id: str | None = None,
    limit: int = 50,
) -> list[Proposal]:
    """Get proposals, newest first.

    Args:
        session: Database session.
        review_status: Optional filter (pending/approved/rejected).
        batch_id: Optional batch filter.
        limit: Maximum proposals to return.
    """
    stmt = select(Proposal).order_by(Proposal.created_at.desc(), Proposal.id).limit(limit)
    if review_status:
        stmt = stmt.where(Proposal.review_status == review_status)
    if batch_id:
        stmt = stmt.where(Proposal.batch_id == batch_id)
    return list(await session.scalars(stmt))


async def count_proposals(session: AsyncSession, batch_id: str | None = None) -> int:
    stmt = select(func.count(Proposal.id))
    if batch_id:
        stmt = stmt.where(Proposal.batch_id == batch_id)
    return (await session.scalar(stmt)) or 0
