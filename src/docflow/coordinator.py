"""Batch coordinator: the incremental loop over streams and windows.

One invocation walks every stream with PENDING messages. For each stream
it repeatedly takes the window ``[watermark, watermark + batch_window)``,
runs the pipeline over up to ``max_batch_size`` PENDING messages of that
window and commits the results in a single transaction:

- classifications, conversation contexts and proposals
- rejected contexts for threads classified as having no documentation value
- the batch messages marked COMPLETED
- the watermark advanced to the window end once the window has no
  PENDING messages left

PENDING messages that arrive behind the watermark are picked up first, in
windows starting at the oldest of them. Those batches never move the
watermark.

A failure rolls the transaction back, so the messages stay PENDING and the
next invocation recomputes the same window. Failures stop only the current
stream; the other streams still run.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docflow.core.errors import ConcurrencyError, DocflowError, PipelineError
from docflow.core.logging import BatchLogger
from docflow.core.models import ChatMessage, utcnow
from docflow.db.engine import session_scope
from docflow.grouping import GroupingConfig
from docflow.pipeline.config import PipelineConfig, default_pipeline_config
from docflow.pipeline.context import LanguageModel, PipelineContext, SimilaritySearch
from docflow.pipeline.orchestrator import PipelineOrchestrator, StepRegistry, default_registry
from docflow.services import (
    classifications,
    conversations,
    messages,
    proposals,
    runs,
    streams,
)
from docflow.services.watermarks import WatermarkManager
from docflow.steps.classify import NO_VALUE_REASON

if TYPE_CHECKING:
    from docflow.config import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BatchConfig:
    """Windowing and batch sizing."""

    batch_window: timedelta = timedelta(hours=24)
    context_window: timedelta = timedelta(hours=24)
    max_batch_size: int = 30
    context_message_limit: int = 100
    initial_lookback: timedelta = timedelta(days=7)
    excluded_stream_ids: tuple[str, ...] = ("pipeline-test",)

    def __post_init__(self) -> None:
        if self.max_batch_size < 1:
            msg = f"max_batch_size must be >= 1, got {self.max_batch_size}"
            raise ValueError(msg)
        if self.batch_window <= timedelta(0):
            msg = "batch_window must be positive"
            raise ValueError(msg)

    @classmethod
    def from_settings(cls, settings: "Settings") -> BatchConfig:
        return cls(
            batch_window=timedelta(hours=settings.batch_window_hours),
            context_window=timedelta(hours=settings.context_window_hours),
            max_batch_size=settings.max_batch_size,
            context_message_limit=settings.context_message_limit,
            initial_lookback=timedelta(days=settings.initial_lookback_days),
            excluded_stream_ids=tuple(settings.excluded_stream_ids),
        )


@dataclass
class BatchOutcome:
    """Result of one window pass of one stream."""

    stream_id: str
    window_start: datetime
    window_end: datetime
    batch_id: str | None = None
    messages_completed: int = 0
    conversations: int = 0
    proposals: int = 0
    discarded_proposals: int = 0
    watermark_advanced: bool = False
    skipped: bool = False  # empty window, watermark moved past it
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


@dataclass
class _PreparedBatch:
    batch_id: str
    run_id: str
    window_start: datetime
    window_end: datetime
    batch: list[ChatMessage] = field(default_factory=list)
    context: list[ChatMessage] = field(default_factory=list)
    late: bool = False  # behind the watermark, which stays put


class BatchCoordinator:
    """Drives the pipeline over every stream with unprocessed messages.

    At most one run is active per coordinator; a concurrent call returns 0
    without waiting.

    Usage:
        coordinator = build_coordinator(settings)
        completed = await coordinator.run()
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        llm: LanguageModel,
        search: SimilaritySearch,
        *,
        pipeline_config: PipelineConfig | None = None,
        batch_config: BatchConfig | None = None,
        grouping_config: GroupingConfig | None = None,
        registry: StepRegistry | None = None,
        clock: Callable[[], datetime] = utcnow,
        batch_logger: BatchLogger | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.llm = llm
        self.search = search
        self.pipeline_config = pipeline_config or default_pipeline_config()
        self.batch_config = batch_config or BatchConfig()
        self.grouping_config = grouping_config or GroupingConfig()
        self.clock = clock
        self.batch_logger = batch_logger
        self.orchestrator = PipelineOrchestrator(
            self.pipeline_config, registry or default_registry()
        )
        self.watermarks = WatermarkManager(lookback=self.batch_config.initial_lookback, clock=clock)
        self.last_outcomes: list[BatchOutcome] = []
        self._lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    async def run(self, stream_id: str | None = None) -> int:
        """Process every stream with PENDING messages.

        Args:
            stream_id: Only process this stream. Excluded stream ids apply
                only when no stream is given.

        Returns:
            Number of messages marked COMPLETED by this invocation, or 0 when
            another run is already in progress.
        """
        try:
            return await self._run_exclusive(stream_id)
        except ConcurrencyError as e:
            logger.info("%s, skipping", e)
            return 0

    async def _run_exclusive(self, stream_id: str | None) -> int:
        # No await between the check and the acquire
        if self._lock.locked():
            msg = "Batch run already in progress"
            raise ConcurrencyError(msg)

        async with self._lock:
            started = time.monotonic()
            self.last_outcomes = []
            stream_ids = await self._candidate_streams(stream_id)
            logger.info("Processing %d stream(s) with pending messages", len(stream_ids))

            total = 0
            for sid in stream_ids:
                total += await self._process_stream(sid)

            elapsed = time.monotonic() - started
            failed = sum(1 for o in self.last_outcomes if not o.succeeded)
            logger.info(
                "Run finished: %d messages completed, %d batches, %d failed (%.1fs)",
                total,
                len(self.last_outcomes),
                failed,
                elapsed,
            )
            if self.batch_logger:
                self.batch_logger.run_finish(total, elapsed)
            return total

    async def _candidate_streams(self, stream_id: str | None) -> list[str]:
        exclude = () if stream_id is not None else self.batch_config.excluded_stream_ids
        async with session_scope(self.session_factory) as session:
            pending = await messages.list_pending_streams(
                session, stream_id=stream_id, exclude=exclude
            )
            disabled = await streams.disabled_stream_ids(session)

        for sid in pending:
            if sid in disabled:
                logger.info("Skipping disabled stream %s", sid)
        return [sid for sid in pending if sid not in disabled]

    async def _process_stream(self, stream_id: str) -> int:
        completed = 0
        while True:
            try:
                outcome = await self._process_window(stream_id)
            except (DocflowError, SQLAlchemyError):
                logger.exception("Could not prepare the next batch for stream %s", stream_id)
                break
            if outcome is None:
                break
            if outcome.skipped:
                continue

            self.last_outcomes.append(outcome)
            if not outcome.succeeded:
                break
            completed += outcome.messages_completed
        return completed

    async def _process_window(self, stream_id: str) -> BatchOutcome | None:
        """Process the next batch of a stream.

        Returns:
            The batch outcome, a skipped outcome for an empty window, or None
            when the stream has nothing left to process.
        """
        prepared = await self._prepare_batch(stream_id)
        if prepared is None or isinstance(prepared, BatchOutcome):
            return prepared

        ctx = PipelineContext(
            stream_id=stream_id,
            batch_id=prepared.batch_id,
            messages=prepared.batch,
            llm=self.llm,
            search=self.search,
            context_messages=prepared.context,
            domain=self.pipeline_config.domain,
            grouping=self.grouping_config,
        )
        outcome = BatchOutcome(
            stream_id=stream_id,
            batch_id=prepared.batch_id,
            window_start=prepared.window_start,
            window_end=prepared.window_end,
        )

        try:
            await self.orchestrator.execute(ctx)
            if ctx.errors:
                msg = "; ".join(ctx.errors)
                raise PipelineError(msg)
            async with session_scope(self.session_factory) as session:
                await self._commit_batch(session, ctx, prepared, outcome)
        except (DocflowError, SQLAlchemyError) as e:
            outcome.error = f"{type(e).__name__}: {e}"
            logger.exception("Batch %s of stream %s failed", prepared.batch_id, stream_id)
            self._log_steps(ctx)
            await self._fail_batch(prepared, outcome.error, ctx)
            return outcome

        self._log_steps(ctx)
        if self.batch_logger:
            self.batch_logger.batch_commit(
                prepared.batch_id,
                outcome.messages_completed,
                outcome.conversations,
                outcome.proposals,
                outcome.watermark_advanced,
            )
        return outcome

    async def _prepare_batch(self, stream_id: str) -> _PreparedBatch | BatchOutcome | None:
        """Pick the next window and register its batch run.

        Empty windows are skipped by advancing the watermark here.
        """
        cfg = self.batch_config
        async with session_scope(self.session_factory) as session:
            watermark = await self.watermarks.initialize(session, stream_id)
            watermark_time = watermark.watermark_time
            now = self.clock()

            earliest = await messages.earliest_pending_timestamp(session, stream_id)
            if earliest is None:
                return None
            late = earliest < watermark_time
            if late:
                # Arrived after its window was closed; process it without
                # moving the watermark back
                window_start = earliest
                window_end = min(earliest + cfg.batch_window, watermark_time)
                logger.info(
                    "Stream %s: pending messages from %s are behind the watermark %s",
                    stream_id,
                    earliest.isoformat(),
                    watermark_time.isoformat(),
                )
            else:
                window_start = watermark_time
                if await messages.count_pending(
                    session, stream_id, start=window_start, end=now
                ) == 0:
                    return None
                window_end = min(window_start + cfg.batch_window, now)

            rows = await messages.fetch_pending_window(
                session, stream_id, window_start, window_end, cfg.max_batch_size
            )
            if not rows:
                await self.watermarks.advance(session, stream_id, window_end)
                logger.debug(
                    "Stream %s: empty window ending %s, watermark advanced",
                    stream_id,
                    window_end.isoformat(),
                )
                if self.batch_logger:
                    self.batch_logger.window_skipped(stream_id, window_end)
                return BatchOutcome(
                    stream_id=stream_id,
                    window_start=window_start,
                    window_end=window_end,
                    watermark_advanced=True,
                    skipped=True,
                )

            batch = [row.to_chat_message() for row in rows]
            context_end = batch[0].timestamp
            context_rows = await messages.fetch_context(
                session,
                stream_id,
                context_end - cfg.context_window,
                context_end,
                cfg.context_message_limit,
            )
            batch_id = await runs.next_batch_id(session, stream_id, window_start)
            run = await runs.create_batch_run(
                session,
                batch_id=batch_id,
                stream_id=stream_id,
                window_start=window_start,
                window_end=window_end,
                message_count=len(batch),
            )
            prepared = _PreparedBatch(
                batch_id=batch_id,
                run_id=run.id,
                window_start=window_start,
                window_end=window_end,
                batch=batch,
                context=[row.to_chat_message() for row in context_rows],
                late=late,
            )

        logger.info(
            "Batch %s: %d messages, %d context messages",
            batch_id,
            len(prepared.batch),
            len(prepared.context),
        )
        if self.batch_logger:
            self.batch_logger.batch_start(
                batch_id, stream_id, window_start, window_end, len(prepared.batch)
            )
        return prepared

    async def _commit_batch(
        self,
        session: AsyncSession,
        ctx: PipelineContext,
        prepared: _PreparedBatch,
        outcome: BatchOutcome,
    ) -> None:
        """Persist the batch results; the caller's session makes it atomic."""
        await classifications.save_conversation_classifications(
            session, prepared.batch_id, ctx.conversations
        )

        proposal_count = 0
        for conversation in ctx.conversations:
            context = await conversations.save_context(
                session,
                conversation=conversation,
                batch_id=prepared.batch_id,
                stream_id=ctx.stream_id,
                rag=ctx.rag_contexts.get(conversation.id),
                rejection_reason=ctx.rejections.get(conversation.id),
            )
            for draft in ctx.proposals.get(conversation.id, []):
                await proposals.create_proposal(
                    session, draft, context_id=context.id, batch_id=prepared.batch_id
                )
                proposal_count += 1

        for conversation in ctx.no_value_conversations:
            await conversations.save_context(
                session,
                conversation=conversation,
                batch_id=prepared.batch_id,
                stream_id=ctx.stream_id,
                rag=None,
                rejection_reason=conversation.reason or NO_VALUE_REASON,
            )

        completed =await messages.mark_completed(session, [m.id for m in prepared.batch])

        remaining = await messages.count_pending(
            session, ctx.stream_id, prepared.window_start, prepared.window_end
        )
        if prepared.late:
            logger.debug("Batch %s: late messages completed, watermark kept", prepared.batch_id)
        elif remaining == 0:
            await self.watermarks.advance(session, ctx.stream_id, prepared.window_end)
            outcome.watermark_advanced = True
        else:
            logger.debug(
                "Batch %s: %d messages left in window, watermark held",
                prepared.batch_id,
                remaining,
            )

        await runs.commit_batch_run(
            session,
            prepared.run_id,
            messages_completed=completed,
            conversation_count=len(ctx.conversations),
            proposal_count=proposal_count,
            discarded_proposals=ctx.discarded_proposals,
            stats=self._stats(ctx),
        )

        outcome.messages_completed = completed
        outcome.conversations = len(ctx.conversations)
        outcome.proposals = proposal_count
        outcome.discarded_proposals = ctx.discarded_proposals

    async def _fail_batch(self, prepared: _PreparedBatch, error: str, ctx: PipelineContext) -> None:
        """Record a failed batch with zero progress."""
        try:
            async with session_scope(self.session_factory) as session:
                removed = await classifications.delete_for_batch(session, prepared.batch_id)
                if removed:
                    logger.warning(
                        "Removed %d classifications of failed batch %s",
                        removed,
                        prepared.batch_id,
                    )
                await runs.fail_batch_run(session, prepared.run_id, error, self._stats(ctx))
        except (DocflowError, SQLAlchemyError):
            logger.exception("Could not record failure of batch %s", prepared.batch_id)
        if self.batch_logger:
            self.batch_logger.batch_failed(prepared.batch_id, error)

    def _log_steps(self, ctx: PipelineContext) -> None:
        if self.batch_logger is None:
            return
        for step in ctx.metrics.steps.values():
            self.batch_logger.step_finish(ctx.batch_id, step)

    @staticmethod
    def _stats(ctx: PipelineContext) -> dict[str, Any]:
        ctx.metrics.finalize()
        return {
            **ctx.metrics.to_dict(),
            "summary": ctx.summary(),
            "batch_summary": ctx.batch_summary,
            "errors": list(ctx.errors),
        }


def build_coordinator(
    settings: "Settings | None" = None,
    *,
    batch_logger: BatchLogger | None = None,
) -> BatchCoordinator:
    """Wire a coordinator from settings.

    Uses the OpenAI-compatible LLM client, the FTS5 documentation index and
    the pipeline config file when one is configured.
    """
    from docflow.config import get_settings
    from docflow.db.engine import get_session_factory
    from docflow.llm.client import LLMClient
    from docflow.pipeline.config import load_pipeline_config
    from docflow.services.documents import DocumentIndex

    if settings is None:
        settings = get_settings()

    if settings.pipeline_config_path is not None:
        pipeline_config = load_pipeline_config(settings.pipeline_config_path)
    else:
        pipeline_config = default_pipeline_config(settings)

    factory = get_session_factory(settings)
    return BatchCoordinator(
        factory,
        LLMClient.from_settings(settings),
        DocumentIndex(factory),
        pipeline_config=pipeline_config,
        batch_config=BatchConfig.from_settings(settings),
        grouping_config=GroupingConfig.from_settings(settings),
        batch_logger=batch_logger,
    )
