"""Classification step: tag valuable messages, then group them."""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Collection, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from docflow.core.errors import PipelineError
from docflow.core.models import ChatMessage, Conversation, MessageTag, RetrievalCriteria
from docflow.grouping import GroupingConfig, conversation_id, group_conversations
from docflow.llm.prompts import CLASSIFICATION_SYSTEM_PROMPT, render_classification_prompt
from docflow.llm.schemas import ClassificationResponse
from docflow.steps.base import Step

if TYPE_CHECKING:
    from docflow.pipeline.context import PipelineContext

logger = logging.getLogger(__name__)

PURPOSE = "analysis"
NO_VALUE_REASON = "Classified as no documentation value"

_GROUPING_OPTIONS = ("time_window_minutes", "max_conversation_size", "min_gap_minutes")


def extract_tags(response: ClassificationResponse, batch: Sequence[ChatMessage]) -> list[MessageTag]:
    """Turn valuable threads into per-message tags.

    References to messages outside the batch are ignored, and a message
    claimed by several valuable threads keeps the first one.
    """
    batch_ids = {m.id for m in batch}
    tags: list[MessageTag] = []
    claimed: set[int] = set()
    ignored = 0
    for thread in response.threads:
        if not thread.is_valuable:
            continue
        criteria = RetrievalCriteria(
            keywords=list(thread.rag_search_criteria.keywords),
            semantic_query=thread.rag_search_criteria.semantic_query,
        )
        for ref in thread.messages:
            if ref not in batch_ids:
                ignored += 1
                continue
            if ref in claimed:
                continue
            claimed.add(ref)
            tags.append(
                MessageTag(
                    message_id=ref,
                    category=thread.category.strip(),
                    reason=thread.doc_value_reason,
                    summary=thread.summary,
                    criteria=criteria,
                )
            )
    if ignored:
        logger.debug("Ignored %d thread references outside the batch", ignored)
    return tags


def no_value_conversations(
    response: ClassificationResponse,
    batch: Sequence[ChatMessage],
    claimed: Collection[int],
) -> list[Conversation]:
    """Build one conversation per no-doc-value thread.

    These are stored as rejected contexts so reviewers can see why a thread
    produced nothing. A thread keeps only batch messages that no valuable
    thread (or earlier no-value thread) claimed, and is dropped when none
    remain. Ids carry a ``_novalue`` suffix so they never collide with the
    grouped conversations of the same batch.
    """
    by_id = {m.id: m for m in batch}
    taken = set(claimed)
    seen_ids: dict[str, int] = {}
    conversations: list[Conversation] = []
    for thread in response.threads:
        if thread.is_valuable:
            continue
        refs = [r for r in dict.fromkeys(thread.messages) if r in by_id and r not in taken]
        members = sorted((by_id[r] for r in refs), key=lambda m: (m.timestamp, m.id))
        if not members:
            continue
        taken.update(m.id for m in members)

        base_id = f"{conversation_id(members[0].channel, members[0])}_novalue"
        seen_ids[base_id] = seen_ids.get(base_id, 0) + 1
        conv_id = base_id if seen_ids[base_id] == 1 else f"{base_id}_{seen_ids[base_id]}"
        reason = thread.doc_value_reason.strip() or NO_VALUE_REASON
        conversations.append(
            Conversation(
                id=conv_id,
                channel=members[0].channel,
                time_start=members[0].timestamp,
                time_end=members[-1].timestamp,
                messages=members,
                tags={
                    m.id: MessageTag(
                        message_id=m.id,
                        category=thread.category.strip(),
                        reason=reason,
                        summary=thread.summary,
                    )
                    for m in members
                },
            )
        )
    return conversations


@dataclass
class ClassifyStep(Step):
    """Ask the model which batch messages carry documentation value.

    Options:
        model: Model override for the classification call.
        time_window_minutes, max_conversation_size, min_gap_minutes:
            Per-pipeline overrides of the grouping thresholds.
    """

    step_type: str = field(init=False, default="classify")

    def validate_config(self) -> None:
        try:
            self.grouping_config(GroupingConfig())
        except (TypeError, ValueError) as e:
            msg = f"Step '{self.step_id}': invalid grouping options: {e}"
            raise PipelineError(msg) from e

    def grouping_config(self, base: GroupingConfig) -> GroupingConfig:
        overrides = {k: self.config[k] for k in _GROUPING_OPTIONS if k in self.config}
        return dataclasses.replace(base, **overrides) if overrides else base

    async def execute(self, ctx: "PipelineContext") -> None:
        ctx.tags = []
        ctx.conversations = []
        ctx.no_value_conversations = []
        ctx.batch_summary = ""

        batch = ctx.filtered_messages
        log = ctx.step_log(self.step_id)
        log.items_in = len(batch)
        if not batch:
            log.items_out = 0
            logger.debug("No messages to classify in batch %s", ctx.batch_id)
            return

        system_prompt = CLASSIFICATION_SYSTEM_PROMPT.format(
            project_name=ctx.domain.project_name,
            categories=", ".join(f'"{c}"' for c in ctx.domain.categories),
        )
        response = await ctx.llm.request_structured_json(
            render_classification_prompt(batch, ctx.context_messages),
            ClassificationResponse,
            PURPOSE,
            system_prompt=system_prompt,
            model=self.option("model"),
        )
        ctx.record_llm_call(self.step_id, response.metadata)

        ctx.tags = extract_tags(response.data, batch)
        ctx.batch_summary = response.data.batch_summary
        ctx.conversations = group_conversations(ctx.tags, batch, self.grouping_config(ctx.grouping))
        ctx.no_value_conversations = no_value_conversations(
            response.data, batch, {tag.message_id for tag in ctx.tags}
        )
        log.items_out = len(ctx.conversations)

        logger.info(
            "Batch %s: %d of %d messages valuable, %d conversations, %d no-value threads",
            ctx.batch_id,
            len(ctx.tags),
            len(batch),
            len(ctx.conversations),
            len(ctx.no_value_conversations),
        )
