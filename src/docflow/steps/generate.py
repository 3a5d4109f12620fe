"""Proposal generation step."""

from __future__ import annotations

import logging
import re
from collections.abc import Collection, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from docflow.core.errors import PipelineError, ProvenanceError
from docflow.core.models import Conversation, ProposalDraft, RagContext
from docflow.llm.prompts import PROPOSAL_SYSTEM_PROMPT, render_proposal_prompt
from docflow.llm.schemas import ProposalResponse, ProposedChange
from docflow.steps.base import Step
from docflow.steps.review import review_aids

if TYPE_CHECKING:
    from docflow.pipeline.context import PipelineContext

logger = logging.getLogger(__name__)

PURPOSE = "changegeneration"

_BULLET_RE = re.compile(r"^(\s*)[*+](\s+)")
_BLANK_RUN_RE = re.compile(r"\n{3,}")


def check_provenance(cited: Sequence[int], members: Collection[int]) -> list[int]:
    """Validate that a proposal cites only messages of its conversation.

    Returns:
        The cited ids, deduplicated in order.

    Raises:
        ProvenanceError: If nothing is cited or any id is foreign.
    """
    if not cited:
        msg = "Proposal cites no source messages"
        raise ProvenanceError(msg)
    foreign = [i for i in cited if i not in members]
    if foreign:
        msg = f"Proposal cites messages outside its conversation: {foreign}"
        raise ProvenanceError(msg, foreign)
    return list(dict.fromkeys(cited))


def normalize_suggested_text(text: str) -> str:
    """Normalize Markdown from the model.

    Converts CRLF to LF, strips trailing whitespace, turns ``*``/``+`` list
    markers into ``-`` outside code fences and collapses runs of blank lines.
    """
    lines: list[str] = []
    in_fence = False
    for line in text.replace("\r\n", "\n").replace("\r", "\n").split("\n"):
        line = line.rstrip()
        if line.lstrip().startswith("```"):
            in_fence = not in_fence
        elif not in_fence:
            line = _BULLET_RE.sub(r"\1-\2", line)
        lines.append(line)
    return _BLANK_RUN_RE.sub("\n\n", "\n".join(lines)).strip("\n")


@dataclass
class GenerateStep(Step):
    """Draft documentation edits for each conversation.

    Options:
        model: Model override for the proposal call.
        max_proposals_per_conversation: Keep at most this many (default 5).
        block_patterns: Regexes that add a warning when suggested text matches.
    """

    step_type: str = field(init=False, default="generate")
    _block_patterns: list[re.Pattern[str]] = field(init=False, default_factory=list, repr=False)

    def validate_config(self) -> None:
        limit = self.option("max_proposals_per_conversation", 5)
        if not isinstance(limit, int) or limit < 0:
            msg = f"Step '{self.step_id}': max_proposals_per_conversation must be >= 0"
            raise PipelineError(msg)
        try:
            self._block_patterns = [re.compile(p) for p in self.option("block_patterns", [])]
        except re.error as e:
            msg = f"Step '{self.step_id}': invalid block pattern: {e}"
            raise PipelineError(msg) from e

    def warnings_for(self, text: str | None) -> list[str]:
        if not text:
            return []
        return [
            f"Suggested text matches blocked pattern '{p.pattern}'"
            for p in self._block_patterns
            if p.search(text)
        ]

    def build_drafts(
        self,
        conversation: Conversation,
        response: ProposalResponse,
        model: str,
        rag: RagContext | None = None,
    ) -> tuple[list[ProposalDraft], int]:
        """Turn a validated response into proposal drafts.

        NONE proposals are skipped, proposals failing the provenance check
        are discarded, and the rest are capped per conversation. Each draft
        carries reviewer aids computed against the retrieved pages in
        ``rag``.

        Returns:
            Tuple of (drafts, number discarded for provenance).
        """
        if response.proposals_rejected:
            return [], 0

        drafts: list[ProposalDraft] = []
        discarded = 0
        for change in response.proposals:
            if change.update_type == "NONE":
                continue
            try:
                sources = check_provenance(change.source_messages, conversation.member_ids)
            except ProvenanceError as e:
                discarded += 1
                logger.warning(
                    "Discarding proposal for %s in conversation %s: %s",
                    change.page,
                    conversation.id,
                    e,
                )
                continue
            drafts.append(self._draft(conversation, change, sources, model, rag))

        limit = self.option("max_proposals_per_conversation", 5)
        if len(drafts) > limit:
            logger.info(
                "Conversation %s: keeping %d of %d proposals",
                conversation.id,
                limit,
                len(drafts),
            )
            drafts = drafts[:limit]
        return drafts, discarded

    def _draft(
        self,
        conversation: Conversation,
        change: ProposedChange,
        sources: list[int],
        model: str,
        rag: RagContext | None = None,
    ) -> ProposalDraft:
        text = change.suggested_text
        normalized = normalize_suggested_text(text) if text is not None else None
        enrichment = review_aids(
            change.page, normalized, conversation.messages, rag.documents if rag else []
        )
        warnings = self.warnings_for(normalized)
        duplication = enrichment["duplication"]
        if duplication and duplication["detected"]:
            warnings.append(
                f"Suggested text overlaps {duplication['overlap_percentage']}% "
                f"with {duplication['matching_page']}"
            )
        return ProposalDraft(
            conversation_id=conversation.id,
            update_type=change.update_type,
            page=change.page,
            section=change.section,
            location=change.location.model_dump() if change.location else None,
            suggested_text=normalized,
            raw_suggested_text=text,
            reasoning=change.reasoning,
            source_message_ids=sources,
            warnings=warnings,
            model=model,
            enrichment=enrichment,
        )

    async def execute(self, ctx: "PipelineContext") -> None:
        ctx.proposals = {}
        ctx.rejections = {}
        ctx.discarded_proposals = 0

        log = ctx.step_log(self.step_id)
        log.items_in = len(ctx.conversations)
        limit = self.option("max_proposals_per_conversation", 5)
        system_prompt = PROPOSAL_SYSTEM_PROMPT.format(
            project_name=ctx.domain.project_name,
            max_proposals=limit,
        )

        for conversation in ctx.conversations:
            response = await ctx.llm.request_structured_json(
                render_proposal_prompt(conversation, ctx.rag_contexts.get(conversation.id)),
                ProposalResponse,
                PURPOSE,
                system_prompt=system_prompt,
                model=self.option("model"),
            )
            ctx.record_llm_call(self.step_id, response.metadata)

            if response.data.proposals_rejected:
                reason = response.data.rejection_reason or "No reason given"
                ctx.rejections[conversation.id] = reason
                logger.info("Conversation %s: proposals rejected: %s", conversation.id, reason)

            drafts, discarded = self.build_drafts(
                conversation,
                response.data,
                response.metadata.model,
                ctx.rag_contexts.get(conversation.id),
            )
            ctx.discarded_proposals += discarded
            if drafts:
                ctx.proposals[conversation.id] = drafts

        log.items_out = ctx.proposal_count
