"""Shared state passed through the pipeline steps of one batch."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, TypeVar

from pydantic import BaseModel

from docflow.core.logging import RunLog, StepLog
from docflow.core.models import (
    ChatMessage,
    Conversation,
    MessageTag,
    ProposalDraft,
    RagContext,
    RetrievedDocument,
)
from docflow.grouping import GroupingConfig
from docflow.pipeline.config import DomainConfig

if TYPE_CHECKING:
    from docflow.llm.client import ModelMetadata, StructuredResponse

SchemaT = TypeVar("SchemaT", bound=BaseModel)


class LanguageModel(Protocol):
    """Language-model boundary used by the classify and generate steps."""

    async def request_structured_json(
        self,
        prompt: str,
        schema: type[SchemaT],
        purpose: str,
        *,
        system_prompt: str | None = None,
        model: str | None = None,
        max_tokens: int = 4096,
    ) -> "StructuredResponse[SchemaT]": ...


class SimilaritySearch(Protocol):
    """Similarity-search boundary used by the enrich step."""

    async def search_similar_documents(self, query: str, top_k: int) -> list[RetrievedDocument]: ...


@dataclass
class PipelineContext:
    """Mutable batch state.

    Inputs are set by the coordinator; each step replaces the outputs it
    owns, so re-running a step after a failure starts from a clean slate.
    """

    stream_id: str
    batch_id: str
    messages: list[ChatMessage]
    llm: LanguageModel
    search: SimilaritySearch
    context_messages: list[ChatMessage] = field(default_factory=list)
    domain: DomainConfig = field(default_factory=DomainConfig)
    grouping: GroupingConfig = field(default_factory=GroupingConfig)

    # Step outputs
    filtered_messages: list[ChatMessage] = field(init=False)
    tags: list[MessageTag] = field(default_factory=list)
    batch_summary: str = ""
    conversations: list[Conversation] = field(default_factory=list)
    no_value_conversations: list[Conversation] = field(default_factory=list)
    rag_contexts: dict[str, RagContext] = field(default_factory=dict)
    proposals: dict[str, list[ProposalDraft]] = field(default_factory=dict)
    rejections: dict[str, str] = field(default_factory=dict)
    discarded_proposals: int = 0

    errors: list[str] = field(default_factory=list)
    metrics: RunLog = field(default_factory=RunLog)

    def __post_init__(self) -> None:
        # Without a filter step every batch message goes to classification
        self.filtered_messages = list(self.messages)
        if not self.metrics.run_id:
            self.metrics.run_id = self.batch_id

    @property
    def proposal_count(self) -> int:
        return sum(len(drafts) for drafts in self.proposals.values())

    def step_log(self, step_id: str) -> StepLog:
        return self.metrics.get_or_create_step(step_id)

    def record_llm_call(self, step_id: str, metadata: "ModelMetadata") -> None:
        """Add one model call and its token usage to a step's metrics."""
        log = self.step_log(step_id)
        if not metadata.cached:
            log.llm_calls += 1
        log.tokens_used += metadata.total_tokens

    def summary(self) -> dict[str, Any]:
        return {
            "messages": len(self.messages),
            "filtered": len(self.filtered_messages),
            "valuable": len(self.tags),
            "conversations": len(self.conversations),
            "no_value_conversations": len(self.no_value_conversations),
            "proposals": self.proposal_count,
            "discarded_proposals": self.discarded_proposals,
        }
