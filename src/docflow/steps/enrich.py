"""RAG enrichment step: retrieve related documentation per conversation."""

from __future__ import annotations

import logging
import math
import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from docflow.core.errors import PipelineError
from docflow.core.models import Conversation, RagContext, RetrievedDocument
from docflow.steps.base import Step

if TYPE_CHECKING:
    from docflow.pipeline.context import PipelineContext

logger = logging.getLogger(__name__)

# Fallback query length when classification gave no semantic query
QUERY_CONTENT_CHARS = 500

_TRANSLATION_RE = re.compile(r"^i18n/[^/]+/docusaurus-plugin-content-docs/current/(.+)$")


def canonical_path(path: str) -> str:
    """Map a translated page path to the path of its source page."""
    match = _TRANSLATION_RE.match(path)
    return f"docs/{match.group(1)}" if match else path


def is_translation(path: str) -> bool:
    return _TRANSLATION_RE.match(path) is not None


def build_query(conversation: Conversation) -> str:
    """Build the similarity query from a conversation's retrieval criteria."""
    criteria = conversation.retrieval_criteria()
    query = criteria.semantic_query
    if not query:
        content = " ".join(m.content for m in conversation.messages)
        query = content[:QUERY_CONTENT_CHARS]
    if criteria.keywords:
        query = f"{query} {' '.join(criteria.keywords)}"
    return query.strip()


def select_documents(
    documents: Sequence[RetrievedDocument],
    top_k: int,
    min_similarity: float = 0.0,
    deduplicate_translations: bool = True,
) -> list[RetrievedDocument]:
    """Deduplicate, threshold and rank search results.

    Duplicates by path keep the highest score. Translated copies collapse
    onto their source page, preferring the untranslated page and then the
    higher score.
    """
    best: dict[str, RetrievedDocument] = {}
    for doc in documents:
        current = best.get(doc.path)
        if current is None or doc.score > current.score:
            best[doc.path] = doc

    candidates = list(best.values())
    if deduplicate_translations:
        by_source: dict[str, RetrievedDocument] = {}
        for doc in candidates:
            key = canonical_path(doc.path)
            current = by_source.get(key)
            if current is None or _preferred(doc, current):
                by_source[key] = doc
        candidates = list(by_source.values())

    candidates = [d for d in candidates if d.score >= min_similarity]
    candidates.sort(key=lambda d: (-d.score, d.path))
    return candidates[:top_k]


def _preferred(doc: RetrievedDocument, current: RetrievedDocument) -> bool:
    doc_original, current_original = not is_translation(doc.path), not is_translation(current.path)
    if doc_original != current_original:
        return doc_original
    return doc.score > current.score


def estimate_tokens(documents: Sequence[RetrievedDocument]) -> int:
    """Rough token cost of documents (4 characters per token)."""
    return math.ceil(sum(len(d.content) for d in documents) / 4)


@dataclass
class EnrichStep(Step):
    """Retrieve top-K documentation passages for each conversation.

    Options:
        top_k: Passages kept per conversation (default 5).
        min_similarity: Drop passages scoring below this (default 0.0).
        deduplicate_translations: Collapse translated copies (default True).
    """

    step_type: str = field(init=False, default="enrich")

    def validate_config(self) -> None:
        top_k = self.option("top_k", 5)
        if not isinstance(top_k, int) or top_k < 1:
            msg = f"Step '{self.step_id}': top_k must be a positive integer"
            raise PipelineError(msg)

    async def execute(self, ctx: "PipelineContext") -> None:
        ctx.rag_contexts = {}
        log = ctx.step_log(self.step_id)
        log.items_in = len(ctx.conversations)

        top_k = self.option("top_k", 5)
        min_similarity = float(self.option("min_similarity", 0.0))
        dedupe = bool(self.option("deduplicate_translations", True))

        for conversation in ctx.conversations:
            query = build_query(conversation)
            results = await ctx.search.search_similar_documents(query, top_k * 2)
            documents = select_documents(results, top_k, min_similarity, dedupe)
            ctx.rag_contexts[conversation.id] = RagContext(
                query=query,
                documents=documents,
                token_estimate=estimate_tokens(documents),
            )
            logger.debug(
                "Conversation %s: %d of %d passages kept",
                conversation.id,
                len(documents),
                len(results),
            )

        log.items_out = sum(len(r.documents) for r in ctx.rag_contexts.values())
