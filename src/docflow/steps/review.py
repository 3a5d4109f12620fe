"""Reviewer aids attached to each proposal.

For every draft the generation step records the documentation pages it
relates to, whether its suggested text largely repeats one of them, and a
short analysis of the conversation it came from. None of this changes the
proposal itself; it is stored next to it for the reviewer.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from typing import Any

from docflow.core.models import ChatMessage, RetrievedDocument

RELATED_MIN_SCORE = 0.6
RELATED_LIMIT = 5
SEMANTIC_MIN_SCORE = 0.8
SNIPPET_CHARS = 200
DUPLICATION_THRESHOLD = 50  # percent
NGRAM_SIZE = 3

_WORD_RE = re.compile(r"\w+")


def _truncate(text: str, limit: int = SNIPPET_CHARS) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


def _ngrams(text: str, n: int) -> set[tuple[str, ...]]:
    words = _WORD_RE.findall(text.lower())
    return {tuple(words[i : i + n]) for i in range(len(words) - n + 1)}


def ngram_overlap(text: str, other: str, n: int = NGRAM_SIZE) -> int:
    """Percentage of the word n-grams of ``text`` that also occur in ``other``.

    Text shorter than ``n`` words has no n-grams and overlaps 0%.
    """
    grams = _ngrams(text, n)
    if not grams:
        return 0
    return round(100 * len(grams & _ngrams(other, n)) / len(grams))


def find_related_docs(page: str, documents: Sequence[RetrievedDocument]) -> list[dict[str, Any]]:
    """Pick retrieved pages closely related to a proposal.

    Pages scoring at least ``RELATED_MIN_SCORE`` are kept once per path, best
    first, up to ``RELATED_LIMIT``. The match type is ``same-section`` for the
    proposal's own page, else ``semantic`` or ``keyword`` by score.
    """
    related: list[dict[str, Any]] = []
    seen: set[str] = set()
    for doc in sorted(documents, key=lambda d: d.score, reverse=True):
        if doc.score < RELATED_MIN_SCORE or doc.path in seen:
            continue
        seen.add(doc.path)
        if doc.path == page:
            match_type = "same-section"
        elif doc.score >= SEMANTIC_MIN_SCORE:
            match_type = "semantic"
        else:
            match_type = "keyword"
        related.append(
            {
                "page": doc.path,
                "title": doc.title,
                "similarity": round(doc.score, 4),
                "match_type": match_type,
                "snippet": _truncate(doc.content),
            }
        )
        if len(related) == RELATED_LIMIT:
            break
    return related


def check_duplication(
    text: str | None, documents: Sequence[RetrievedDocument]
) -> dict[str, Any] | None:
    """Compare suggested text against the retrieved pages.

    Returns:
        None when there is no suggested text, otherwise a dict with
        ``detected``, ``overlap_percentage`` and, when detected, the
        ``matching_page`` and ``matching_section`` of the closest page.
    """
    if not text:
        return None
    best: RetrievedDocument | None = None
    best_overlap = 0
    for doc in documents:
        overlap = ngram_overlap(text, doc.content)
        if overlap > best_overlap:
            best, best_overlap = doc, overlap

    result: dict[str, Any] = {
        "detected": best is not None and best_overlap >= DUPLICATION_THRESHOLD,
        "overlap_percentage": best_overlap,
    }
    if result["detected"] and best is not None:
        result["matching_page"] = best.path
        result["matching_section"] = best.title
    return result


def analyze_sources(messages: Sequence[ChatMessage]) -> dict[str, Any]:
    """Summarize the conversation a proposal came from.

    A thread counts as having consensus when at least two authors wrote at
    least three messages between them.
    """
    authors = {m.author for m in messages}
    return {
        "message_count": len(messages),
        "unique_authors": len(authors),
        "thread_had_consensus": len(authors) >= 2 and len(messages) >= 3,
        "conversation_summary": _truncate(" ".join(m.content for m in messages)),
    }


def review_aids(
    page: str,
    suggested_text: str | None,
    messages: Sequence[ChatMessage],
    documents: Sequence[RetrievedDocument],
) -> dict[str, Any]:
    """Build the enrichment stored with a proposal."""
    return {
        "related_docs": find_related_docs(page, documents),
        "duplication": check_duplication(suggested_text, documents),
        "source_analysis": analyze_sources(messages),
    }
