"""Documentation index and FTS5 similarity search."""

from __future__ import annotations

import logging
import re
from pathlib import Path

from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docflow.core.models import RetrievedDocument
from docflow.db.engine import session_scope
from docflow.db.models import DocPage

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"\w+", re.UNICODE)
_HEADING_RE = re.compile(r"^#\s+(.+)$", re.MULTILINE)

# Search queries keep at most this many distinct terms
MAX_QUERY_TERMS = 32


def build_match_query(query: str) -> str:
    """Turn free text into an FTS5 OR-query of quoted terms.

    Quoting every term keeps punctuation and FTS5 operators in the input
    from being interpreted as query syntax.
    """
    terms: list[str] = []
    for token in _TOKEN_RE.findall(query.lower()):
        if len(token) < 2 or token in terms:
            continue
        terms.append(token)
        if len(terms) >= MAX_QUERY_TERMS:
            break
    return " OR ".join(f'"{term}"' for term in terms)


def rank_to_score(rank: float) -> float:
    """Map a bm25 rank (lower is better) to a similarity score in [0, 1)."""
    relevance = max(-rank, 0.0)
    return relevance / (1.0 + relevance)


async def upsert_document(session: AsyncSession, path: str, title: str, content: str) -> DocPage:
    """Create or update a documentation page by path."""
    page = await session.scalar(select(DocPage).where(DocPage.path == path))
    if page is None:
        page = DocPage(path=path, title=title, content=content)
        session.add(page)
    else:
        page.title = title
        page.content = content
    await session.flush()
    return page


async def search_documents(
    session: AsyncSession,
    query: str,
    limit: int = 10,
) -> list[RetrievedDocument]:
    """Search documentation pages using FTS5 with bm25 ranking.

    Args:
        session: Database session.
        query: Free-text query.
        limit: Maximum results to return.

    Returns:
        Documents sorted by descending score.
    """
    match = build_match_query(query)
    if not match:
        return []

    sql = """
        SELECT
            p.path,
            p.title,
            p.content,
            bm25(doc_pages_fts) as rank
        FROM doc_pages_fts
        JOIN doc_pages p ON doc_pages_fts.rowid = p.id
        WHERE doc_pages_fts MATCH :query
        ORDER BY rank
        LIMIT :limit
    """
    result = await session.execute(text(sql), {"query": match, "limit": limit})
    return [
        RetrievedDocument(
            path=row[0],
            title=row[1],
            content=row[2],
            score=rank_to_score(float(row[3])),
        )
        for row in result.fetchall()
    ]


def extract_title(path: Path, content: str) -> str:
    """Use the first top-level Markdown heading, else the file stem."""
    match = _HEADING_RE.search(content)
    if match:
        return match.group(1).strip()
    return path.stem.replace("-", " ").replace("_", " ")


async def index_directory(session: AsyncSession, root: Path) -> int:
    """Index all Markdown files under ``root``.

    Paths are stored relative to ``root`` with forward slashes.

    Returns:
        Number of pages indexed.
    """
    count = 0
    for file_path in sorted(root.rglob("*")):
        if file_path.suffix.lower() not in (".md", ".mdx") or not file_path.is_file():
            continue
        content = file_path.read_text(encoding="utf-8")
        relative = file_path.relative_to(root).as_posix()
        await upsert_document(session, relative, extract_title(file_path, content), content)
        count += 1
    logger.info("Indexed %d documentation pages from %s", count, root)
    return count


class DocumentIndex:
    """Similarity-search boundary backed by the FTS5 documentation index."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def search_similar_documents(self, query: str, top_k: int) -> list[RetrievedDocument]:
        async with session_scope(self._session_factory) as session:
            return await search_documents(session, query, limit=top_k)
