"""Pytest fixtures for Docflow tests."""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from types import SimpleNamespace
from typing import TYPE_CHECKING, Any
from uuid import uuid4

import pytest

if TYPE_CHECKING:
    from docflow.config import Settings
    from docflow.core.models import ChatMessage, RetrievedDocument

# Fixed reference time; tests never depend on the wall clock
T0 = datetime(2024, 5, 1, 12, 0, 0)

_MSG_REF_RE = re.compile(r"\[MSG_(\d+)\]")


def message_refs(prompt: str) -> list[int]:
    """Message ids referenced in a rendered prompt, in order."""
    refs: list[int] = []
    for match in _MSG_REF_RE.finditer(prompt):
        ref = int(match.group(1))
        if ref not in refs:
            refs.append(ref)
    return refs


def classify_all(category: str = "troubleshooting") -> Callable[[str], dict[str, Any]]:
    """Responder that puts every batch message into one valuable thread."""

    def respond(prompt: str) -> dict[str, Any]:
        return {
            "threads": [
                {
                    "category": category,
                    "messages": message_refs(prompt),
                    "summary": "Node fails to sync",
                    "doc_value_reason": "Missing troubleshooting step",
                    "rag_search_criteria": {
                        "keywords": ["sync"],
                        "semantic_query": "node sync troubleshooting",
                    },
                }
            ],
            "batch_summary": "Sync problems",
        }

    return respond


def propose_for_all(page: str = "docs/troubleshooting.md") -> Callable[[str], dict[str, Any]]:
    """Responder that proposes one change citing every conversation message."""

    def respond(prompt: str) -> dict[str, Any]:
        return {
            "proposals": [
                {
                    "update_type": "INSERT",
                    "page": page,
                    "section": "Sync issues",
                    "suggested_text": "* Restart the node after upgrading.",
                    "reasoning": "Users keep hitting this",
                    "source_messages": message_refs(prompt),
                }
            ]
        }

    return respond


@dataclass
class MockCall:
    purpose: str
    prompt: str
    system_prompt: str | None
    model: str | None


@dataclass
class MockLLMClient:
    """Deterministic language model for testing.

    Responses are queued per purpose. A queued item is a payload dict, a
    callable taking the prompt and returning a payload, or an exception to
    raise. When a queue is empty the purpose's default is used.
    """

    defaults: dict[str, Any] = field(default_factory=dict)
    queued: dict[str, list[Any]] = field(default_factory=dict)
    calls: list[MockCall] = field(default_factory=list)

    def add(self, purpose: str, response: Any) -> None:
        self.queued.setdefault(purpose, []).append(response)

    def calls_for(self, purpose: str) -> list[MockCall]:
        return [c for c in self.calls if c.purpose == purpose]

    async def request_structured_json(
        self,
        prompt: str,
        schema: Any,
        purpose: str,
        *,
        system_prompt: str | None = None,
        model: str | None = None,
        max_tokens: int = 4096,
    ) -> Any:
        from pydantic import ValidationError as PydanticValidationError

        from docflow.core.errors import ValidationError
        from docflow.llm.client import ModelMetadata, StructuredResponse

        self.calls.append(MockCall(purpose, prompt, system_prompt, model))
        queue = self.queued.get(purpose)
        response = queue.pop(0) if queue else self.defaults.get(purpose, {})

        if isinstance(response, Exception):
            raise response
        if callable(response):
            response = response(prompt)

        try:
            data = schema.model_validate(response)
        except PydanticValidationError as e:
            raise ValidationError(str(e)) from e

        return StructuredResponse(
            data=data,
            metadata=ModelMetadata(
                model=model or "mock-model",
                purpose=purpose,
                input_tokens=len(prompt.split()),
                output_tokens=10,
            ),
        )


@dataclass
class StaticSearch:
    """Similarity search returning a fixed document list."""

    documents: list["RetrievedDocument"] = field(default_factory=list)
    queries: list[tuple[str, int]] = field(default_factory=list)

    async def search_similar_documents(self, query: str, top_k: int) -> list["RetrievedDocument"]:
        self.queries.append((query, top_k))
        return list(self.documents[:top_k])


@pytest.fixture
def t0() -> datetime:
    return T0


@pytest.fixture
def responders() -> SimpleNamespace:
    """Scripted response builders for MockLLMClient."""
    return SimpleNamespace(
        classify_all=classify_all,
        propose_for_all=propose_for_all,
        message_refs=message_refs,
    )


@pytest.fixture
def mock_llm() -> MockLLMClient:
    """Mock LLM that classifies every message as valuable and proposes one change."""
    return MockLLMClient(
        defaults={"analysis": classify_all(), "changegeneration": propose_for_all()}
    )


@pytest.fixture
def static_search() -> StaticSearch:
    from docflow.core.models import RetrievedDocument

    return StaticSearch(
        documents=[
            RetrievedDocument(
                path="docs/troubleshooting.md",
                title="Troubleshooting",
                content="# Troubleshooting\n\nIf the node does not sync, check peers.",
                score=0.8,
            ),
            RetrievedDocument(
                path="docs/install.md",
                title="Install",
                content="# Install\n\nDownload the binary.",
                score=0.4,
            ),
        ]
    )


@pytest.fixture
def make_message() -> Callable[..., "ChatMessage"]:
    """Factory for detached messages at minute offsets from T0."""
    from docflow.core.models import ChatMessage

    def factory(
        id: int,
        minutes: float = 0,
        channel: str | None = "help",
        content: str | None = None,
        author: str = "alice",
        stream_id: str = "discord",
        metadata: dict[str, Any] | None = None,
    ) -> ChatMessage:
        return ChatMessage(
            id=id,
            stream_id=stream_id,
            timestamp=T0 + timedelta(minutes=minutes),
            author=author,
            content=content if content is not None else f"message {id}",
            channel=channel,
            message_id=f"m{id}",
            metadata=metadata or {},
        )

    return factory


@pytest.fixture
def test_storage_dir(tmp_path: Path) -> Path:
    """Create a temporary storage directory."""
    storage = tmp_path / ".docflow"
    storage.mkdir(parents=True)
    return storage


@pytest.fixture
def test_settings(test_storage_dir: Path) -> "Settings":
    """Create test settings with temporary storage."""
    from docflow.config import Settings, reset_settings

    reset_settings()
    return Settings(
        storage_dir=test_storage_dir,
        llm_api_key="test-key",
        llm_retry_delay_seconds=0.0,
    )


@pytest.fixture
async def initialized_db(test_settings: "Settings") -> "Settings":
    """Initialize the database and return settings."""
    from docflow.config import reset_settings
    from docflow.db.engine import init_database, reset_engine

    reset_settings()
    await reset_engine()
    await init_database(test_settings)
    yield test_settings
    await reset_engine()
    reset_settings()


@pytest.fixture
def session_factory(initialized_db: "Settings") -> Any:
    from docflow.db.engine import get_session_factory

    return get_session_factory(initialized_db)


@pytest.fixture
def add_messages(session_factory: Any) -> Callable[..., Any]:
    """Insert PENDING messages given as (minutes, channel, content) tuples.

    Returns the created database ids in insertion order.
    """
    from docflow.db.engine import session_scope
    from docflow.services.messages import create_message

    async def insert(
        specs: list[tuple[float, str | None, str]],
        stream_id: str = "discord",
        base: datetime = T0,
    ) -> list[int]:
        ids: list[int] = []
        async with session_scope(session_factory) as session:
            for minutes, channel, content in specs:
                message, _ = await create_message(
                    session,
                    stream_id=stream_id,
                    message_id=f"{stream_id}-{uuid4().hex[:12]}",
                    timestamp=base + timedelta(minutes=minutes),
                    author="alice",
                    content=content,
                    channel=channel,
                )
                ids.append(message.id)
        return ids

    return insert
