"""Typed response schemas for structured model calls.

Responses are validated as a whole; a response that fails validation is
never partially used.
"""

from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, StringConstraints, field_validator

NO_DOC_VALUE = "no-doc-value"

Keyword = Annotated[str, StringConstraints(strip_whitespace=True, max_length=50)]


class _Schema(BaseModel):
    model_config = ConfigDict(extra="ignore")


class RagSearchCriteria(_Schema):
    """Search hints for retrieving related documentation."""

    keywords: list[Keyword] = Field(default_factory=list)
    semantic_query: str = Field(default="", max_length=200)


class ClassifiedThread(_Schema):
    """A group of batch messages sharing one documentation concern."""

    category: str = Field(min_length=1, max_length=50)
    messages: list[int] = Field(min_length=1)
    summary: str = Field(max_length=200)
    doc_value_reason: str = Field(max_length=300)
    rag_search_criteria: RagSearchCriteria = Field(default_factory=RagSearchCriteria)

    @property
    def is_valuable(self) -> bool:
        return self.category.strip().lower() != NO_DOC_VALUE


class ClassificationResponse(_Schema):
    """Response of the classification call."""

    threads: list[ClassifiedThread] = Field(default_factory=list)
    batch_summary: str = Field(default="", max_length=500)


class ProposalLocation(_Schema):
    line_start: int | None = None
    line_end: int | None = None
    section_name: str | None = None


class ProposedChange(_Schema):
    """One documentation edit suggested by the model."""

    update_type: Literal["INSERT", "UPDATE", "DELETE", "NONE"]
    page: str = Field(min_length=1, max_length=150)
    section: str | None = Field(default=None, max_length=100)
    location: ProposalLocation | None = None
    suggested_text: str | None = Field(default=None, max_length=2000)
    reasoning: str = Field(max_length=300)
    source_messages: list[int] = Field(default_factory=list)

    @field_validator("update_type", mode="before")
    @classmethod
    def _upper_update_type(cls, value: object) -> object:
        return value.strip().upper() if isinstance(value, str) else value


class ProposalResponse(_Schema):
    """Response of the proposal generation call."""

    proposals: list[ProposedChange] = Field(default_factory=list, max_length=10)
    proposals_rejected: bool = False
    rejection_reason: str | None = Field(default=None, max_length=500)
