"""LLM client for Docflow."""

from docflow.llm.client import (
    LLMClient,
    LLMConfig,
    LLMResponse,
    ModelMetadata,
    StructuredResponse,
)

__all__ = [
    "LLMClient",
    "LLMConfig",
    "LLMResponse",
    "ModelMetadata",
    "StructuredResponse",
]
