"""Declarative pipeline configuration.

A pipeline is an ordered list of steps plus error handling and domain
settings. Configs are loaded from YAML; when none is given the built-in
default (filter, classify, enrich, generate) is used.

Example YAML::

    pipeline_id: validators-docs
    domain:
      project_name: Acme Node
      categories: [troubleshooting, configuration, api]
    error_handling:
      stop_on_error: true
      retry_attempts: 1
      retry_delay_seconds: 5
    steps:
      - step_id: keyword-filter
        step_type: filter
        config:
          exclude_keywords: [giveaway, airdrop]
      - step_id: batch-classify
        step_type: classify
      - step_id: rag-enrich
        step_type: enrich
        config: {top_k: 5}
      - step_id: proposal-generate
        step_type: generate
        config: {max_proposals_per_conversation: 3}
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml
from pydantic import BaseModel, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from docflow.core.errors import PipelineError

if TYPE_CHECKING:
    from docflow.config import Settings

DEFAULT_CATEGORIES = [
    "troubleshooting",
    "setup",
    "configuration",
    "api-usage",
    "concepts",
    "known-issue",
]


class StepConfig(BaseModel):
    """One entry of the ordered step list."""

    step_id: str = Field(min_length=1)
    step_type: str = Field(min_length=1)
    enabled: bool = True
    config: dict[str, Any] = Field(default_factory=dict)


class ErrorHandlingConfig(BaseModel):
    """Step failure policy.

    A failing step is retried ``retry_attempts`` times, waiting
    ``retry_delay_seconds * 2**attempt`` between attempts.

    Step retries multiply with the LLM client's own retries
    (``llm_max_retries``): every step attempt may make that many model
    calls. Step retries are therefore off unless configured, and a batch
    that still fails is retried by the next run.
    """

    stop_on_error: bool = True
    retry_attempts: int = Field(default=0, ge=0)
    retry_delay_seconds: float = Field(default=5.0, ge=0)


class DomainConfig(BaseModel):
    """Deployment-specific vocabulary used in prompts."""

    project_name: str = "the project"
    categories: list[str] = Field(default_factory=lambda: list(DEFAULT_CATEGORIES))


class PipelineConfig(BaseModel):
    """Full pipeline definition."""

    pipeline_id: str = "default"
    steps: list[StepConfig] = Field(default_factory=list)
    error_handling: ErrorHandlingConfig = Field(default_factory=ErrorHandlingConfig)
    domain: DomainConfig = Field(default_factory=DomainConfig)

    @model_validator(mode="after")
    def _unique_step_ids(self) -> PipelineConfig:
        seen: set[str] = set()
        for step in self.steps:
            if step.step_id in seen:
                msg = f"Duplicate step_id '{step.step_id}'"
                raise ValueError(msg)
            seen.add(step.step_id)
        return self


def default_pipeline_config(settings: "Settings | None" = None) -> PipelineConfig:
    """Build the default Filter -> Classify -> Enrich -> Generate pipeline."""
    classify: dict[str, Any] = {}
    enrich: dict[str, Any] = {"top_k": 5, "min_similarity": 0.0, "deduplicate_translations": True}
    generate: dict[str, Any] = {"max_proposals_per_conversation": 5}
    domain = DomainConfig()

    if settings is not None:
        classify["model"] = settings.classification_model
        enrich["top_k"] = settings.rag_top_k
        generate["model"] = settings.proposal_model
        domain = DomainConfig(project_name=settings.project_name)

    return PipelineConfig(
        pipeline_id="default",
        steps=[
            StepConfig(
                step_id="keyword-filter",
                step_type="filter",
                config={"include_keywords": [], "exclude_keywords": [], "case_sensitive": False},
            ),
            StepConfig(step_id="batch-classify", step_type="classify", config=classify),
            StepConfig(step_id="rag-enrich", step_type="enrich", config=enrich),
            StepConfig(step_id="proposal-generate", step_type="generate", config=generate),
        ],
        domain=domain,
    )


def load_pipeline_config(path: Path) -> PipelineConfig:
    """Load a pipeline definition from a YAML file.

    Raises:
        PipelineError: If the file is missing, unparseable or invalid.
    """
    if not path.exists():
        msg = f"Pipeline config not found: {path}"
        raise PipelineError(msg)

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        msg = f"Invalid YAML in {path}: {exc}"
        raise PipelineError(msg) from exc

    if not isinstance(raw, dict):
        msg = f"Pipeline config {path} must be a mapping"
        raise PipelineError(msg)

    try:
        return PipelineConfig.model_validate(raw)
    except PydanticValidationError as exc:
        msg = f"Invalid pipeline config {path}: {exc}"
        raise PipelineError(msg) from exc
