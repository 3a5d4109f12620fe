"""Configurable step pipeline for one batch."""

from docflow.pipeline.config import (
    DomainConfig,
    ErrorHandlingConfig,
    PipelineConfig,
    StepConfig,
    default_pipeline_config,
    load_pipeline_config,
)
from docflow.pipeline.context import PipelineContext
from docflow.pipeline.orchestrator import PipelineOrchestrator, StepRegistry, default_registry

__all__ = [
    "DomainConfig",
    "ErrorHandlingConfig",
    "PipelineConfig",
    "PipelineContext",
    "PipelineOrchestrator",
    "StepConfig",
    "StepRegistry",
    "default_pipeline_config",
    "default_registry",
    "load_pipeline_config",
]
