"""Pipeline step implementations."""

from docflow.steps.base import Step
from docflow.steps.classify import ClassifyStep
from docflow.steps.enrich import EnrichStep
from docflow.steps.filter import KeywordFilterStep
from docflow.steps.generate import GenerateStep

__all__ = [
    "ClassifyStep",
    "EnrichStep",
    "GenerateStep",
    "KeywordFilterStep",
    "Step",
]
