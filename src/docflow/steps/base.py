"""Abstract base class for pipeline steps."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from docflow.pipeline.context import PipelineContext


@dataclass
class Step(ABC):
    """Abstract base class for pipeline steps.

    A step reads the inputs it needs from the shared context and replaces
    the outputs it owns. Steps are built from configuration by the
    orchestrator's registry, so each step type validates its own options.
    """

    step_id: str
    config: dict[str, Any] = field(default_factory=dict)
    step_type: str = field(init=False)

    def __post_init__(self) -> None:
        self.validate_config()

    def validate_config(self) -> None:
        """Check step options; raise PipelineError when they are invalid."""

    def option(self, key: str, default: Any = None) -> Any:
        """Get a step option with a default."""
        value = self.config.get(key)
        return default if value is None else value

    @abstractmethod
    async def execute(self, ctx: "PipelineContext") -> None:
        """Run the step against the batch context.

        Args:
            ctx: Shared batch state; the step replaces the outputs it owns.
        """
        ...
