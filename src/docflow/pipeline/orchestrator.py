"""Pipeline orchestrator and step registry."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from docflow.core.errors import PipelineError, StepError
from docflow.pipeline.config import PipelineConfig, StepConfig

if TYPE_CHECKING:
    from docflow.pipeline.context import PipelineContext
    from docflow.steps.base import Step

logger = logging.getLogger(__name__)

StepFactory = Callable[[StepConfig], "Step"]


class StepRegistry:
    """Maps step types to factories that build configured steps."""

    def __init__(self) -> None:
        self._factories: dict[str, StepFactory] = {}

    def register(self, step_type: str, factory: StepFactory) -> None:
        """Register (or replace) the factory for a step type."""
        self._factories[step_type] = factory

    @property
    def step_types(self) -> list[str]:
        return sorted(self._factories)

    def create(self, step_config: StepConfig) -> "Step":
        """Build a step from its configuration.

        Raises:
            PipelineError: If the step type is unknown.
        """
        factory = self._factories.get(step_config.step_type)
        if factory is None:
            msg = (
                f"Unknown step type '{step_config.step_type}' for step "
                f"'{step_config.step_id}'. Registered: {', '.join(self.step_types)}"
            )
            raise PipelineError(msg)
        return factory(step_config)


def default_registry() -> StepRegistry:
    """Registry with the built-in filter/classify/enrich/generate steps."""
    from docflow.steps.classify import ClassifyStep
    from docflow.steps.enrich import EnrichStep
    from docflow.steps.filter import KeywordFilterStep
    from docflow.steps.generate import GenerateStep

    registry = StepRegistry()
    registry.register("filter", lambda c: KeywordFilterStep(step_id=c.step_id, config=c.config))
    registry.register("classify", lambda c: ClassifyStep(step_id=c.step_id, config=c.config))
    registry.register("enrich", lambda c: EnrichStep(step_id=c.step_id, config=c.config))
    registry.register("generate", lambda c: GenerateStep(step_id=c.step_id, config=c.config))
    return registry


@dataclass
class PipelineOrchestrator:
    """Runs the enabled steps of a pipeline in order over a shared context.

    Usage:
        orchestrator = PipelineOrchestrator(default_pipeline_config())
        await orchestrator.execute(ctx)
    """

    config: PipelineConfig
    registry: StepRegistry = field(default_factory=default_registry)
    steps: list["Step"] = field(init=False)

    def __post_init__(self) -> None:
        self.steps = []
        for step_config in self.config.steps:
            if not step_config.enabled:
                logger.debug("Skipping disabled step %s", step_config.step_id)
                continue
            self.steps.append(self.registry.create(step_config))

    async def execute(self, ctx: "PipelineContext") -> "PipelineContext":
        """Execute all steps, collecting per-step metrics on ``ctx``.

        Raises:
            StepError: A step failed after its retries and stop_on_error is set.
        """
        policy = self.config.error_handling
        for step in self.steps:
            log = ctx.step_log(step.step_id)
            started = time.monotonic()
            try:
                await self._execute_with_retry(step, ctx)
            except Exception as e:
                log.errors += 1
                message = f"{type(e).__name__}: {e}"
                ctx.errors.append(f"{step.step_id}: {message}")
                if policy.stop_on_error:
                    raise StepError(step.step_id, message) from e
                logger.error("Step %s failed, continuing: %s", step.step_id, message)
            finally:
                log.time_seconds += time.monotonic() - started

        ctx.metrics.finalize()
        return ctx

    async def _execute_with_retry(self, step: "Step", ctx: "PipelineContext") -> None:
        policy = self.config.error_handling
        log = ctx.step_log(step.step_id)
        attempts = policy.retry_attempts + 1
        for attempt in range(attempts):
            log.attempts += 1
            try:
                await step.execute(ctx)
                return
            except Exception as e:
                if attempt + 1 >= attempts:
                    raise
                delay = policy.retry_delay_seconds * 2**attempt
                logger.warning(
                    "Step %s failed (attempt %d/%d), retrying in %.1fs: %s",
                    step.step_id,
                    attempt + 1,
                    attempts,
                    delay,
                    e,
                )
                if delay > 0:
                    await asyncio.sleep(delay)
