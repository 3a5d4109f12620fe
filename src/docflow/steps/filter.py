"""Keyword filter step."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from docflow.core.errors import PipelineError
from docflow.steps.base import Step

if TYPE_CHECKING:
    from docflow.pipeline.context import PipelineContext

logger = logging.getLogger(__name__)


@dataclass
class KeywordFilterStep(Step):
    """Keep batch messages that match the include list and none of the exclude list.

    Options:
        include_keywords: A message must contain at least one (empty: keep all).
        exclude_keywords: A message containing any of these is dropped.
        case_sensitive: Match keywords case-sensitively (default False).

    Dropped messages are still part of the batch and are marked COMPLETED
    with it; they just never reach classification.
    """

    step_type: str = field(init=False, default="filter")

    def validate_config(self) -> None:
        for key in ("include_keywords", "exclude_keywords"):
            value = self.option(key, [])
            if not isinstance(value, list) or not all(isinstance(k, str) for k in value):
                msg = f"Step '{self.step_id}': {key} must be a list of strings"
                raise PipelineError(msg)

    def _normalize(self, value: str) -> str:
        return value if self.option("case_sensitive", False) else value.lower()

    def matches(self, content: str) -> bool:
        """Whether a message body passes the filter."""
        body = self._normalize(content)
        include = [self._normalize(k) for k in self.option("include_keywords", []) if k]
        exclude = [self._normalize(k) for k in self.option("exclude_keywords", []) if k]

        if any(k in body for k in exclude):
            return False
        if include and not any(k in body for k in include):
            return False
        return True

    async def execute(self, ctx: "PipelineContext") -> None:
        log = ctx.step_log(self.step_id)
        log.items_in = len(ctx.messages)
        ctx.filtered_messages = [m for m in ctx.messages if self.matches(m.content)]
        log.items_out = len(ctx.filtered_messages)

        dropped = log.items_in - log.items_out
        if dropped:
            logger.info("Keyword filter dropped %d of %d messages", dropped, log.items_in)
