"""Docflow error types."""

from __future__ import annotations


class DocflowError(Exception):
    """Base exception for Docflow."""

    pass


class PipelineError(DocflowError):
    """Error in pipeline configuration or step wiring."""

    pass


class StepError(DocflowError):
    """A pipeline step failed after exhausting its retries."""

    def __init__(self, step_id: str, message: str) -> None:
        self.step_id = step_id
        super().__init__(f"Step '{step_id}' failed: {message}")


class ValidationError(DocflowError):
    """A model response did not match its declared schema."""

    pass


class TransientIOError(DocflowError):
    """Network, database or timeout failure that is safe to retry later."""

    pass


class ConcurrencyError(DocflowError):
    """A batch run is already in progress."""

    pass


class ProvenanceError(DocflowError):
    """A proposal cites messages outside its conversation."""

    def __init__(self, message: str, foreign_ids: list[int] | None = None) -> None:
        self.foreign_ids = foreign_ids or []
        super().__init__(message)


class RecordNotFoundError(DocflowError):
    """A referenced database row does not exist."""

    pass
