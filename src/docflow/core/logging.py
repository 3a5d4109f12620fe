"""Structured logging and run metrics for Docflow batches."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import IntEnum
from pathlib import Path
from typing import Any

from rich.console import Console


class Verbosity(IntEnum):
    """Verbosity levels for console output."""

    DEFAULT = 0   # Run summary only
    VERBOSE = 1   # + per-batch progress
    DEBUG = 2     # + per-step timing and LLM usage


@dataclass
class StepLog:
    """Per-step statistics for one batch."""

    name: str
    llm_calls: int = 0
    tokens_used: int = 0
    time_seconds: float = 0.0
    items_in: int = 0
    items_out: int = 0
    attempts: int = 0
    errors: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "llm_calls": self.llm_calls,
            "tokens_used": self.tokens_used,
            "time_seconds": round(self.time_seconds, 3),
            "items_in": self.items_in,
            "items_out": self.items_out,
            "attempts": self.attempts,
            "errors": self.errors,
        }


@dataclass
class RunLog:
    """Metrics for one batch run through the pipeline.

    The dict format is::

        {
            "steps": {
                "classify": {"llm_calls": 1, "tokens_used": 1200, ...},
                ...
            },
            "total_llm_calls": 3,
            "total_tokens": 3200,
            "total_time": 5.4,
        }
    """

    run_id: str = ""
    steps: dict[str, StepLog] = field(default_factory=dict)
    total_time: float = 0.0
    total_llm_calls: int = 0
    total_tokens: int = 0

    def get_or_create_step(self, name: str) -> StepLog:
        """Get existing step log or create a new one."""
        if name not in self.steps:
            self.steps[name] = StepLog(name=name)
        return self.steps[name]

    def finalize(self) -> None:
        """Compute totals from step data."""
        self.total_llm_calls = sum(s.llm_calls for s in self.steps.values())
        self.total_tokens = sum(s.tokens_used for s in self.steps.values())
        self.total_time = sum(s.time_seconds for s in self.steps.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "steps": {name: step.to_dict() for name, step in self.steps.items()},
            "total_llm_calls": self.total_llm_calls,
            "total_tokens": self.total_tokens,
            "total_time": round(self.total_time, 3),
        }


class BatchLogger:
    """Structured logger for coordinator runs.

    Writes JSONL events to ``log_dir/<run_id>.jsonl`` and optionally echoes
    progress to the console via Rich based on verbosity level.
    """

    def __init__(
        self,
        verbosity: Verbosity = Verbosity.DEFAULT,
        log_dir: Path | None = None,
        console: Console | None = None,
    ):
        self.verbosity = verbosity
        self.run_id = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        self.console = console or Console()
        self._log_file = None
        self._log_path: Path | None = None

        if log_dir is not None:
            log_dir.mkdir(parents=True, exist_ok=True)
            self._log_path = log_dir / f"{self.run_id}.jsonl"
            self._log_file = open(self._log_path, "a")

    @property
    def log_path(self) -> Path | None:
        return self._log_path

    def _write_event(self, event: dict[str, Any]) -> None:
        """Write a JSON event to the JSONL log file."""
        if self._log_file is not None:
            event["timestamp"] = datetime.now(timezone.utc).isoformat()
            self._log_file.write(json.dumps(event, default=str) + "\n")
            self._log_file.flush()

    def _console_print(self, message: str, min_verbosity: Verbosity) -> None:
        if self.verbosity >= min_verbosity:
            self.console.print(message)

    # -- Batch events --

    def batch_start(
        self,
        batch_id: str,
        stream_id: str,
        window_start: datetime,
        window_end: datetime,
        message_count: int,
    ) -> None:
        self._write_event({
            "event": "batch_start",
            "batch_id": batch_id,
            "stream_id": stream_id,
            "window_start": window_start.isoformat(),
            "window_end": window_end.isoformat(),
            "messages": message_count,
        })
        self._console_print(
            f"  [bold]Batch[/bold] {batch_id}: {message_count} messages "
            f"({window_start:%Y-%m-%d %H:%M} to {window_end:%Y-%m-%d %H:%M})",
            Verbosity.VERBOSE,
        )

    def step_finish(self, batch_id: str, step: StepLog) -> None:
        self._write_event({"event": "step_finish", "batch_id": batch_id, **step.to_dict()})
        self._console_print(
            f"    [dim]{step.name}: {step.items_in} in, {step.items_out} out, "
            f"{step.llm_calls} LLM calls, {step.tokens_used} tokens ({step.time_seconds:.1f}s)[/dim]",
            Verbosity.DEBUG,
        )

    def batch_commit(
        self,
        batch_id: str,
        messages: int,
        conversations: int,
        proposals: int,
        watermark_advanced: bool,
    ) -> None:
        self._write_event({
            "event": "batch_commit",
            "batch_id": batch_id,
            "messages": messages,
            "conversations": conversations,
            "proposals": proposals,
            "watermark_advanced": watermark_advanced,
        })
        self._console_print(
            f"    [green]committed[/green] {messages} messages, "
            f"{conversations} conversations, {proposals} proposals",
            Verbosity.VERBOSE,
        )

    def batch_failed(self, batch_id: str, error: str) -> None:
        self._write_event({"event": "batch_failed", "batch_id": batch_id, "error": error})
        self._console_print(f"    [red]failed[/red] {batch_id}: {error}", Verbosity.DEFAULT)

    def window_skipped(self, stream_id: str, window_end: datetime) -> None:
        self._write_event({
            "event": "window_skipped",
            "stream_id": stream_id,
            "window_end": window_end.isoformat(),
        })

    # -- Run lifecycle --

    def run_finish(self, completed: int, total_time: float) -> None:
        self._write_event({
            "event": "run_finish",
            "messages_completed": completed,
            "total_time": round(total_time, 3),
        })
        self._console_print(
            f"[bold]Run finished:[/bold] {completed} messages completed ({total_time:.1f}s)",
            Verbosity.VERBOSE,
        )

    def close(self) -> None:
        """Close the log file if open."""
        if self._log_file is not None:
            self._log_file.close()
            self._log_file = None
