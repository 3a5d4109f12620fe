"""Docflow command-line interface."""

import asyncio
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from docflow.core.logging import Verbosity
from docflow.core.models import to_naive_utc

# Load .env file before importing config
load_dotenv()


def setup_logging(verbose: bool) -> None:
    """Configure logging based on verbosity."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 string or epoch milliseconds into naive UTC."""
    if isinstance(value, bool):
        msg = f"Invalid timestamp: {value!r}"
        raise ValueError(msg)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc).replace(tzinfo=None)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        return to_naive_utc(datetime.fromisoformat(text))
    msg = f"Invalid timestamp: {value!r}"
    raise ValueError(msg)


def _verbosity(ctx: click.Context) -> Verbosity:
    return Verbosity.DEBUG if ctx.obj.get("verbose") else Verbosity.VERBOSE


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """Docflow - turn chat conversations into documentation proposals."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    setup_logging(verbose)


@cli.command()
def init() -> None:
    """Create the database and documentation index."""
    from docflow.config import get_settings
    from docflow.db.engine import init_database, reset_engine

    console = Console()
    settings = get_settings()

    async def _init() -> None:
        try:
            await init_database(settings)
        finally:
            await reset_engine()

    asyncio.run(_init())
    console.print(f"[green]Initialized database:[/] {settings.db_path}")


@cli.command()
@click.argument("messages_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--stream", "-s", "stream_id", required=True, help="Stream id to ingest into")
@click.option("--connector", default="jsonl", help="Connector type recorded on the stream")
def ingest(messages_file: str, stream_id: str, connector: str) -> None:
    """Load messages from a JSONL file as PENDING.

    Each line is an object with ``id``, ``timestamp`` (ISO-8601 or epoch
    milliseconds), ``author`` and ``content``, plus optional ``channel`` and
    ``metadata``. Messages already ingested are skipped.

    Example:
        docflow ingest export.jsonl --stream discord-help
    """
    from docflow.config import get_settings
    from docflow.db.engine import get_session, init_database, reset_engine
    from docflow.services.messages import create_message
    from docflow.services.streams import get_stream, register_stream

    console = Console()
    settings = get_settings()
    path = Path(messages_file)

    records: list[dict[str, Any]] = []
    for line_no, line in enumerate(path.read_text(encoding="utf-8").splitlines(), 1):
        if not line.strip():
            continue
        try:
            raw = json.loads(line)
            records.append({
                "message_id": str(raw["id"]),
                "timestamp": parse_timestamp(raw["timestamp"]),
                "author": str(raw["author"]),
                "content": str(raw["content"]),
                "channel": raw.get("channel"),
                "metadata": raw.get("metadata") or {},
            })
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise click.ClickException(f"{path}:{line_no}: invalid message: {e}") from e

    async def _ingest() -> tuple[int, int]:
        created = skipped = 0
        try:
            await init_database(settings)
            async with get_session(settings) as session:
                if await get_stream(session, stream_id) is None:
                    await register_stream(session, stream_id, connector, {"source": str(path)})
                for record in records:
                    _, was_created = await create_message(session, stream_id=stream_id, **record)
                    if was_created:
                        created += 1
                    else:
                        skipped += 1
        finally:
            await reset_engine()
        return created, skipped

    created, skipped = asyncio.run(_ingest())
    console.print(f"[green]Ingested {created} messages[/] into {stream_id}")
    if skipped:
        console.print(f"  [dim]{skipped} already present[/]")


@cli.command("index-docs")
@click.argument("docs_dir", type=click.Path(exists=True, file_okay=False))
def index_docs(docs_dir: str) -> None:
    """Index Markdown documentation for retrieval.

    Example:
        docflow index-docs ./website
    """
    from docflow.config import get_settings
    from docflow.db.engine import get_session, init_database, reset_engine
    from docflow.services.documents import index_directory

    console = Console()
    settings = get_settings()

    async def _index() -> int:
        try:
            await init_database(settings)
            async with get_session(settings) as session:
                return await index_directory(session, Path(docs_dir))
        finally:
            await reset_engine()

    count = asyncio.run(_index())
    console.print(f"[green]Indexed {count} pages[/] from {docs_dir}")


@cli.command()
@click.option("--stream", "-s", "stream_id", help="Process only this stream")
@click.pass_context
def run(ctx: click.Context, stream_id: str | None) -> None:
    """Process pending messages once.

    Example:
        docflow run
        docflow run --stream pipeline-test
    """
    from docflow.config import get_settings
    from docflow.core.errors import DocflowError

    console = Console()
    settings = get_settings()

    try:
        completed, outcomes = asyncio.run(
            _run_coordinator(settings, stream_id, console, _verbosity(ctx), max_runs=1)
        )
    except (DocflowError, ValueError) as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(1)

    failed = [o for o in outcomes if not o.succeeded]
    console.print(f"\n[bold]Messages completed:[/] {completed}")
    console.print(f"  Batches: {len(outcomes)} ({len(failed)} failed)")
    console.print(f"  Proposals: {sum(o.proposals for o in outcomes)}")
    if failed:
        sys.exit(1)


@cli.command()
@click.option("--stream", "-s", "stream_id", help="Process only this stream")
@click.option("--interval", "-i", default=300.0, show_default=True, help="Seconds between runs")
@click.option("--max-runs", type=int, default=0, help="Stop after this many runs (0: forever)")
@click.pass_context
def watch(ctx: click.Context, stream_id: str | None, interval: float, max_runs: int) -> None:
    """Process pending messages on a fixed interval."""
    from docflow.config import get_settings
    from docflow.core.errors import DocflowError

    console = Console()
    settings = get_settings()
    console.print(f"[bold]Watching[/] every {interval:.0f}s (Ctrl+C to stop)")

    try:
        completed, _ = asyncio.run(
            _run_coordinator(
                settings, stream_id, console, _verbosity(ctx), max_runs=max_runs, interval=interval
            )
        )
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped[/]")
        return
    except (DocflowError, ValueError) as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(1)
    console.print(f"[bold]Messages completed:[/] {completed}")


async def _run_coordinator(
    settings: Any,
    stream_id: str | None,
    console: Console,
    verbosity: Verbosity,
    *,
    max_runs: int,
    interval: float = 0.0,
) -> tuple[int, list[Any]]:
    """Run the coordinator ``max_runs`` times (0: until interrupted)."""
    from docflow.coordinator import build_coordinator
    from docflow.core.logging import BatchLogger
    from docflow.db.engine import init_database, reset_engine

    batch_logger = BatchLogger(verbosity, settings.log_dir, console)
    total = 0
    outcomes: list[Any] = []
    try:
        await init_database(settings)
        coordinator = build_coordinator(settings, batch_logger=batch_logger)
        runs_done = 0
        while True:
            total += await coordinator.run(stream_id)
            outcomes.extend(coordinator.last_outcomes)
            runs_done += 1
            if max_runs and runs_done >= max_runs:
                break
            await asyncio.sleep(interval)
    finally:
        batch_logger.close()
        await reset_engine()
    return total, outcomes


@cli.command()
def status() -> None:
    """Show watermarks and pending message counts per stream."""
    from docflow.config import get_settings
    from docflow.db.engine import get_session, init_database, reset_engine
    from docflow.services.messages import count_by_status
    from docflow.services.watermarks import list_watermarks

    console = Console()
    settings = get_settings()

    if not settings.db_path.exists():
        console.print("[yellow]No database found. Run 'docflow init' first.[/]")
        return

    async def _status() -> tuple[dict[str, dict[str, int]], dict[str, Any]]:
        try:
            await init_database(settings)
            async with get_session(settings) as session:
                counts = await count_by_status(session)
                marks = {w.stream_id: w for w in await list_watermarks(session)}
        finally:
            await reset_engine()
        return counts, marks

    counts, marks = asyncio.run(_status())
    if not counts and not marks:
        console.print("[yellow]No messages found.[/]")
        return

    table = Table(title="Streams")
    table.add_column("Stream", style="cyan")
    table.add_column("Pending")
    table.add_column("Completed")
    table.add_column("Watermark")
    table.add_column("Last batch")

    for stream_id in sorted(set(counts) | set(marks)):
        stream_counts = counts.get(stream_id, {})
        mark = marks.get(stream_id)
        table.add_row(
            stream_id,
            str(stream_counts.get("PENDING", 0)),
            str(stream_counts.get("COMPLETED", 0)),
            str(mark.watermark_time)[:19] if mark else "-",
            str(mark.last_batch_at)[:19] if mark and mark.last_batch_at else "-",
        )

    console.print(table)


@cli.command()
@click.option("--stream", "-s", "stream_id", help="Filter by stream")
@click.option("--limit", "-n", default=20, help="Max batches")
def batches(stream_id: str | None, limit: int) -> None:
    """List recent batch runs."""
    from docflow.config import get_settings
    from docflow.db.engine import get_session, init_database, reset_engine
    from docflow.services.runs import get_batch_runs

    console = Console()
    settings = get_settings()

    if not settings.db_path.exists():
        console.print("[yellow]No batches found.[/]")
        return

    async def _batches() -> list[Any]:
        try:
            await init_database(settings)
            async with get_session(settings) as session:
                return await get_batch_runs(session, stream_id=stream_id, limit=limit)
        finally:
            await reset_engine()

    batch_runs = asyncio.run(_batches())
    if not batch_runs:
        console.print("[yellow]No batches found.[/]")
        return

    table = Table(title="Recent Batches")
    table.add_column("Batch", style="cyan")
    table.add_column("Status")
    table.add_column("Window")
    table.add_column("Messages")
    table.add_column("Conversations")
    table.add_column("Proposals")
    table.add_column("Error", style="dim")

    for batch_run in batch_runs:
        status_style = {"committed": "green", "failed": "red"}.get(batch_run.status, "yellow")
        table.add_row(
            batch_run.batch_id,
            f"[{status_style}]{batch_run.status}[/]",
            f"{batch_run.window_start:%Y-%m-%d %H:%M} - {batch_run.window_end:%H:%M}",
            f"{batch_run.messages_completed}/{batch_run.message_count}",
            str(batch_run.conversation_count),
            str(batch_run.proposal_count),
            (batch_run.error_message or "")[:60],
        )

    console.print(table)


@cli.command()
@click.option(
    "--status",
    "review_status",
    type=click.Choice(["pending", "approved", "rejected"]),
    default="pending",
    show_default=True,
    help="Review status to list",
)
@click.option("--batch", "batch_id", help="Filter by batch id")
@click.option("--limit", "-n", default=20, help="Max proposals")
def proposals(review_status: str, batch_id: str | None, limit: int) -> None:
    """List documentation proposals."""
    from docflow.config import get_settings
    from docflow.db.engine import get_session, init_database, reset_engine
    from docflow.services.proposals import list_proposals

    console = Console()
    settings = get_settings()

    if not settings.db_path.exists():
        console.print("[yellow]No proposals found.[/]")
        return

    async def _proposals() -> list[Any]:
        try:
            await init_database(settings)
            async with get_session(settings) as session:
                return await list_proposals(
                    session, review_status=review_status, batch_id=batch_id, limit=limit
                )
        finally:
            await reset_engine()

    rows = asyncio.run(_proposals())
    if not rows:
        console.print(f"[yellow]No {review_status} proposals.[/]")
        return

    table = Table(title=f"Proposals ({review_status})")
    table.add_column("ID", style="dim")
    table.add_column("Type", style="green")
    table.add_column("Page", style="cyan")
    table.add_column("Section")
    table.add_column("Sources")
    table.add_column("Reasoning")

    for proposal in rows:
        table.add_row(
            proposal.id[:8] + "...",
            proposal.update_type,
            proposal.page,
            proposal.section or "-",
            ", ".join(str(i) for i in proposal.source_messages),
            proposal.reasoning[:80],
        )

    console.print(table)


if __name__ == "__main__":
    cli()
