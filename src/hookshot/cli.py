"""Command line interface for Hookshot.

Example::

    hookshot worker
    hookshot stats --watch
    hookshot enqueue '{"tenantId": 7, "integrationId": 1, "url": "https://example.com/hook"}'
    hookshot clean --all
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

import typer
from pydantic import ValidationError as PydanticValidationError
from rich.console import Console
from rich.table import Table

from hookshot.config import Settings
from hookshot.context import AppContext, app_context
from hookshot.exceptions import HookshotError
from hookshot.logging import configure_logging, get_logger
from hookshot.queue import JobSummary, QueueStats

logger = get_logger(__name__)

console = Console()

app = typer.Typer(
    name="hookshot",
    help="Reliable outbound webhook delivery.",
    no_args_is_help=True,
)

WATCH_INTERVAL_SECONDS = 2.0


def load_settings(queue: str | None = None) -> Settings:
    """Load settings from the environment, exiting with status 2 if invalid."""
    try:
        return Settings(queue_name=queue) if queue else Settings()
    except PydanticValidationError as e:
        console.print(f"[red]Invalid configuration:[/red] {e}")
        raise typer.Exit(code=2) from e


def _fail(error: HookshotError) -> typer.Exit:
    console.print(f"[red]{error.code}: {error.message}[/red]")
    return typer.Exit(code=1)


# ---------------------------------------------------------------------------
# worker
# ---------------------------------------------------------------------------


async def _run_worker(settings: Settings) -> int:
    from hookshot.api import ApiServer, create_app
    from hookshot.shutdown import ShutdownCoordinator

    context = AppContext.create(settings)
    try:
        await context.start_worker()
    except HookshotError as e:
        logger.error("Worker failed to start", error=e.message, code=e.code)
        await context.close()
        return 1

    coordinator = ShutdownCoordinator(context)
    if settings.http_enabled:
        server = ApiServer(
            create_app(context, coordinator=coordinator),
            host=settings.http_host,
            port=settings.http_port,
        )
        coordinator.server = server
        await server.start()

    coordinator.install_signal_handlers()
    logger.info(
        "Hookshot worker running",
        queue=settings.queue_name,
        concurrency=settings.worker_concurrency,
        http=settings.http_enabled,
    )
    return await coordinator.wait()


@app.command("worker")
def worker(
    queue: str | None = typer.Option(None, "--queue", "-q", help="Queue to consume"),
) -> None:
    """Run the delivery worker pool (and the HTTP surface unless disabled).

    Stops gracefully on SIGTERM or SIGINT. A second signal arms a hard exit.
    """
    settings = load_settings(queue)
    configure_logging(level=settings.log_level, format=settings.log_format, service="hookshot-worker")
    exit_code = asyncio.run(_run_worker(settings))
    raise typer.Exit(code=exit_code)


# ---------------------------------------------------------------------------
# serve
# ---------------------------------------------------------------------------


@app.command("serve")
def serve(
    host: str | None = typer.Option(None, "--host", help="Bind address"),
    port: int | None = typer.Option(None, "--port", "-p", help="Bind port"),
) -> None:
    """Run only the HTTP surface, for enqueueing without consuming."""
    import uvicorn

    settings = load_settings()
    uvicorn.run(
        "hookshot.api:create_app",
        factory=True,
        host=host or settings.http_host,
        port=port or settings.http_port,
        log_config=None,
    )


# ---------------------------------------------------------------------------
# stats
# ---------------------------------------------------------------------------


def _format_ms(value: int | None) -> str:
    return "-" if value is None else f"{value}ms"


def render_stats(
    stats: QueueStats,
    completed: list[JobSummary],
    failed: list[JobSummary],
) -> None:
    """Print counts and the most recent finished jobs."""
    counts = Table(title=f"Queue: {stats.queue}" + (" (paused)" if stats.is_paused else ""))
    counts.add_column("State", style="bold")
    counts.add_column("Jobs", justify="right")
    for label, value in (
        ("waiting", stats.waiting),
        ("active", stats.active),
        ("delayed", stats.delayed),
        ("paused", stats.paused),
        ("completed", stats.completed),
        ("failed", stats.failed),
        ("workers", stats.workers),
    ):
        counts.add_row(label, str(value))
    console.print(counts)

    if completed:
        table = Table(title="Recently completed")
        table.add_column("Job")
        table.add_column("Tenant")
        table.add_column("Duration", justify="right")
        for job in completed:
            table.add_row(job.id, str(job.tenant_id), _format_ms(job.duration_ms))
        console.print(table)

    if failed:
        table = Table(title="Recently failed")
        table.add_column("Job")
        table.add_column("Tenant")
        table.add_column("Reason", style="red")
        for job in failed:
            table.add_row(job.id, str(job.tenant_id), job.failed_reason or "-")
        console.print(table)


async def _stats(settings: Settings, *, watch: bool, as_json: bool) -> None:
    async with app_context(settings) as ctx:
        while True:
            stats = await ctx.queue.get_stats()
            if as_json:
                console.print_json(stats.model_dump_json())
            else:
                completed = await ctx.queue.get_finished("completed", 5)
                failed = await ctx.queue.get_finished("failed", 2)
                if watch:
                    console.clear()
                render_stats(stats, completed, failed)
            if not watch:
                return
            await asyncio.sleep(WATCH_INTERVAL_SECONDS)


@app.command("stats")
def stats(
    queue: str | None = typer.Option(None, "--queue", "-q", help="Queue to inspect"),
    watch: bool = typer.Option(False, "--watch", "-w", help="Refresh every 2 seconds"),
    as_json: bool = typer.Option(False, "--json", help="Print counts as JSON"),
) -> None:
    """Show job counts and the latest completed and failed jobs."""
    settings = load_settings(queue)
    try:
        asyncio.run(_stats(settings, watch=watch, as_json=as_json))
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped[/yellow]")
    except HookshotError as e:
        raise _fail(e) from e


# ---------------------------------------------------------------------------
# clean
# ---------------------------------------------------------------------------


async def _clean(settings: Settings, *, everything: bool, grace_ms: int) -> dict[str, int]:
    removed: dict[str, int] = {}
    async with app_context(settings) as ctx:
        if everything:
            removed["waiting"] = await ctx.queue.drain(include_delayed=True)
        removed["completed"] = await ctx.queue.clean("completed", grace_ms)
        removed["failed"] = await ctx.queue.clean("failed", grace_ms)
        if everything:
            removed["active"] = await ctx.queue.clean("active")
    return removed


@app.command("clean")
def clean(
    queue: str | None = typer.Option(None, "--queue", "-q", help="Queue to clean"),
    everything: bool = typer.Option(
        False, "--all", help="Also drain waiting and delayed jobs and remove active ones"
    ),
    grace_ms: int = typer.Option(0, "--grace", help="Keep finished jobs younger than this (ms)"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt"),
) -> None:
    """Remove finished jobs, or with --all every job in the queue."""
    settings = load_settings(queue)
    if everything and not yes:
        typer.confirm(f"Remove every job in queue '{settings.queue_name}'?", abort=True)
    try:
        removed = asyncio.run(_clean(settings, everything=everything, grace_ms=grace_ms))
    except HookshotError as e:
        raise _fail(e) from e
    for state, count in removed.items():
        console.print(f"  {state}: [bold]{count}[/bold] removed")
    console.print(f"[green]Cleaned {sum(removed.values())} jobs[/green]")


# ---------------------------------------------------------------------------
# enqueue
# ---------------------------------------------------------------------------


def _read_payload(payload: str | None, file: Path | None) -> dict[str, Any]:
    if file is not None:
        payload = file.read_text(encoding="utf-8")
    if not payload:
        console.print("[red]Provide a JSON payload or --file[/red]")
        raise typer.Exit(code=2)
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        console.print(f"[red]Payload is not valid JSON:[/red] {e}")
        raise typer.Exit(code=2) from e
    if not isinstance(data, dict):
        console.print("[red]Payload must be a JSON object[/red]")
        raise typer.Exit(code=2)
    return data


async def _enqueue(settings: Settings, data: dict[str, Any], job_id: str | None, delay_ms: int) -> str:
    async with app_context(settings) as ctx:
        job = await ctx.queue.enqueue_payload(data, job_id=job_id, delay_ms=delay_ms)
    return job.id


@app.command("enqueue")
def enqueue(
    payload: str | None = typer.Argument(None, help="Job payload as JSON"),
    file: Path | None = typer.Option(None, "--file", "-f", exists=True, dir_okay=False, help="Read the payload from a file"),
    queue: str | None = typer.Option(None, "--queue", "-q", help="Target queue"),
    job_id: str | None = typer.Option(None, "--id", help="Explicit job ID (idempotency key)"),
    delay_ms: int = typer.Option(0, "--delay", min=0, help="Delay before the first attempt (ms)"),
) -> None:
    """Validate a webhook payload and add it to the queue."""
    data = _read_payload(payload, file)
    settings = load_settings(queue)
    try:
        enqueued = asyncio.run(_enqueue(settings, data, job_id, delay_ms))
    except HookshotError as e:
        raise _fail(e) from e
    console.print(f"[green]Queued[/green] {enqueued}")


# ---------------------------------------------------------------------------
# pause / resume
# ---------------------------------------------------------------------------


async def _set_paused(settings: Settings, paused: bool) -> None:
    async with app_context(settings) as ctx:
        if paused:
            await ctx.queue.pause()
        else:
            await ctx.queue.resume()


@app.command("pause")
def pause(
    queue: str | None = typer.Option(None, "--queue", "-q", help="Queue to pause"),
) -> None:
    """Stop all workers from claiming new jobs. In-flight jobs finish."""
    settings = load_settings(queue)
    try:
        asyncio.run(_set_paused(settings, True))
    except HookshotError as e:
        raise _fail(e) from e
    console.print(f"[yellow]Queue '{settings.queue_name}' paused[/yellow]")


@app.command("resume")
def resume(
    queue: str | None = typer.Option(None, "--queue", "-q", help="Queue to resume"),
) -> None:
    """Let workers claim jobs again."""
    settings = load_settings(queue)
    try:
        asyncio.run(_set_paused(settings, False))
    except HookshotError as e:
        raise _fail(e) from e
    console.print(f"[green]Queue '{settings.queue_name}' resumed[/green]")


if __name__ == "__main__":
    app()
