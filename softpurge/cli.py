#!/usr/bin/env python3
"""
Command-line interface for softpurge.

Provides inspection and maintenance tools for the purge queue, health
checks, and the static soft delete policy check.
"""

import asyncio
import logging
import sys
from typing import Any, Awaitable, Callable, Optional, Tuple, TypeVar

import click
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from . import __version__
from .config import PurgeConfig, get_config, set_config
from .health import HEALTHY, check_health
from .jobs.queue import JobQueue
from .jobs.store import SQLJobStore
from .policy import check_paths
from .purge.tasks import purge_task_id

console = Console()

T = TypeVar("T")


def setup_logging(level: str) -> None:
    """Route log records through rich."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
        force=True,
    )


def run_with_queue(action: Callable[[JobQueue], Awaitable[T]]) -> T:
    """Open the configured job store, run ``action`` on the queue, close it."""
    config = get_config()

    async def _run() -> T:
        store = SQLJobStore(config.job_store_url)
        await store.initialize()
        try:
            return await action(JobQueue(store, config.queue_name))
        finally:
            await store.close()

    return asyncio.run(_run())


@click.group(invoke_without_command=True)
@click.version_option(version=__version__)
@click.option(
    "--config",
    "config_file",
    type=click.Path(exists=True, dir_okay=False),
    help="JSON or YAML configuration file",
)
@click.option("--log-level", help="Override the configured log level")
@click.pass_context
def cli(
    ctx: click.Context, config_file: Optional[str], log_level: Optional[str]
) -> None:
    """softpurge - soft delete lifecycle and purge pipeline tools."""
    try:
        if config_file:
            set_config(PurgeConfig.from_file(config_file))
        config = get_config()
    except Exception as e:
        console.print(f"[red]Error loading configuration: {e}[/red]")
        sys.exit(1)

    setup_logging((log_level or config.log_level).upper())

    if ctx.invoked_subcommand is None:
        console.print(
            Panel.fit(
                f"[bold blue]softpurge[/bold blue] v{__version__}\n"
                "[dim]Soft delete lifecycle and purge pipeline[/dim]\n\n"
                "Use [bold]softpurge --help[/bold] to see available commands.",
                border_style="blue",
            )
        )


@cli.group()
def config() -> None:
    """Inspect configuration."""


@config.command("show")
@click.option("--format", type=click.Choice(["table", "json", "yaml"]), default="table")
def config_show(format: str) -> None:
    """Display current configuration."""
    config_dict = get_config().to_dict()

    if format == "json":
        console.print_json(data=config_dict)
    elif format == "yaml":
        console.print(
            yaml.safe_dump(config_dict, default_flow_style=False, sort_keys=False)
        )
    else:
        table = Table(title="softpurge Configuration", show_header=True)
        table.add_column("Setting", style="cyan")
        table.add_column("Value", style="green")

        categories = {
            "General": ["application_name", "environment", "log_level"],
            "Retention": ["retention_days"],
            "Scanner": [
                "scan_batch_size",
                "scan_schedule",
                "scan_batch_timeout_seconds",
            ],
            "Executor": [
                "purge_timeout_seconds",
                "purge_max_attempts",
                "purge_backoff_type",
                "purge_backoff_delay_seconds",
            ],
            "Worker": [
                "worker_concurrency",
                "worker_poll_interval_seconds",
                "worker_rate_limit_max",
                "worker_rate_limit_window_seconds",
                "task_lease_seconds",
            ],
            "Job Store": [
                "job_store_url",
                "queue_name",
                "health_check_timeout_seconds",
            ],
        }

        for category, settings in categories.items():
            table.add_row(f"[bold]{category}[/bold]", "")
            for setting in settings:
                table.add_row(f"  {setting}", str(config_dict[setting]))

        console.print(table)


@cli.group()
def jobs() -> None:
    """Inspect and manage the purge queue."""


@jobs.command("counts")
def jobs_counts() -> None:
    """Show waiting, delayed and active task counts."""
    try:
        counts = run_with_queue(lambda queue: queue.counts())
    except Exception as e:
        console.print(f"[red]Error reading job store: {e}[/red]")
        sys.exit(1)

    table = Table(title=f"Queue {get_config().queue_name}")
    table.add_column("State", style="cyan")
    table.add_column("Tasks", justify="right", style="green")
    for state, count in counts.items():
        table.add_row(state, str(count))
    console.print(table)


@jobs.command("list")
@click.option("--limit", default=50, show_default=True, help="Maximum tasks to list")
def jobs_list(limit: int) -> None:
    """List queued tasks, soonest first."""
    try:
        tasks = run_with_queue(lambda queue: queue.list_jobs(limit=limit))
    except Exception as e:
        console.print(f"[red]Error reading job store: {e}[/red]")
        sys.exit(1)

    if not tasks:
        console.print("[dim]No queued tasks[/dim]")
        return

    table = Table(title="Queued Tasks")
    table.add_column("Task ID", style="cyan")
    table.add_column("Name")
    table.add_column("State")
    table.add_column("Run At")
    table.add_column("Attempts", justify="right")
    table.add_column("Last Error", style="red")
    for task in tasks:
        table.add_row(
            task.task_id,
            task.name,
            task.state.value,
            task.run_at.isoformat(timespec="seconds"),
            f"{task.attempts_made}/{task.retry.attempts}",
            task.last_error or "",
        )
    console.print(table)


@jobs.command("cancel")
@click.argument("task_id")
def jobs_cancel(task_id: str) -> None:
    """Cancel a waiting or delayed task."""
    try:
        removed = run_with_queue(lambda queue: queue.cancel(task_id))
    except Exception as e:
        console.print(f"[red]Error cancelling task: {e}[/red]")
        sys.exit(1)

    if removed:
        console.print(f"[green]✓[/green] Cancelled {task_id}")
    else:
        console.print(f"[yellow]Task {task_id} not found or currently running[/yellow]")
        sys.exit(1)


@jobs.command("schedules")
def jobs_schedules() -> None:
    """List recurring schedulers."""
    try:
        schedulers = run_with_queue(lambda queue: queue.list_job_schedulers())
    except Exception as e:
        console.print(f"[red]Error reading job store: {e}[/red]")
        sys.exit(1)

    if not schedulers:
        console.print("[dim]No schedulers[/dim]")
        return

    table = Table(title="Job Schedulers")
    table.add_column("Scheduler", style="cyan")
    table.add_column("Rule")
    table.add_column("Task")
    table.add_column("Next Run")
    for scheduler in schedulers:
        table.add_row(
            scheduler.scheduler_id,
            scheduler.rule,
            scheduler.task_name,
            scheduler.next_run_at.isoformat(timespec="seconds"),
        )
    console.print(table)


@cli.command("task-id")
@click.argument("entity_type")
@click.argument("entity_id")
def task_id(entity_type: str, entity_id: str) -> None:
    """Print the purge task id of an entity."""
    click.echo(purge_task_id(entity_type, entity_id))


@cli.command()
def health() -> None:
    """Ping the job store."""
    config = get_config()

    async def _check() -> Any:
        timeout = config.health_check_timeout_seconds
        store = SQLJobStore(config.job_store_url, connect_timeout=timeout)
        try:
            await asyncio.wait_for(store.initialize(), timeout=timeout)
            return await check_health(job_store=store, timeout=timeout)
        finally:
            await store.close()

    try:
        report = asyncio.run(_check())
    except asyncio.TimeoutError:
        console.print(
            f"[red]✗ Job store unreachable: no answer within "
            f"{config.health_check_timeout_seconds}s[/red]"
        )
        sys.exit(1)
    except Exception as e:
        console.print(f"[red]✗ Job store unreachable: {e}[/red]")
        sys.exit(1)

    for name, service in report.services.items():
        if service.status == HEALTHY:
            console.print(f"[green]✓[/green] {name} ({service.latency_ms} ms)")
        else:
            console.print(f"[red]✗[/red] {name}: {service.error}")

    if report.status != HEALTHY:
        sys.exit(1)


@cli.command()
@click.argument("paths", nargs=-1, required=True, type=click.Path(exists=True))
def check(paths: Tuple[str, ...]) -> None:
    """Check Python sources for hard deletes and unsafe aggregations."""
    try:
        violations = check_paths(paths)
    except SyntaxError as e:
        console.print(
            f"[red]Cannot parse {e.filename}: {e.msg} (line {e.lineno})[/red]"
        )
        sys.exit(2)

    for violation in violations:
        click.echo(str(violation))

    if violations:
        console.print(f"[red]✗ {len(violations)} policy violation(s)[/red]")
        sys.exit(1)

    console.print("[green]✓[/green] No policy violations")


def main() -> None:
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
