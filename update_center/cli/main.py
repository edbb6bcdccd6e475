"""Update Center CLI.

Batch installation of package updates from the command line.

Usage:
    update-center summary                   List packages with available updates
    update-center analyze ID...             Show install order and warnings
    update-center create ID...              Create a batch request
    update-center execute BATCH_ID          Submit a batch and monitor it to the end
    update-center status BATCH_ID           Show a batch with its items
    update-center feed BATCH_ID             Show the activity feed
    update-center history                   List past installations
"""

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Optional

import pydantic
import typer
from rich.console import Console

from update_center import __version__
from update_center.cli.factory import open_database, open_orchestrator
from update_center.cli.output import (
    format_analysis,
    format_batch_status,
    format_created,
    format_feed,
    format_history,
    format_reconciliation,
    format_update_summary,
)
from update_center.config import UpdateCenterConfig, configure_logging, load_config
from update_center.errors import DomainError, error_payload, format_error
from update_center.services.batch_orchestrator import BatchOptions

_log = logging.getLogger(__name__)

app = typer.Typer(
    name="update-center",
    help="Batch installation of package updates with progress tracking",
    no_args_is_help=True,
)
config_app = typer.Typer(help="Configuration management")
app.add_typer(config_app, name="config")

console = Console()

# --- Global state ---
_config_path: str | None = None


@app.callback()
def main(
    config: Optional[str] = typer.Option(
        None, "--config", help="Path to update_center.yaml config file"
    ),
):
    """Update Center CLI."""
    global _config_path
    _config_path = config


def _load() -> UpdateCenterConfig:
    """Load configuration and set up logging, exiting on bad config."""
    try:
        cfg = load_config(config_path=_config_path)
    except FileNotFoundError as e:
        console.print(f"[red]Config file not found:[/red] {e}")
        raise typer.Exit(1)
    except (pydantic.ValidationError, ValueError) as e:
        console.print(f"[red]Config validation failed:[/red] {e}")
        raise typer.Exit(1)
    configure_logging(cfg.logging)
    return cfg


def _emit(output: str, as_json: bool) -> None:
    """Print formatter output; JSON is printed unwrapped and unstyled."""
    if as_json:
        console.print_json(output)
    else:
        console.print(output, markup=False, highlight=False)


def _run(coro_fn: Callable[[], Awaitable[Any]], json_output: bool = False) -> Any:
    """Run a command coroutine, reporting domain errors and exiting non-zero."""
    try:
        return asyncio.run(coro_fn())
    except DomainError as e:
        if json_output:
            console.print_json(json.dumps({"error": error_payload(e)}))
        else:
            console.print(f"[red]Error:[/red] {format_error(e)}")
        raise typer.Exit(1)


# --- Version ---


@app.command()
def version():
    """Show Update Center version."""
    console.print(f"[bold]Update Center[/bold] v{__version__}")


# --- Config commands ---


def _mask(secret: str) -> str:
    return "***" if secret else "(not set)"


@config_app.command("show")
def config_show():
    """Display resolved configuration (secrets masked)."""
    cfg = _load()

    console.print("[bold]Database:[/bold]")
    console.print(f"  url: {cfg.database.url or '(platform default)'}")

    console.print("\n[bold]Installer:[/bold]")
    console.print(f"  base_url: {cfg.installer.base_url or '(not set)'}")
    console.print(f"  username: {cfg.installer.username or '(not set)'}")
    console.print(f"  password: {_mask(cfg.installer.password)}")

    console.print("\n[bold]Inventory:[/bold]")
    console.print(f"  base_url: {cfg.inventory.base_url or '(installer base_url)'}")
    console.print(f"  password: {_mask(cfg.inventory.password)}")

    console.print("\n[bold]Reconciler:[/bold]")
    console.print(f"  max_runtime_seconds: {cfg.reconciler.max_runtime_seconds}")
    console.print(f"  running_interval_seconds: {cfg.reconciler.running_interval_seconds}")
    console.print(f"  handle_max_attempts: {cfg.reconciler.handle_max_attempts}")


@config_app.command("validate")
def config_validate():
    """Validate the config file without touching the database."""
    _load()
    console.print("[green]Config is valid.[/green]")


# --- Database ---


@app.command("init-db")
def init_db():
    """Create the state database tables."""
    cfg = _load()
    open_database(cfg)
    console.print("[green]Database initialized.[/green]")


# --- Pre-flight ---


@app.command()
def summary(
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """List installed packages with available updates, by level and risk."""
    cfg = _load()

    async def _cmd():
        async with open_orchestrator(cfg) as orchestrator:
            result = await asyncio.to_thread(orchestrator.get_update_summary)
            _emit(format_update_summary(result, as_json=json_output), json_output)

    _run(_cmd, json_output)


@app.command()
def analyze(
    candidate_ids: list[str] = typer.Argument(help="Install candidate IDs"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Show install order, missing-dependency warnings, and cycles."""
    cfg = _load()

    async def _cmd():
        async with open_orchestrator(cfg) as orchestrator:
            result = await asyncio.to_thread(orchestrator.analyze_dependencies, candidate_ids)
            _emit(format_analysis(result, as_json=json_output), json_output)

    _run(_cmd, json_output)


# --- Batch lifecycle ---


@app.command()
def create(
    candidate_ids: list[str] = typer.Argument(help="Install candidate IDs"),
    schedule: Optional[str] = typer.Option(
        None, "--schedule", help="ISO8601 start time (creates a scheduled batch)"
    ),
    notes: Optional[str] = typer.Option(None, "--notes", help="Install notes"),
    requested_by: Optional[str] = typer.Option(
        None, "--requested-by", help="Requesting user"
    ),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Create a batch request from install candidates."""
    cfg = _load()
    options = BatchOptions(scheduled_start=schedule, notes=notes, requested_by=requested_by)

    async def _cmd():
        async with open_orchestrator(cfg) as orchestrator:
            created = await asyncio.to_thread(
                orchestrator.create_batch, candidate_ids, options
            )
            _emit(format_created(created, as_json=json_output), json_output)

    _run(_cmd, json_output)


@app.command()
def execute(
    batch_id: str = typer.Argument(help="Batch ID to execute"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Submit a batch to the installer and monitor it until it finishes."""
    cfg = _load()

    async def _cmd():
        async with open_orchestrator(cfg) as orchestrator:
            handle = await orchestrator.execute_batch_install(batch_id)
            if not json_output:
                console.print(f"[green]Submitted.[/green] Progress handle: {handle}")
                console.print("Monitoring progress (Ctrl+C to detach)...")
            result = await orchestrator.reconciler.wait(batch_id)
            if result is not None:
                _emit(format_reconciliation(result, as_json=json_output), json_output)

    _run(_cmd, json_output)


@app.command()
def cancel(
    batch_id: str = typer.Argument(help="Batch ID to cancel"),
    cancelled_by: Optional[str] = typer.Option(None, "--by", help="Cancelling user"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Cancel an in-progress batch."""
    cfg = _load()

    async def _cmd():
        async with open_orchestrator(cfg, need_endpoints=False) as orchestrator:
            ack = orchestrator.cancel_batch_install(batch_id, cancelled_by=cancelled_by)
            if json_output:
                console.print_json(json.dumps(ack))
            else:
                console.print(
                    f"[yellow]Batch {ack['number']} cancelled.[/yellow] "
                    f"{ack['skipped_items']} item(s) skipped."
                )

    _run(_cmd, json_output)


@app.command("run-scheduled")
def run_scheduled(
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Start every scheduled batch that is due and monitor them to the end."""
    cfg = _load()

    async def _cmd():
        async with open_orchestrator(cfg) as orchestrator:
            started = await orchestrator.run_scheduled_batches()
            if not json_output:
                console.print(f"Started {len(started)} scheduled batch(es).")
            results = []
            for batch_id in started:
                result = await orchestrator.reconciler.wait(batch_id)
                if result is not None:
                    results.append(result)
            await orchestrator.reconciler.wait_all()
            if json_output:
                console.print_json(
                    json.dumps(
                        [json.loads(format_reconciliation(r, as_json=True)) for r in results]
                    )
                )
            else:
                for result in results:
                    console.print(format_reconciliation(result))

    _run(_cmd, json_output)


# --- Read commands ---


@app.command()
def status(
    batch_id: str = typer.Argument(help="Batch ID"),
    activity: int = typer.Option(10, "--activity", help="Recent activity entries to show"),
    live: bool = typer.Option(False, "--live", help="Also read live installer progress"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Show a batch with its items and recent activity."""
    cfg = _load()

    async def _cmd():
        async with open_orchestrator(cfg, need_endpoints=live) as orchestrator:
            if live:
                result = await orchestrator.get_live_batch_status(
                    batch_id, activity_limit=activity
                )
            else:
                result = orchestrator.get_batch_status(batch_id, activity_limit=activity)
            _emit(format_batch_status(result, as_json=json_output), json_output)

    _run(_cmd, json_output)


@app.command()
def feed(
    batch_id: str = typer.Argument(help="Batch ID"),
    since: Optional[str] = typer.Option(None, "--since", help="Only entries after this ISO time"),
    activity_type: Optional[str] = typer.Option(
        None, "--type", "-t", help="Filter by activity type"
    ),
    limit: int = typer.Option(50, "--limit", "-n", help="Maximum entries"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Show a batch's activity feed, newest first."""
    cfg = _load()

    async def _cmd():
        async with open_orchestrator(cfg, need_endpoints=False) as orchestrator:
            entries = orchestrator.get_activity_feed(
                batch_id, since=since, limit=limit, activity_type=activity_type
            )
            _emit(format_feed(entries, as_json=json_output), json_output)

    _run(_cmd, json_output)


@app.command()
def history(
    state: Optional[str] = typer.Option(None, "--state", "-s", help="Filter by state"),
    limit: int = typer.Option(20, "--limit", "-n", help="Page size"),
    offset: int = typer.Option(0, "--offset", help="Page offset"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """List installation history, newest first."""
    cfg = _load()

    async def _cmd():
        async with open_orchestrator(cfg, need_endpoints=False) as orchestrator:
            page = orchestrator.list_history(state=state, limit=limit, offset=offset)
            _emit(format_history(page, as_json=json_output), json_output)

    _run(_cmd, json_output)


@app.command()
def export(
    batch_id: str = typer.Argument(help="Batch ID"),
    output: Optional[str] = typer.Option(None, "--output", "-o", help="Write to file"),
):
    """Export a batch's full activity log as plain text."""
    cfg = _load()

    async def _cmd():
        async with open_orchestrator(cfg, need_endpoints=False) as orchestrator:
            text = orchestrator.export_activity(batch_id)
        if output:
            with open(output, "w") as f:
                f.write(text + "\n")
            console.print(f"[green]Exported to {output}[/green]")
        else:
            console.print(text, markup=False, highlight=False)

    _run(_cmd)


if __name__ == "__main__":
    app()
