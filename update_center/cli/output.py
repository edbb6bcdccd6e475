"""CLI output formatters for Rich tables and JSON.

Provides human-readable Rich output (default) and machine-parseable JSON
(--json flag). All formatting goes through these functions so the CLI
commands stay clean.
"""

import dataclasses
import json
from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from update_center.services.activity_log_service import format_duration
from update_center.services.batch_orchestrator import BatchCreated
from update_center.services.progress_reconciler import ReconciliationResult

console = Console()

STATE_COLORS = {
    "draft": "white",
    "scheduled": "yellow",
    "in_progress": "blue",
    "completed": "green",
    "failed": "red",
    "partial": "yellow",
    "cancelled": "dim",
    "queued": "white",
    "installing": "blue",
    "skipped": "dim",
}

ACTIVITY_COLORS = {
    "info": "blue",
    "success": "green",
    "warning": "yellow",
    "error": "red",
    "progress": "blue",
    "start": "cyan",
    "complete": "green",
    "milestone": "magenta",
}

RISK_COLORS = {"low": "green", "medium": "yellow", "high": "red", "critical": "bold red"}


def _colored(value: str | None, colors: dict[str, str]) -> str:
    if not value:
        return "—"
    color = colors.get(value, "white")
    return f"[{color}]{value}[/{color}]"


def _render(renderable) -> str:
    with console.capture() as capture:
        console.print(renderable)
    return capture.get()


def _short_time(value: str | None) -> str:
    return value[:19] if value else "—"


def format_created(created: BatchCreated, as_json: bool = False) -> str:
    """Format the result of batch creation."""
    if as_json:
        return json.dumps(dataclasses.asdict(created), indent=2)

    lines = [
        f"[bold]Batch:[/bold]  {created.number} ({created.batch_id})",
        f"[bold]State:[/bold]  {_colored(created.state, STATE_COLORS)}",
        f"[bold]Items:[/bold]  {created.total_items}",
    ]
    for warning in created.warnings:
        lines.append(f"[yellow]Warning:[/yellow] {warning}")
    for conflict in created.conflicts:
        lines.append(f"[red]Conflict:[/red] {conflict}")
    return _render(Panel("\n".join(lines), title="Batch Created", border_style="cyan"))


def format_analysis(analysis: dict[str, Any], as_json: bool = False) -> str:
    """Format a dependency analysis."""
    if as_json:
        return json.dumps(analysis, indent=2)

    table = Table(title="Install Order", show_lines=False)
    table.add_column("#", justify="right")
    table.add_column("Package", style="cyan")
    table.add_column("Depends on")
    for index, package_id in enumerate(analysis["order"], start=1):
        dependencies = analysis["dependency_map"].get(package_id, [])
        table.add_row(str(index), package_id, ", ".join(dependencies) or "—")

    parts = [_render(table)]
    for warning in analysis["warnings"]:
        parts.append(_render(f"[yellow]Warning:[/yellow] {warning}"))
    for conflict in analysis["conflicts"]:
        parts.append(_render(f"[red]Conflict:[/red] {conflict}"))
    return "".join(parts)


def format_update_summary(summary: dict[str, Any], as_json: bool = False) -> str:
    """Format the available-update summary."""
    if as_json:
        return json.dumps(summary, indent=2)

    if not summary["total"]:
        return "No updates available."

    table = Table(title=f"Available Updates ({summary['total']})", show_lines=False)
    table.add_column("Candidate", style="cyan", no_wrap=True)
    table.add_column("Package")
    table.add_column("Version")
    table.add_column("Level")
    table.add_column("Risk")
    table.add_column("Vendor")
    for package in summary["packages"]:
        table.add_row(
            package["candidate_id"],
            package["package_name"],
            f"{package['from_version']} -> {package['to_version']}",
            package["update_level"],
            _colored(package["risk_level"], RISK_COLORS),
            package["vendor"],
        )

    levels = ", ".join(f"{k}: {v}" for k, v in summary["by_level"].items())
    risks = ", ".join(f"{k}: {v}" for k, v in summary["risk_breakdown"].items())
    return _render(table) + _render(f"[bold]Levels:[/bold] {levels}\n[bold]Risk:[/bold] {risks}")


def format_batch_status(status: dict[str, Any], as_json: bool = False) -> str:
    """Format a batch with its items and recent activity."""
    if as_json:
        return json.dumps(status, indent=2)

    batch = status["request"]
    lines = [
        f"[bold]Batch:[/bold]     {batch['number']} ({batch['id']})",
        f"[bold]State:[/bold]     {_colored(batch['state'], STATE_COLORS)}",
        f"[bold]Progress:[/bold]  {batch['overall_progress']}%",
        f"[bold]Items:[/bold]     {batch['total_items']} total, "
        f"[green]{batch['completed_items']} completed[/green], "
        f"[red]{batch['failed_items']} failed[/red], "
        f"{batch['skipped_items']} skipped",
        f"[bold]Requested:[/bold] {batch['requested_by']}",
        "",
        f"[bold]Scheduled:[/bold] {_short_time(batch['scheduled_start'])}",
        f"[bold]Started:[/bold]   {_short_time(batch['actual_start'])}",
        f"[bold]Ended:[/bold]     {_short_time(batch['actual_end'])}",
    ]
    if batch["duration_seconds"] is not None:
        lines.append(f"[bold]Duration:[/bold]  {format_duration(batch['duration_seconds'])}")
    if batch["error_summary"]:
        lines.append("")
        lines.append(
            f"[bold red]Error:[/bold red] {batch['error_code'] or ''} {batch['error_summary']}"
        )
    progress = status.get("progress")
    if progress:
        lines.append("")
        lines.append(
            f"[bold]Installer:[/bold] {progress['state']} "
            f"{progress['percent_complete']}% {progress['message']}"
        )
        if progress["error_message"]:
            lines.append(f"[red]{progress['error_message']}[/red]")

    parts = [_render(Panel("\n".join(lines), title="Batch Status", border_style="cyan"))]

    if status["items"]:
        table = Table(title="Items", show_lines=False)
        table.add_column("Order", justify="right")
        table.add_column("Package", style="cyan")
        table.add_column("Version")
        table.add_column("Level")
        table.add_column("Risk")
        table.add_column("State")
        table.add_column("%", justify="right")
        table.add_column("Message")
        for item in status["items"]:
            message = item["error_message"] or item["status_message"] or ""
            table.add_row(
                str(item["install_order"]),
                item["package_name"],
                f"{item['from_version']} -> {item['to_version']}",
                item["update_level"],
                _colored(item["risk_level"], RISK_COLORS),
                _colored(item["state"], STATE_COLORS),
                str(item["progress_percent"]),
                message[:60],
            )
        parts.append(_render(table))

    if status["recent_activity"]:
        parts.append(format_feed(status["recent_activity"], title="Recent Activity"))
    return "".join(parts)


def format_feed(
    entries: list[dict[str, Any]], as_json: bool = False, title: str = "Activity"
) -> str:
    """Format activity entries (already newest first)."""
    if as_json:
        return json.dumps(entries, indent=2)

    if not entries:
        return "No activity found."

    table = Table(title=title, show_lines=False)
    table.add_column("#", justify="right")
    table.add_column("Time")
    table.add_column("Type")
    table.add_column("Phase")
    table.add_column("Message")
    for entry in entries:
        prefix = f"{entry['package_name']}: " if entry.get("package_name") else ""
        table.add_row(
            str(entry["sequence"]),
            _short_time(entry["timestamp"]),
            _colored(entry["activity_type"], ACTIVITY_COLORS),
            entry["phase"],
            f"{prefix}{entry['message']}",
        )
    return _render(table)


def format_history(history: dict[str, Any], as_json: bool = False) -> str:
    """Format a page of installation history."""
    if as_json:
        return json.dumps(history, indent=2)

    if not history["items"]:
        return "No batches found."

    table = Table(
        title=f"Installation History ({len(history['items'])} of {history['total']})",
        show_lines=False,
    )
    table.add_column("Number", style="cyan", no_wrap=True)
    table.add_column("ID", no_wrap=True)
    table.add_column("State")
    table.add_column("Items", justify="right")
    table.add_column("OK", justify="right", style="green")
    table.add_column("Fail", justify="right", style="red")
    table.add_column("Started")
    table.add_column("Duration", justify="right")
    for batch in history["items"]:
        table.add_row(
            batch["number"],
            batch["id"][:12],
            _colored(batch["state"], STATE_COLORS),
            str(batch["total_items"]),
            str(batch["completed_items"]),
            str(batch["failed_items"]),
            _short_time(batch["actual_start"]),
            format_duration(batch["duration_seconds"])
            if batch["duration_seconds"] is not None
            else "—",
        )
    return _render(table)


def format_reconciliation(result: ReconciliationResult, as_json: bool = False) -> str:
    """Format the outcome of a finished progress monitor."""
    if as_json:
        data = dataclasses.asdict(result)
        data["final_state"] = result.final_state.value
        return json.dumps(data, indent=2)

    state = result.final_state.value
    lines = [
        f"[bold]State:[/bold]    {_colored(state, STATE_COLORS)}",
        f"[bold]Items:[/bold]    {result.total} total, "
        f"[green]{result.completed} completed[/green], "
        f"[red]{result.failed} failed[/red], {result.skipped} skipped",
    ]
    if result.duration_seconds is not None:
        lines.append(f"[bold]Duration:[/bold] {format_duration(result.duration_seconds)}")
    if result.error_code:
        lines.append(f"[bold]Error:[/bold]    {result.error_code}")
    lines.append("")
    lines.append(result.summary)
    border = "green" if state == "completed" else "yellow" if state == "partial" else "red"
    return _render(Panel("\n".join(lines), title="Batch Finished", border_style=border))
