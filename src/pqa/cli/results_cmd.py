"""CLI commands for browsing stored automation results."""

from __future__ import annotations

import json
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

results_app = typer.Typer(help="Browse results of finished automations.")
console = Console()


def _open_store():
    from pqa.store import build_checkpoint_store

    try:
        return build_checkpoint_store()
    except Exception as e:
        console.print(f"[red]Cannot open result store:[/red] {e}")
        raise typer.Exit(code=1) from None


@results_app.command("list")
def results_list(
    target: Optional[str] = typer.Option(None, "--target", "-t", help="Filter by target id."),
    limit: int = typer.Option(20, "--limit", "-n", help="Max results to return."),
    json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON."),
) -> None:
    """List finished automations, newest first."""
    store = _open_store()
    rows = store.list_final_results(target_id=target, limit=limit)

    if not rows:
        console.print("[dim]No automations found.[/dim]")
        return

    if json_output:
        console.print_json(json.dumps(rows, indent=2, default=str))
        return

    table = Table(title="Automations")
    table.add_column("Automation ID", style="cyan")
    table.add_column("Target")
    table.add_column("Status")
    table.add_column("OK", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Total", justify="right")
    table.add_column("Completed", style="dim")

    for row in rows:
        status = row.get("status", "")
        status_style = "green" if status == "complete" else "yellow"
        table.add_row(
            str(row.get("automation_id", "")),
            row.get("target_id", ""),
            f"[{status_style}]{status}[/{status_style}]",
            str(row.get("successful", 0)),
            str(row.get("failed", 0)),
            str(row.get("total", 0)),
            str(row.get("completed_at") or "")[:19],
        )

    console.print(table)


@results_app.command("show")
def results_show(
    automation_id: int = typer.Argument(..., help="Automation id to show."),
    json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON."),
) -> None:
    """Show the per-prompt results of one automation."""
    store = _open_store()
    record = store.load_final_results(automation_id)
    if record is None:
        console.print(f"[red]Automation not found:[/red] {automation_id}")
        raise typer.Exit(code=1)

    if json_output:
        console.print_json(json.dumps(record, indent=2, default=str))
        return

    summary = record.get("summary", {})
    console.print(
        f"[bold]Automation {automation_id}[/bold] on {record.get('target_id')} ({record.get('status')}): "
        f"{summary.get('successful', 0)}/{summary.get('total', 0)} succeeded, "
        f"{summary.get('total_retries', 0)} retries, {summary.get('success_rate', 0)}% success"
    )
    for result in record.get("results", []):
        mark = "[green]✓[/green]" if result.get("success") else "[red]✗[/red]"
        console.print(f"\n{mark} [bold]#{result.get('index', 0) + 1}[/bold] {result.get('prompt_text', '')}")
        if result.get("success"):
            console.print(result.get("response_text", ""), markup=False)
        else:
            console.print(f"  [red]{result.get('error', '')}[/red]")
