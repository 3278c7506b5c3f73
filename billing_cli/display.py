"""Rich output formatting for the subledger CLI.

All functions write to a :class:`rich.console.Console` instance (typically
bound to *stderr*) so that machine-readable output on *stdout* is never
polluted with human-readable decoration.
"""

from __future__ import annotations

from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from billing_engine.models.outcomes import DeletionCounts, LicenseValidation, ReconciliationSummary

_ACTION_COLOURS: dict[str, str] = {
    "reported": "yellow",
    "corrected": "green",
    "skipped_stale": "dim",
    "unresolvable": "red",
}

_RUN_COLOURS: dict[str, str] = {
    "completed": "green",
    "partial": "yellow",
    "skipped_locked": "dim",
}


def _coloured(value: str, colours: dict[str, str]) -> str:
    colour = colours.get(value, "white")
    return f"[{colour}]{value}[/{colour}]"


def display_summary(console: Console, summary: ReconciliationSummary) -> None:
    """Render a reconciliation run summary."""
    lines = [
        f"Run:           {summary.run_id}",
        f"Mode:          {summary.mode.value}",
        f"Status:        {_coloured(summary.status.value, _RUN_COLOURS)}",
        f"Remote seen:   {summary.remote_seen}",
        f"In sync:       {summary.in_sync}",
        f"Discrepancies: {summary.total_discrepancies}",
        f"Corrected:     {summary.corrected}",
        f"Keys issued:   {summary.keys_issued}",
        f"Stale skips:   {summary.skipped_stale}",
        f"Unresolvable:  {summary.unresolvable}",
    ]
    if summary.orphan_scan_skipped:
        lines.append("[yellow]Orphan scan skipped: provider listing incomplete[/yellow]")
    if summary.error:
        lines.append(f"[red]Error: {summary.error}[/red]")
    console.print(Panel("\n".join(lines), title="Reconciliation"))

    if summary.discrepancies:
        table = Table(title="Discrepancies by type")
        table.add_column("Type")
        table.add_column("Count", justify="right")
        for discrepancy_type, count in sorted(summary.discrepancies.items()):
            table.add_row(discrepancy_type, str(count))
        console.print(table)


def display_discrepancies(console: Console, rows: list[dict[str, Any]]) -> None:
    if not rows:
        console.print("[green]No discrepancies.[/green]")
        return
    table = Table(title=f"Discrepancies ({len(rows)})")
    table.add_column("ID", justify="right")
    table.add_column("Subscription")
    table.add_column("Type")
    table.add_column("Action")
    table.add_column("Local")
    table.add_column("Remote")
    table.add_column("Detected")
    table.add_column("Resolved")
    for row in rows:
        table.add_row(
            str(row["id"]),
            row["external_subscription_id"],
            row["discrepancy_type"],
            _coloured(row["action"], _ACTION_COLOURS),
            row["local_status"] or "-",
            row["remote_status"] or "-",
            row["detected_at"] or "-",
            "yes" if row["resolved"] else "no",
        )
    console.print(table)


def display_deletion(console: Console, counts: DeletionCounts) -> None:
    title = "Deletion (dry run)" if counts.dry_run else "Deletion"
    table = Table(title=f"{title}: {counts.organization_id}")
    table.add_column("Table")
    table.add_column("Rows", justify="right")
    for name, count in counts.counts().items():
        table.add_row(name, str(count))
    table.add_row("[bold]total[/bold]", f"[bold]{counts.total}[/bold]")
    console.print(table)


def display_validation(console: Console, result: LicenseValidation) -> None:
    if result.valid:
        console.print(
            Panel(
                f"Tier:         {result.tier.value if result.tier else '-'}\n"
                f"Subscription: {result.subscription_id or '-'}\n"
                f"Organization: {result.organization_id or '-'}\n"
                f"Expires:      {result.expires_at.isoformat() if result.expires_at else '-'}\n"
                f"Features:     {', '.join(feature.value for feature in result.features) or '-'}",
                title="[green]License key valid[/green]",
            )
        )
    else:
        reason = result.reason.value if result.reason else "invalid"
        console.print(f"[red]License key invalid: {reason}[/red]")


def display_failed_events(console: Console, rows: list[dict[str, Any]]) -> None:
    if not rows:
        console.print("[green]No failed webhook events.[/green]")
        return
    table = Table(title=f"Failed webhook events ({len(rows)})")
    table.add_column("Event")
    table.add_column("Type")
    table.add_column("Processed")
    table.add_column("Error")
    for row in rows:
        table.add_row(row["external_event_id"], row["event_type"], row["processed_at"], row["error_message"] or "")
    console.print(table)
