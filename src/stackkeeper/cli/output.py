"""Rich rendering of attempts, records and resource listings."""

from typing import Dict, Iterable, List, Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from stackkeeper.reconciler.reconciler import AttemptResult, ResourceHealth
from stackkeeper.resources.models import ActionPlan, ReconcileOutcome, ReconciliationRecord

console = Console()

OUTCOME_STYLES = {
    ReconcileOutcome.SUCCESS: "green",
    ReconcileOutcome.SKIPPED: "dim",
    ReconcileOutcome.FAILED: "red",
}

HEALTH_STYLES = {
    ResourceHealth.OK: "green",
    ResourceHealth.FAILING: "yellow",
    ResourceHealth.DEGRADED: "bold red",
    ResourceHealth.NEVER_RECONCILED: "dim",
}


def format_outcome(outcome: Optional[ReconcileOutcome]) -> str:
    if outcome is None:
        return "[dim]-[/dim]"
    style = OUTCOME_STYLES[outcome]
    return f"[{style}]{outcome.value}[/{style}]"


def format_health(health: ResourceHealth) -> str:
    style = HEALTH_STYLES[health]
    return f"[{style}]{health.value}[/{style}]"


def _timestamp(record: Optional[ReconciliationRecord]) -> str:
    if record is None:
        return "-"
    return record.finished_at.strftime("%Y-%m-%d %H:%M:%S")


def print_attempt(result: AttemptResult) -> None:
    """Summarize one reconciliation attempt."""
    if result.suppressed:
        console.print(Panel.fit(
            f"[yellow]⚠ {result.resource_id} is DEGRADED[/yellow]\n\n"
            f"Automatic attempts are suspended after repeated failures.\n"
            f"Run with [cyan]--force[/cyan] once the cause is fixed.",
            title="Suppressed",
            border_style="yellow"
        ))
        return

    if result.coalesced:
        console.print(f"[yellow]An attempt for {result.resource_id} is already in flight[/yellow]")
        return

    if result.cancelled:
        console.print(f"[yellow]Attempt for {result.resource_id} cancelled[/yellow]")
        return

    action = result.action.value if result.action else "-"
    lines = [
        f"Outcome: {format_outcome(result.outcome)}",
        f"Action: {action}",
    ]
    if result.reason:
        lines.append(f"Reason: {result.reason}")
    if result.revision is not None:
        lines.append(f"Revision: {result.revision}")
    if result.record is not None:
        lines.append(f"Duration: {result.record.duration:.2f}s")

    if result.outcome == ReconcileOutcome.FAILED:
        border, title = "red", f"✗ {result.resource_id}"
    elif result.outcome == ReconcileOutcome.SUCCESS:
        border, title = "green", f"✓ {result.resource_id}"
    else:
        border, title = "cyan", result.resource_id
    console.print(Panel.fit("\n".join(lines), title=title, border_style=border))

    if result.error is not None and result.outcome == ReconcileOutcome.FAILED:
        console.print(result.error.to_user_message(), markup=False)


def print_status(key: str, record: Optional[ReconciliationRecord], health: ResourceHealth) -> None:
    """Show the last record and health of a resource."""
    table = Table(show_header=False, box=None)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("Resource", key)
    table.add_row("Health", format_health(health))
    if record is None:
        table.add_row("Last attempt", "[dim]never[/dim]")
    else:
        table.add_row("Last attempt", _timestamp(record))
        table.add_row("Outcome", format_outcome(record.outcome))
        table.add_row("Action", record.action.value if record.action else "-")
        table.add_row("Forced", "yes" if record.forced else "no")
        if record.revision is not None:
            table.add_row("Revision", str(record.revision))
        if record.error_detail:
            table.add_row("Detail", record.error_detail)
    console.print(table)


def print_plan(key: str, plan: ActionPlan) -> None:
    style = "dim" if plan.is_noop() else "yellow"
    console.print(f"{key}: [{style}]{plan.action.value}[/{style}] {plan.reason}")


def records_table(key: str, records: List[ReconciliationRecord]) -> Table:
    """Build a table of reconciliation records, newest first."""
    table = Table(title=f"History of {key}", show_header=True, header_style="bold")
    table.add_column("Finished", style="cyan")
    table.add_column("Outcome")
    table.add_column("Action")
    table.add_column("Revision", justify="right")
    table.add_column("Duration", justify="right")
    table.add_column("Detail", style="dim")

    for record in reversed(records):
        table.add_row(
            _timestamp(record),
            format_outcome(record.outcome),
            record.action.value if record.action else "-",
            str(record.revision) if record.revision is not None else "-",
            f"{record.duration:.1f}s",
            (record.error_detail or "") + (" (forced)" if record.forced else ""),
        )
    return table


def resources_table(rows: Iterable[Dict]) -> Table:
    """Build the resource listing table.

    Each row carries ``key``, ``kind``, ``revision``, ``record``, ``health``
    and ``configured``.
    """
    table = Table(show_header=True, header_style="bold")
    table.add_column("Resource", style="cyan")
    table.add_column("Kind")
    table.add_column("Revision", justify="right")
    table.add_column("Last outcome")
    table.add_column("Last attempt")
    table.add_column("Health")

    for row in rows:
        record = row["record"]
        name = row["key"] if row["configured"] else f"{row['key']} [dim](not configured)[/dim]"
        table.add_row(
            name,
            row["kind"],
            str(row["revision"]),
            format_outcome(record.outcome if record else None),
            _timestamp(record),
            format_health(row["health"]),
        )
    return table


def errors_table(errors: List[Dict]) -> Table:
    """Build a table of configuration validation errors."""
    table = Table(show_header=True, header_style="bold")
    table.add_column("Location", style="cyan")
    table.add_column("Problem")
    for error in errors:
        location = " -> ".join(str(loc) for loc in error.get("loc", [])) or "(file)"
        table.add_row(location, error.get("msg", "Unknown error"))
    return table
