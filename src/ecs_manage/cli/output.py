"""Rich rendering of outcomes and inventory results."""

from typing import Any, Dict, List

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ecs_manage.inventory.services import AuditResult
from ecs_manage.orchestrator.driver import OutcomeStatus, ReconciliationOutcome
from ecs_manage.state.models import ServiceState


STATUS_STYLES = {
    OutcomeStatus.SUCCESS: ("green", "✓"),
    OutcomeStatus.FAILED: ("red", "✗"),
    OutcomeStatus.ROLLED_BACK: ("yellow", "↺"),
    OutcomeStatus.ROLLBACK_FAILED: ("bold red", "‼"),
}


def render_outcomes(console: Console, outcomes: List[ReconciliationOutcome], title: str = "Reconciliation") -> None:
    """Print a table of outcomes followed by details of each failure."""
    table = Table(title=title, show_header=True, header_style="bold")
    table.add_column("Service", style="cyan")
    table.add_column("Status")
    table.add_column("Revision")
    table.add_column("Tasks", justify="right")
    table.add_column("Duration", justify="right")
    table.add_column("Reason")

    for outcome in outcomes:
        color, mark = STATUS_STYLES[outcome.status]
        running = '-' if outcome.running_count is None else str(outcome.running_count)
        desired = '-' if outcome.desired_count is None else str(outcome.desired_count)
        table.add_row(
            outcome.service_id,
            f"[{color}]{mark} {outcome.status.value}[/{color}]",
            outcome.revision or '-',
            f"{running}/{desired}",
            f"{outcome.duration:.1f}s",
            outcome.reason
        )

    console.print(table)

    for outcome in outcomes:
        if outcome.status == OutcomeStatus.SUCCESS or outcome.error is None:
            continue
        color, _ = STATUS_STYLES[outcome.status]
        title = "Rollback Failed - manual action required" if outcome.escalated else outcome.service_id
        console.print(Panel.fit(
            outcome.error.to_user_message(),
            title=title,
            border_style=color
        ))


def render_services(console: Console, cluster: str, states: List[ServiceState]) -> None:
    table = Table(title=f"Services in {cluster}", show_header=True, header_style="bold")
    table.add_column("Service", style="cyan")
    table.add_column("Task Definition")
    table.add_column("Desired", justify="right")
    table.add_column("Running", justify="right")
    table.add_column("Pending", justify="right")

    for state in states:
        table.add_row(
            str(state.service_id),
            state.active_revision or '-',
            str(state.desired_count),
            str(state.running_count),
            str(state.pending_count)
        )

    console.print(table)


def render_audit(console: Console, results: List[AuditResult]) -> None:
    """Print services with findings; sound services are omitted."""
    failing = [result for result in results if not result.ok]
    if not failing:
        console.print(f"[green]✓ All {len(results)} service(s) passed the audit[/green]")
        return

    table = Table(title="Audit findings", show_header=True, header_style="bold")
    table.add_column("Service", style="cyan")
    table.add_column("Findings", style="yellow")
    for result in failing:
        table.add_row(result.service.service_id.name, ", ".join(result.findings))

    console.print(table)


def outcomes_payload(outcomes: List[ReconciliationOutcome]) -> Dict[str, Any]:
    return {'outcomes': [outcome.to_dict() for outcome in outcomes]}
