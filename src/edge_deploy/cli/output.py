"""Rich rendering for deployment reports, capability reports and the audit trail."""

import json
import threading
from typing import Any, Dict, List

from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress
from rich.table import Table

from edge_deploy.orchestrator.coordinator import DeploymentReport
from edge_deploy.orchestrator.models import DeploymentContext, FinalStatus, Phase, PhaseResult, PhaseStatus
from edge_deploy.orchestrator.pipeline import PhaseListener
from edge_deploy.utils.logging import get_logger

logger = get_logger(__name__)
console = Console()

STATUS_STYLES = {
    FinalStatus.SUCCEEDED.value: "green",
    FinalStatus.PARTIAL.value: "yellow",
    FinalStatus.FAILED.value: "red",
    FinalStatus.CANCELLED.value: "magenta",
    "skipped": "dim",
}

PHASE_MARKS = {
    PhaseStatus.SUCCEEDED: "[green]✓[/green]",
    PhaseStatus.FAILED: "[red]✗[/red]",
    PhaseStatus.SKIPPED: "[dim]-[/dim]",
}


class RichPhaseListener(PhaseListener):
    """Shows one progress bar per domain pipeline."""

    def __init__(self, progress: Progress):
        self.progress = progress
        self.tasks: Dict[str, Any] = {}
        self._lock = threading.Lock()

    def phase_started(self, ctx: DeploymentContext, phase: Phase) -> None:
        self.progress.update(
            self._task(ctx),
            description=f"[cyan]{ctx.config.name}:[/cyan] {phase.value}"
        )

    def phase_finished(self, ctx: DeploymentContext, result: PhaseResult) -> None:
        self.progress.update(
            self._task(ctx),
            advance=1,
            description=f"{PHASE_MARKS[result.status]} {ctx.config.name}: {result.phase.value}"
        )

    def retry_scheduled(self, ctx, phase, error, decision) -> None:
        self.progress.update(
            self._task(ctx),
            description=f"[yellow]↻[/yellow] {ctx.config.name}: {phase.value} retry in {decision.delay_ms}ms"
        )

    def rollback_finished(self, ctx, results) -> None:
        if results:
            self.progress.update(
                self._task(ctx),
                description=f"[magenta]⟲[/magenta] {ctx.config.name}: rolled back {len(results)} action(s)"
            )

    def _task(self, ctx: DeploymentContext):
        with self._lock:
            task_id = self.tasks.get(ctx.deployment_id)
            if task_id is None:
                task_id = self.progress.add_task(f"[cyan]{ctx.config.name}", total=len(Phase))
                self.tasks[ctx.deployment_id] = task_id
            return task_id


def render_report(report: DeploymentReport) -> None:
    """Print the deployment summary panel and per-domain table."""
    status = report.final_status.value
    style = STATUS_STYLES.get(status, "white")

    lines = [
        f"[{style}]{status.upper()}[/{style}]",
        "",
        f"Deployment: {report.deployment_id}",
        f"Mode: {report.mode.value}",
    ]
    if report.failed_phase is not None:
        lines.append(f"Failed phase: {report.failed_phase.value}")
    if report.error_kind:
        lines.append(f"Error: {report.error_kind}: {report.error_message}")
    if report.rollback_performed:
        outcome = "complete" if report.rollback_succeeded else "incomplete"
        lines.append(f"Rollback: {outcome}")

    console.print(Panel.fit("\n".join(lines), title="Deployment Result", border_style=style))

    table = Table(title="Domains")
    table.add_column("Domain", style="cyan")
    table.add_column("Status")
    table.add_column("Failed phase")
    table.add_column("URL")
    table.add_column("Rollback")

    for domain, data in report.per_domain.items():
        domain_status = data.get("status", "")
        domain_style = STATUS_STYLES.get(domain_status, "white")
        rollback = ""
        if data.get("rollbackPerformed"):
            rollback = "✓" if data.get("rollbackSucceeded") else "✗"
        table.add_row(
            domain,
            f"[{domain_style}]{domain_status}[/{domain_style}]",
            data.get("failedPhase") or data.get("reason") or "",
            data.get("url") or "",
            rollback,
        )

    console.print(table)


def render_capability_report(report: Dict[str, Any]) -> None:
    table = Table(title=f"Capabilities ({report['mode']} mode)")
    table.add_column("Capability", style="cyan")
    table.add_column("Enabled")
    table.add_column("Depends on", style="dim")
    table.add_column("Description")

    for name, info in report["capabilities"].items():
        enabled = "[green]✓[/green]" if info["enabled"] else "[dim]-[/dim]"
        if info["recommended"]:
            name = f"{name} *"
        table.add_row(name, enabled, ", ".join(info["dependsOn"]), info["description"])

    console.print(table)
    console.print(
        f"[dim]{report['totalEnabled']} of {report['totalAvailable']} enabled; "
        f"* recommended for {report['mode']}[/dim]"
    )


def render_audit(records: List[Dict[str, Any]]) -> None:
    if not records:
        console.print("[dim]No audit records found[/dim]")
        return

    table = Table(title="Audit Trail")
    table.add_column("Time", style="dim")
    table.add_column("Deployment")
    table.add_column("Domain", style="cyan")
    table.add_column("Status")
    table.add_column("Duration", justify="right")
    table.add_column("Rollback")

    for record in records:
        status = record.get("finalStatus", "")
        style = STATUS_STYLES.get(status, "white")
        table.add_row(
            record.get("timestamp", "")[:19],
            record.get("deploymentId", ""),
            record.get("domain", ""),
            f"[{style}]{status}[/{style}]",
            f"{record.get('durationMs', 0) / 1000:.1f}s",
            "yes" if record.get("rollbackPerformed") else "",
        )

    console.print(table)


def print_json(data: Any) -> None:
    console.print_json(json.dumps(data, default=str))
