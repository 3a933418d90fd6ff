"""Main CLI entry point."""

import sys
from typing import Dict, Optional

import click
from pydantic import ValidationError as PydanticValidationError
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn

from edge_deploy.cli.output import (
    RichPhaseListener,
    console,
    print_json,
    render_audit,
    render_capability_report,
    render_report,
)
from edge_deploy.config.models import COMPLIANCE_LEVELS, Settings
from edge_deploy.config.parser import ConfigValidationError, load_settings
from edge_deploy.orchestrator.audit import AuditLog
from edge_deploy.orchestrator.capabilities import Capability, CapabilityOrchestrator
from edge_deploy.orchestrator.coordinator import DeploymentCoordinator
from edge_deploy.orchestrator.models import DeploymentMode, DeploymentRequest, ExecuteOptions, FinalStatus
from edge_deploy.orchestrator.services import DeploymentServices
from edge_deploy.utils.errors import DeploymentError
from edge_deploy.utils.logging import get_logger, setup_logging

logger = get_logger(__name__)

MODES = [mode.value for mode in DeploymentMode]


@click.group()
@click.option('--log-level', default='info', type=click.Choice(['debug', 'info', 'warning', 'error']))
@click.option('--config', 'config_path', default=None, help='Path to edge-deploy.yaml')
@click.pass_context
def cli(ctx, log_level, config_path):
    """Edge worker deployment orchestrator."""
    ctx.ensure_object(dict)
    ctx.obj['log_level'] = log_level
    ctx.obj['config_path'] = config_path

    setup_logging(log_level)


def load_tool_settings(config_path: Optional[str]) -> Settings:
    """Load settings or exit with a readable error."""
    try:
        return load_settings(config_path)
    except FileNotFoundError:
        console.print(f"[red]Error:[/red] Settings file not found: {config_path}")
        sys.exit(1)
    except ConfigValidationError as e:
        console.print("[red]Settings validation failed:[/red]\n")
        console.print(str(e))
        sys.exit(1)


def capability_overrides(enable, disable) -> Dict[str, bool]:
    """``--enable``/``--disable`` values as ``{capability: enabled}``."""
    overrides = {Capability.parse(name).value: True for name in enable}
    overrides.update({Capability.parse(name).value: False for name in disable})
    return overrides


@cli.command()
@click.argument('domains', nargs=-1, required=True)
@click.option('--env', 'environment', default='dev', help='Environment (dev, staging, prod)')
@click.option('--mode', type=click.Choice(MODES), help='Deployment mode (chosen from the domains when omitted)')
@click.option('--enable', multiple=True, help='Enable a capability (unified mode)')
@click.option('--disable', multiple=True, help='Disable a capability and its dependents (unified mode)')
@click.option('--compliance', multiple=True, type=click.Choice(COMPLIANCE_LEVELS), help='Compliance framework to check')
@click.option('--dry-run', is_flag=True, help='Validate and build without creating resources')
@click.option('--fail-fast', is_flag=True, help='Stop starting new domains after the first failure')
@click.option('--continue-on-error', is_flag=True, help='Continue past failures in non-critical phases')
@click.option('--skip-validation', is_flag=True, help='Skip the validate phase')
@click.option('--no-rollback', is_flag=True, help='Leave side effects in place on failure')
@click.option('--timeout', type=float, help='Overall timeout in seconds')
@click.option('--config-path', help='Path to wrangler.toml')
@click.option('--credentials-ref', help='Prefix of the variables holding API token and account id')
@click.option('--json-output', is_flag=True, help='Output the report as JSON')
@click.pass_context
def deploy(ctx, domains, environment, mode, enable, disable, compliance, dry_run, fail_fast,
           continue_on_error, skip_validation, no_rollback, timeout, config_path, credentials_ref, json_output):
    """Deploy one or more domains."""
    settings = load_tool_settings(ctx.obj.get('config_path'))

    try:
        request = DeploymentRequest(
            domains=list(domains),
            environment=environment,
            credentials_ref=credentials_ref,
            mode=DeploymentMode(mode) if mode else None,
            capability_overrides=capability_overrides(enable, disable),
            compliance_levels=list(compliance),
            config_path=config_path,
            dry_run=dry_run,
            fail_fast=fail_fast,
        )
        options = ExecuteOptions(
            continue_on_error=continue_on_error,
            skip_validation=skip_validation,
            timeout_seconds=timeout,
            rollback_on_failure=not no_rollback,
        )

        progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            console=console,
            disable=json_output,
        )
        services = DeploymentServices.from_settings(settings, listeners=[RichPhaseListener(progress)])
        coordinator = DeploymentCoordinator(settings, services)

        with progress:
            report = coordinator.deploy(request, options)

    except PydanticValidationError as e:
        console.print("[red]Invalid deployment request:[/red]")
        for error in e.errors():
            location = " -> ".join(str(loc) for loc in error["loc"])
            console.print(f"  - {location}: {error['msg']}")
        sys.exit(1)
    except DeploymentError as e:
        console.print(f"[red]Deployment error:[/red] {e.to_user_message()}")
        sys.exit(1)
    except Exception as e:
        logger.exception("Unexpected error during deployment")
        console.print(f"[red]Unexpected error:[/red] {e}")
        sys.exit(1)

    if json_output:
        print_json(report.to_dict())
    else:
        console.print()
        render_report(report)

    if report.final_status in (FinalStatus.FAILED, FinalStatus.CANCELLED):
        sys.exit(1)


@cli.command()
@click.option('--mode', type=click.Choice(MODES), default=DeploymentMode.UNIFIED.value, help='Mode whose recommendations apply')
@click.option('--enable', multiple=True, help='Enable a capability')
@click.option('--disable', multiple=True, help='Disable a capability')
@click.option('--json-output', is_flag=True, help='Output in JSON format')
@click.pass_context
def capabilities(ctx, mode, enable, disable, json_output):
    """Show capabilities and which are enabled for a mode."""
    settings = load_tool_settings(ctx.obj.get('config_path'))

    try:
        orchestrator = CapabilityOrchestrator(DeploymentServices.from_settings(settings), DeploymentMode(mode))
        orchestrator.apply_overrides(capability_overrides(enable, disable))
    except DeploymentError as e:
        console.print(f"[red]Capability error:[/red] {e.to_user_message()}")
        sys.exit(1)

    report = orchestrator.get_capability_report()
    if json_output:
        print_json(report)
    else:
        render_capability_report(report)


@cli.command()
@click.option('--limit', default=20, type=click.IntRange(min=0), help='Number of records to show')
@click.option('--domain', help='Only show records for this domain')
@click.option('--json-output', is_flag=True, help='Output in JSON format')
@click.pass_context
def audit(ctx, limit, domain, json_output):
    """Show the deployment audit trail."""
    settings = load_tool_settings(ctx.obj.get('config_path'))
    records = AuditLog(settings.audit.path).read()
    if domain:
        records = [record for record in records if record.get("domain") == domain]
    records = records[-limit:] if limit else []

    if json_output:
        print_json(records)
    else:
        render_audit(records)


if __name__ == '__main__':
    cli()
