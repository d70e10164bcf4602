"""Main CLI entry point."""

import json
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import click
from botocore.exceptions import BotoCoreError, ClientError
from rich.console import Console
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table

from taskset_deploy.client.aws import AWSResourceClient
from taskset_deploy.config.parser import Config, ConfigValidationError
from taskset_deploy.orchestrator.models import (
    CONFLICT_EXIT_CODE,
    EXIT_CODES,
    UNCANCELLABLE_STATES,
    DeploymentState,
    DeploymentStatus,
    StateTransition,
)
from taskset_deploy.orchestrator.orchestrator import DeploymentOrchestrator
from taskset_deploy.state.store import DeploymentStore
from taskset_deploy.utils.aws_client import AWSClientManager, AssumeRoleConfig
from taskset_deploy.utils.errors import (
    ConfigurationError,
    ConflictError,
    DeploymentError,
    DeploymentNotFoundError,
    ErrorContext,
    error_handler,
)
from taskset_deploy.utils.logging import get_logger, setup_logging

console = Console()
logger = get_logger(__name__)

STATE_STYLES = {
    DeploymentState.SUCCEEDED: "green",
    DeploymentState.ROLLED_BACK: "yellow",
    DeploymentState.FAILED: "red",
    DeploymentState.ROLLING_BACK: "yellow",
}


@click.group()
@click.option('--profile', help='AWS profile to use')
@click.option('--region', help='AWS region (defaults to the project region)')
@click.option('--role-arn', help='IAM role to assume for all AWS calls')
@click.option('--state-dir', default='.taskset', show_default=True, help='Directory for deployment records and logs')
@click.option('--log-level', default='info', type=click.Choice(['debug', 'info', 'warning', 'error']))
@click.pass_context
def cli(ctx, profile, region, role_arn, state_dir, log_level):
    """Blue/green deployments for ECS services using TaskSets."""
    ctx.ensure_object(dict)
    ctx.obj['profile'] = profile
    ctx.obj['region'] = region
    ctx.obj['role_arn'] = role_arn
    ctx.obj['state_dir'] = state_dir
    ctx.obj['log_level'] = log_level

    setup_logging(log_level, log_dir=str(Path(state_dir) / "logs"))


def load_config(config_path: str = "taskset.yaml") -> Config:
    """Load and validate configuration file."""
    try:
        config = Config(config_path)
        config.load()
        return config
    except FileNotFoundError:
        console.print(f"[red]Error:[/red] Configuration file not found: {config_path}")
        sys.exit(1)
    except ConfigValidationError as e:
        console.print("[red]Configuration validation failed:[/red]\n")
        console.print(str(e))
        sys.exit(1)


def create_orchestrator(
    config: Config,
    store: DeploymentStore,
    profile: Optional[str] = None,
    region: Optional[str] = None,
    role_arn: Optional[str] = None
) -> DeploymentOrchestrator:
    """Create deployment orchestrator with all dependencies.

    Raises:
        ConfigurationError: If no usable AWS credentials are available
    """
    assume_role = AssumeRoleConfig(role_arn=role_arn) if role_arn else None
    client_manager = AWSClientManager(
        profile=profile,
        region=region or config.project.region,
        assume_role_config=assume_role,
    )
    try:
        client_manager.validate_credentials()
    except (BotoCoreError, ClientError) as e:
        raise error_handler.translate(
            e, ConfigurationError, "AWS credential check failed",
            ErrorContext(operation='validate_credentials')
        ) from e

    return DeploymentOrchestrator.from_config(config, AWSResourceClient(client_manager), store=store)


def _format_weights(weights) -> str:
    if not weights:
        return "-"
    return f"{weights[0]} old / {weights[1]} new"


def _state_text(state: DeploymentState) -> str:
    style = STATE_STYLES.get(state, "cyan")
    return f"[{style}]{state.value}[/{style}]"


def print_transition(status: DeploymentStatus, transition: StateTransition) -> None:
    """Progress line for each state change of a running deployment."""
    line = f"  {_state_text(transition.to_state)}  weights: {_format_weights(status.weights)}"
    if transition.cause:
        line += f"  [dim]{transition.cause}[/dim]"
    console.print(line)


def print_status(status: DeploymentStatus, show_history: bool = True) -> None:
    """Render a deployment status as a panel plus its transition history."""
    style = STATE_STYLES.get(status.state, "cyan")
    lines = [
        f"[bold]{status.service}[/bold]  {_state_text(status.state)}",
        f"Deployment: {status.id}",
        f"Task definition: {status.task_definition or '-'}",
        f"Weights: {_format_weights(status.weights)}",
    ]
    for label, summary in status.health_summary.items():
        lines.append(f"Health ({label}): {summary}")
    if status.cause:
        lines.append(f"Cause: {status.cause}")
    if status.error_type:
        lines.append(f"Error type: {status.error_type}")
    for warning in status.warnings:
        lines.append(f"[yellow]Warning:[/yellow] {warning}")

    console.print(Panel.fit("\n".join(lines), title="Deployment Status", border_style=style))

    if show_history and status.history:
        table = Table(title="History", show_header=True, header_style="bold cyan")
        table.add_column("Time", style="dim")
        table.add_column("From")
        table.add_column("To")
        table.add_column("Cause")
        for transition in status.history:
            table.add_row(
                transition.at.strftime("%Y-%m-%d %H:%M:%S"),
                transition.from_state.value if transition.from_state else "-",
                _state_text(transition.to_state),
                transition.cause or "",
            )
        console.print(table)


def print_json(data: Dict[str, Any]) -> None:
    console.print(Syntax(json.dumps(data, indent=2, default=str), "json", theme="monokai"))


@cli.command()
@click.argument('service')
@click.argument('task_definition')
@click.option('--config', default='taskset.yaml', help='Path to configuration file')
@click.option('--step', 'step_percent', type=click.IntRange(1, 100), help='Traffic percent moved per increment')
@click.option('--interval', 'shift_interval', type=float, help='Settle window after each increment (seconds)')
@click.option('--steady-timeout', type=float, help='Max wait for the new TaskSet (seconds)')
@click.option('--poll-interval', type=float, help='Polling interval (seconds)')
@click.option('--test-mode', is_flag=True, default=None, help='Allow zero intervals and short settle windows')
@click.option('--json-output', is_flag=True, help='Print the final status as JSON')
@click.pass_context
def deploy(ctx, service, task_definition, config, step_percent, shift_interval, steady_timeout,
           poll_interval, test_mode, json_output):
    """Deploy TASK_DEFINITION to SERVICE with a gradual blue/green traffic shift."""
    cfg = load_config(config)
    store = DeploymentStore(ctx.obj['state_dir'])
    overrides = {
        'step_percent': step_percent,
        'shift_interval': shift_interval,
        'steady_timeout': steady_timeout,
        'poll_interval': poll_interval,
        'test_mode': test_mode,
    }

    try:
        orchestrator = create_orchestrator(
            cfg,
            store,
            profile=ctx.obj.get('profile'),
            region=ctx.obj.get('region'),
            role_arn=ctx.obj.get('role_arn'),
        )
        if not json_output:
            orchestrator.add_listener(print_transition)

        deployment_id = orchestrator.submit(service, task_definition, overrides)
        if not json_output:
            console.print(Panel.fit(
                f"[bold]Deploying {task_definition}[/bold]\n"
                f"Service: {service}\n"
                f"Deployment: {deployment_id}",
                title="Blue/Green Deployment",
                border_style="cyan"
            ))

        try:
            deployment = orchestrator.wait(deployment_id)
        except KeyboardInterrupt:
            console.print("\n[yellow]Interrupted, cancelling deployment...[/yellow]")
            orchestrator.cancel(deployment_id, reason="interrupted by operator")
            deployment = orchestrator.wait(deployment_id)

    except ConflictError as e:
        console.print(f"[red]Conflict:[/red] {e.message}")
        for suggestion in e.suggestions:
            console.print(f"  [dim]{suggestion}[/dim]")
        sys.exit(CONFLICT_EXIT_CODE)
    except DeploymentError as e:
        console.print(f"[red]Deployment error:[/red]\n{e.to_user_message()}")
        sys.exit(1)

    status = deployment.status()
    if json_output:
        print_json(status.to_dict())
    else:
        console.print()
        print_status(status, show_history=False)

    sys.exit(EXIT_CODES[status.state])


@cli.command()
@click.argument('deployment_id')
@click.option('--json-output', is_flag=True, help='Output in JSON format')
@click.pass_context
def status(ctx, deployment_id, json_output):
    """Show state, weights and health of a deployment."""
    store = DeploymentStore(ctx.obj['state_dir'])
    try:
        deployment_status = DeploymentStatus.from_record(store.load(deployment_id))
    except DeploymentNotFoundError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        sys.exit(1)

    if json_output:
        print_json(deployment_status.to_dict())
    else:
        print_status(deployment_status)


@cli.command()
@click.argument('deployment_id')
@click.pass_context
def cancel(ctx, deployment_id):
    """Cancel an in-flight deployment and roll it back."""
    store = DeploymentStore(ctx.obj['state_dir'])
    try:
        record = store.load(deployment_id)
    except DeploymentNotFoundError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        sys.exit(1)

    state = DeploymentState(record.state)
    if state in UNCANCELLABLE_STATES or not store.request_cancel(deployment_id):
        console.print(f"[yellow]Deployment {deployment_id} is {state.value} and can no longer be cancelled[/yellow]")
        sys.exit(1)

    console.print(f"[green]✓[/green] Cancel requested for {deployment_id}; it will roll back shortly")


@cli.command()
@click.option('--service', help='Only show deployments of this service')
@click.option('--limit', default=20, show_default=True, help='Maximum number of deployments')
@click.option('--json-output', is_flag=True, help='Output in JSON format')
@click.pass_context
def history(ctx, service, limit, json_output):
    """List recent deployments, newest first."""
    store = DeploymentStore(ctx.obj['state_dir'])
    records = store.list(service=service, limit=limit)

    if json_output:
        print_json({'deployments': [json.loads(r.model_dump_json()) for r in records]})
        return

    if not records:
        console.print("[yellow]No deployments found[/yellow]")
        return

    table = Table(title="Deployments", show_header=True, header_style="bold cyan")
    table.add_column("ID", style="cyan")
    table.add_column("Service")
    table.add_column("Task Definition")
    table.add_column("State")
    table.add_column("Weights")
    table.add_column("Started", style="dim")
    table.add_column("Cause")

    for record in records:
        table.add_row(
            record.id,
            record.service,
            record.task_definition,
            _state_text(DeploymentState(record.state)),
            _format_weights(record.weights),
            record.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            record.cause or "",
        )

    console.print(table)


@cli.command()
@click.option('--keep', default=100, show_default=True, help='Archived deployments to keep')
@click.option('--older-than-days', type=int, help='Only delete records older than this')
@click.pass_context
def prune(ctx, keep, older_than_days):
    """Delete old archived deployment records."""
    store = DeploymentStore(ctx.obj['state_dir'])
    deleted = store.prune(keep=keep, older_than_days=older_than_days)
    console.print(f"Deleted {deleted} archived deployment record(s)")


@cli.command()
@click.option('--config', default='taskset.yaml', help='Path to configuration file')
@click.option('--json-output', is_flag=True, help='Output in JSON format')
def validate(config, json_output):
    """Validate configuration file without deploying."""
    try:
        cfg = Config(config).load()
    except FileNotFoundError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    except ConfigValidationError as e:
        if json_output:
            print_json({'valid': False, 'errors': e.errors or [{'loc': [], 'msg': e.message}]})
        else:
            console.print(Panel.fit(str(e), title="Configuration Invalid", border_style="red"))
        sys.exit(1)

    if json_output:
        print_json({'valid': True, 'services': sorted(cfg.services)})
        return

    table = Table(title=f"Project: {cfg.project.name} ({cfg.project.region})", show_header=True,
                  header_style="bold cyan")
    table.add_column("Service", style="cyan")
    table.add_column("Cluster")
    table.add_column("Step")
    table.add_column("Interval")
    table.add_column("Target Groups")

    for name, service in sorted(cfg.services.items()):
        settings = cfg.settings_for(name)
        table.add_row(
            name,
            service.cluster,
            f"{settings.step_percent}%",
            f"{settings.shift_interval:.0f}s",
            "\n".join(service.target_groups),
        )

    console.print(Panel.fit("[green]✓ Configuration is valid[/green]", border_style="green"))
    console.print(table)


if __name__ == '__main__':
    cli()
