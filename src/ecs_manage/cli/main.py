"""Main CLI entry point."""

import signal
import sys
import threading

import click
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn

from ecs_manage import __version__
from ecs_manage.cli import common
from ecs_manage.cli.output import outcomes_payload, render_outcomes
from ecs_manage.cli.services import services
from ecs_manage.config.models import ScalingPolicy
from ecs_manage.config.parser import DEFAULT_MANIFEST
from ecs_manage.orchestrator.driver import ReconciliationDriver, overall_exit_code
from ecs_manage.state.models import ServiceId
from ecs_manage.utils.errors import EcsManageError
from ecs_manage.utils.logging import get_logger, setup_logging

console = common.console
logger = get_logger(__name__)


@click.group()
@click.version_option(__version__, prog_name='ecs-manage', message='%(prog)s %(version)s')
@click.option('--profile', help='AWS profile to use')
@click.option('--region', help='AWS region')
@click.option('--log-level', default='info', type=click.Choice(['debug', 'info', 'warning', 'error']))
@click.pass_context
def cli(ctx, profile, region, log_level):
    """Reconcile ECS services with their declared state."""
    ctx.ensure_object(dict)
    ctx.obj['profile'] = profile
    ctx.obj['region'] = region
    ctx.obj['log_level'] = log_level

    setup_logging(log_level)


cli.add_command(services)


class CancelOnSignal:
    """Sets a cancel event on SIGINT/SIGTERM while active.

    In-flight rollouts observe the event at their next poll and roll back.
    """

    SIGNALS = (signal.SIGINT, signal.SIGTERM)

    def __init__(self):
        self.event = threading.Event()
        self._previous = {}

    def _handle(self, signum, frame):
        if self.event.is_set():
            raise KeyboardInterrupt
        console.print("[yellow]Cancelling; in-flight rollouts will be rolled back...[/yellow]")
        self.event.set()

    def __enter__(self):
        if threading.current_thread() is threading.main_thread():
            for sig in self.SIGNALS:
                self._previous[sig] = signal.signal(sig, self._handle)
        return self.event

    def __exit__(self, exc_type, exc_val, exc_tb):
        for sig, handler in self._previous.items():
            signal.signal(sig, handler)


@cli.command()
@click.option('--config', default=DEFAULT_MANIFEST, help='Path to the manifest')
@click.option('--service', 'service_names', multiple=True, help='Service to reconcile (repeatable)')
@click.option('--timeout', type=click.FloatRange(min=0, min_open=True), help='Seconds allowed per service')
@click.option('--max-workers', default=4, type=click.IntRange(min=1), help='Services reconciled in parallel')
@click.option('--format', 'output_format', default='table', type=click.Choice(['table', 'json']))
@click.pass_context
def deploy(ctx, config, service_names, timeout, max_workers, output_format):
    """Reconcile services in the manifest with what ECS runs."""
    cfg = common.load_config(config)

    try:
        specs = cfg.select(list(service_names))
    except KeyError as e:
        console.print(f"[red]Error:[/red] {e.args[0]}")
        sys.exit(1)

    if output_format == 'table':
        console.print(Panel.fit(
            f"[bold]Reconciling {len(specs)} service(s)[/bold]\n"
            f"Manifest: {config}\n"
            f"Timeout: {timeout or cfg.settings.timeout:.0f}s per service\n"
            f"Workers: {max_workers}",
            title="Deployment",
            border_style="cyan"
        ))

    driver = ReconciliationDriver(common.create_platform(ctx), cfg.settings)

    try:
        with CancelOnSignal() as cancel_event, Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            console=console,
            transient=True,
            disable=output_format != 'table'
        ) as progress:
            task_id = progress.add_task("[cyan]Reconciling...", total=len(specs))

            def on_outcome(outcome):
                progress.update(
                    task_id,
                    advance=1,
                    description=f"{outcome.service_id}: {outcome.status.value}"
                )

            outcomes = driver.reconcile_all(
                specs,
                max_workers=max_workers,
                cancel_event=cancel_event,
                timeout=timeout,
                callback=on_outcome
            )
    except EcsManageError as e:
        console.print(f"[red]{e.to_user_message()}[/red]")
        sys.exit(1)

    if output_format == 'json':
        console.print_json(data=outcomes_payload(outcomes))
    else:
        render_outcomes(console, outcomes)

    sys.exit(overall_exit_code(outcomes))


@cli.command()
@click.argument('cluster')
@click.argument('service')
@click.argument('count', type=click.IntRange(min=0))
@click.option('--min', 'min_count', default=0, type=click.IntRange(min=0), help='Lowest allowed count')
@click.option('--max', 'max_count', default=100, type=click.IntRange(min=0), help='Highest allowed count')
@click.option('--step', 'step_size', type=click.IntRange(min=1), help='Largest change per step')
@click.option('--step-timeout', default=300.0, type=click.FloatRange(min=0, min_open=True),
              help='Seconds to wait for each step to stabilize')
@click.option('--timeout', type=click.FloatRange(min=0, min_open=True), help='Seconds allowed in total')
@click.pass_context
def scale(ctx, cluster, service, count, min_count, max_count, step_size, step_timeout, timeout):
    """Change the desired count of a single service."""
    if min_count > max_count:
        console.print(f"[red]Error:[/red] --min ({min_count}) cannot exceed --max ({max_count})")
        sys.exit(1)

    policy = ScalingPolicy(
        min_count=min_count,
        max_count=max_count,
        step_size=step_size,
        step_timeout=step_timeout
    )
    driver = ReconciliationDriver(common.create_platform(ctx))

    with CancelOnSignal() as cancel_event:
        outcome = driver.scale(
            ServiceId(cluster=cluster, name=service),
            count,
            policy,
            cancel_event=cancel_event,
            timeout=timeout
        )

    render_outcomes(console, [outcome], title="Scaling")
    sys.exit(outcome.exit_code)


def main():
    """Console script entry point."""
    cli(obj={})


if __name__ == '__main__':
    main()
