"""CLI commands operating on every service of a cluster."""

import sys

import click

from ecs_manage.cli import common
from ecs_manage.cli.output import render_audit, render_services
from ecs_manage.inventory.services import SYNC_PAUSE, ServiceInventory, ServiceProperty
from ecs_manage.utils.errors import EcsManageError
from ecs_manage.utils.logging import get_logger

logger = get_logger(__name__)
console = common.console


def _inventory(ctx, region=None) -> ServiceInventory:
    return ServiceInventory(common.create_platform(ctx, region))


def _inventories(ctx, source_region=None, destination_region=None):
    """Source and destination inventories, sharing a client within one region."""
    source_inventory = _inventory(ctx, source_region)
    if destination_region and destination_region != source_region:
        return source_inventory, _inventory(ctx, destination_region)
    return source_inventory, source_inventory


def _fail(error: EcsManageError):
    console.print(f"[red]{error.to_user_message()}[/red]")
    sys.exit(1)


@click.group()
def services():
    """Inspect and bulk-update the services of a cluster."""
    pass


@services.command()
@click.argument('cluster')
@click.option('--format', 'output_format', default='table', type=click.Choice(['table', 'json']))
@click.pass_context
def info(ctx, cluster, output_format):
    """Show task definition and counts of every service."""
    try:
        states = _inventory(ctx).describe_services(cluster)
    except EcsManageError as e:
        _fail(e)

    if output_format == 'json':
        console.print_json(data=[
            {
                'service': state.service_id.name,
                'task_definition': state.active_revision,
                'desired_count': state.desired_count,
                'running_count': state.running_count,
            }
            for state in states
        ])
        return

    render_services(console, cluster, states)


@services.command()
@click.argument('cluster')
@click.pass_context
def audit(ctx, cluster):
    """Report invalid images, missing target groups and under-running services."""
    try:
        results = _inventory(ctx).audit_cluster(cluster)
    except EcsManageError as e:
        _fail(e)

    render_audit(console, results)


@services.command()
@click.argument('source')
@click.argument('destination')
@click.option('--source-region', help='Region of the source cluster')
@click.option('--destination-region', help='Region of the destination cluster')
@click.pass_context
def compare(ctx, source, destination, source_region, destination_region):
    """List services in SOURCE that are missing from DESTINATION."""
    try:
        source_inventory, destination_inventory = _inventories(ctx, source_region, destination_region)
        missing = source_inventory.compare(source, destination, destination_inventory)
    except EcsManageError as e:
        _fail(e)

    console.print("[bold]Not in destination:[/bold]")
    for state in missing:
        console.print(f"  {state.service_id}")
    console.print(f"Total: {len(missing)}")


@services.command()
@click.argument('source')
@click.argument('destination')
@click.argument('role_suffix', required=False)
@click.option('--source-region', help='Region of the source cluster')
@click.option('--destination-region', help='Region of the destination cluster')
@click.option(
    '--pause',
    default=int(SYNC_PAUSE * 1000),
    type=click.IntRange(min=0),
    help='Milliseconds to wait before each create'
)
@click.pass_context
def sync(ctx, source, destination, role_suffix, source_region, destination_region, pause):
    """Create services from SOURCE that are missing in DESTINATION.

    Only services that pass the audit are copied. Services behind a load
    balancer outside awsvpc mode get the role DESTINATION-ROLE_SUFFIX
    (ROLE_SUFFIX defaults to ECSServiceRole).
    """
    try:
        source_inventory, destination_inventory = _inventories(ctx, source_region, destination_region)
        result = source_inventory.sync(
            source, destination, role_suffix, destination_inventory, pause / 1000.0
        )
    except EcsManageError as e:
        _fail(e)

    for name in result.created:
        console.print(f"  [green]✓[/green] {destination}/{name}")
    for name, findings in result.skipped.items():
        console.print(f"  [yellow]-[/yellow] {source}/{name}: {', '.join(findings)}")
    for name, error in result.failed.items():
        console.print(f"  [red]✗[/red] {destination}/{name}: {error.message}")

    console.print(
        f"Created: {len(result.created)}, skipped: {len(result.skipped)}, failed: {len(result.failed)}"
    )
    if not result.is_success():
        sys.exit(1)


@services.command()
@click.argument('cluster')
@click.option(
    '--property', 'prop',
    default=ServiceProperty.DESIRED_COUNT.value,
    type=click.Choice([p.value for p in ServiceProperty]),
    help='Property to export'
)
@click.pass_context
def export(ctx, cluster, prop):
    """Export one property of every service as JSON."""
    try:
        values = _inventory(ctx).export(cluster, ServiceProperty(prop))
    except EcsManageError as e:
        _fail(e)

    console.print_json(data=values)


@services.command()
@click.argument('cluster')
@click.argument('modification', type=click.Choice(['desired-count']))
@click.argument('count', type=click.IntRange(min=0))
@click.option('--pause', default=0, type=click.IntRange(min=0), help='Milliseconds to wait between services')
@click.pass_context
def update(ctx, cluster, modification, count, pause):
    """Apply a modification to every service in CLUSTER."""
    try:
        result = _inventory(ctx).update_desired_count(cluster, count, pause / 1000.0)
    except EcsManageError as e:
        _fail(e)

    console.print(f"[green]✓ Updated {len(result.updated)} service(s)[/green]")
    if not result.is_success():
        for name, error in result.failed.items():
            console.print(f"  [red]✗[/red] {name}: {error.message}")
        sys.exit(1)
