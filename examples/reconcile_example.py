"""Example usage of the reconciliation driver and service inventory."""

import threading

from ecs_manage.config import Config, ScalingPolicy
from ecs_manage.inventory import ServiceInventory, ServiceProperty
from ecs_manage.orchestrator import ReconciliationDriver, overall_exit_code
from ecs_manage.platform import EcsPlatformClient
from ecs_manage.state.models import ServiceId
from ecs_manage.utils import AWSClientManager, error_handler, setup_logging


def example_reconcile_manifest(platform):
    """Example: Reconcile every service in a manifest."""
    print("=== Reconcile Manifest ===")

    config = Config('ecs-manage.yaml').load()
    driver = ReconciliationDriver(platform, config.settings)

    # Setting the event rolls back any rollout still verifying
    cancel_event = threading.Event()

    outcomes = driver.reconcile_all(
        config.services,
        max_workers=2,
        cancel_event=cancel_event,
        callback=lambda outcome: print(f"  {outcome.service_id}: {outcome.status.value}")
    )

    for outcome in outcomes:
        print(f"{outcome.service_id} -> {outcome.revision} ({outcome.reason})")
        for action in outcome.actions:
            print(f"    {action}")

    print(f"Exit code: {overall_exit_code(outcomes)}")


def example_scale(platform):
    """Example: Scale one service in steps of two tasks."""
    print("\n=== Scale Service ===")

    driver = ReconciliationDriver(platform)
    outcome = driver.scale(
        ServiceId(cluster='prod', name='web'),
        6,
        ScalingPolicy(min_count=2, max_count=10, step_size=2),
        timeout=900
    )

    if outcome.is_success():
        print(f"✓ {outcome.reason}")
    else:
        print(outcome.error.to_user_message())


def example_inventory(platform):
    """Example: Audit a cluster and export its desired counts."""
    print("\n=== Cluster Inventory ===")

    inventory = ServiceInventory(platform)

    for result in inventory.audit_cluster('prod'):
        status = '✓' if result.ok else '✗ ' + ', '.join(result.findings)
        print(f"  {result.service.service_id.name}: {status}")

    print(inventory.export('prod', ServiceProperty.DESIRED_COUNT))


if __name__ == '__main__':
    setup_logging('info', log_dir=None)

    client_manager = AWSClientManager(region='us-east-1')
    try:
        client_manager.validate_credentials()
    except Exception as e:
        print(error_handler.handle_exception(e).to_user_message())
        raise SystemExit(1)

    ecs = EcsPlatformClient(client_manager)

    example_reconcile_manifest(ecs)
    example_scale(ecs)
    example_inventory(ecs)
