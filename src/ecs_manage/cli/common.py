"""Helpers shared by CLI commands."""

import sys
from typing import Optional

import click
from rich.console import Console

from ecs_manage.config.parser import DEFAULT_MANIFEST, Config, ConfigValidationError
from ecs_manage.platform.base import PlatformClient
from ecs_manage.platform.ecs import EcsPlatformClient
from ecs_manage.utils.aws_client import AWSClientManager
from ecs_manage.utils.errors import EcsManageError
from ecs_manage.utils.logging import get_logger

console = Console()
logger = get_logger(__name__)


def load_config(config_path: str = DEFAULT_MANIFEST) -> Config:
    """Load and validate the manifest, exiting with status 1 on failure."""
    try:
        return Config(config_path).load()
    except FileNotFoundError:
        console.print(f"[red]Error:[/red] Manifest not found: {config_path}")
        sys.exit(1)
    except ConfigValidationError as e:
        console.print("[red]Manifest validation failed:[/red]\n")
        console.print(str(e))
        sys.exit(1)


def create_platform(ctx: click.Context, region: Optional[str] = None) -> PlatformClient:
    """Build the ECS platform client from global options.

    Credentials are checked against STS first; a missing or rejected
    identity exits with status 1 before any ECS call is made.
    """
    client_manager = AWSClientManager(
        profile=ctx.obj.get('profile'),
        region=region or ctx.obj.get('region')
    )
    try:
        client_manager.validate_credentials()
    except EcsManageError as e:
        console.print(f"[red]{e.to_user_message()}[/red]")
        sys.exit(1)

    return EcsPlatformClient(client_manager)
