"""
Configuration management commands.

This module provides commands for validating and inspecting the
migration configuration and field mapping.
"""

import asyncio
from pathlib import Path

import click

from workitem_bridge.cli.context import MigrationContext
from workitem_bridge.cli.decorators import handle_errors, pass_context, requires_config
from workitem_bridge.cli.utils import (
    echo_error,
    echo_info,
    echo_success,
    echo_warning,
    print_table,
)
from workitem_bridge.client.exceptions import WorkItemBridgeError
from workitem_bridge.config import MigrationConfig
from workitem_bridge.utils.logging import get_logger

logger = get_logger(__name__)


@click.group(name="config")
def config() -> None:
    """Configuration management commands.

    Validate and inspect migration configuration files.
    """
    pass


@config.command(name="validate")
@click.option(
    "--check-connectivity",
    is_flag=True,
    help="Test connectivity to Rally and Azure DevOps",
)
@pass_context
@requires_config
@handle_errors
def validate(ctx: MigrationContext, check_connectivity: bool) -> None:
    """Validate migration configuration.

    Checks the configuration file, loads the field mapping file it points
    at, and sanity-checks performance settings. With --check-connectivity
    it also runs one cheap query against each system.

    Examples:

        workitem-bridge config validate --config config.yaml

        workitem-bridge config validate --config config.yaml --check-connectivity
    """
    echo_info(f"Validating configuration: {ctx.config_path}")
    config = ctx.config

    click.echo()
    _display_config_summary(config)

    click.echo()
    echo_info("Validating field mapping...")
    mapping = ctx.transformer.config
    echo_success(
        f"Field mapping loaded: {len(mapping.work_item_type_mappings)} type mapping(s), "
        f"{len(mapping.state_mappings)} state mapping(s)"
    )

    echo_info("Validating settings...")
    _validate_settings(config)

    if check_connectivity:
        click.echo()
        _test_connectivity(ctx)

    click.echo()
    echo_success("Configuration is valid")


def _display_config_summary(config: MigrationConfig) -> None:
    rows = [
        ["Rally URL", config.source.url],
        ["Rally Workspace", config.source.workspace],
        ["Azure DevOps URL", config.target.url],
        ["Azure DevOps Project", f"{config.target.organization}/{config.target.project}"],
        ["Field Mapping", config.paths.mapping_file],
        ["Checkpoint", config.state.checkpoint_path],
        ["Batch Size", str(config.performance.batch_size)],
        ["Max Concurrent", str(config.performance.max_concurrent)],
        ["Workflow", config.workflow.platform],
        ["Dry Run", str(config.options.dry_run)],
    ]
    print_table("Configuration Summary", ["Setting", "Value"], rows)


def _validate_settings(config: MigrationConfig) -> None:
    perf = config.performance
    if perf.max_concurrent > perf.batch_size:
        echo_warning(
            f"max_concurrent ({perf.max_concurrent}) exceeds batch_size ({perf.batch_size}); "
            "extra workers will sit idle"
        )
    if perf.max_concurrent > 16:
        echo_warning(
            f"High concurrency ({perf.max_concurrent}) may trigger Azure DevOps throttling"
        )
    if config.options.bypass_rules:
        echo_warning("bypass_rules is enabled; the token needs 'Bypass rules' permission")

    checkpoint_dir = Path(config.state.checkpoint_path).parent
    if checkpoint_dir.exists() and not checkpoint_dir.is_dir():
        echo_error(f"Checkpoint directory is not a directory: {checkpoint_dir}")
        raise click.ClickException("Invalid checkpoint path")

    echo_success("All settings are valid")


def _test_connectivity(ctx: MigrationContext) -> None:
    """Run one small query against each system."""

    async def test_connections() -> None:
        try:
            echo_info("Testing Rally connection...")
            try:
                await ctx.source_client.query("hierarchicalrequirement", fetch="ObjectID", pagesize=1)
                echo_success(f"Rally accessible: {ctx.config.source.url}")
            except WorkItemBridgeError as e:
                echo_error(f"Failed to connect to Rally: {e}")
                raise click.ClickException(f"Rally connection failed: {e}") from e

            echo_info("Testing Azure DevOps connection...")
            try:
                await ctx.target_client.find_by_tag("workitem-bridge-connectivity-check")
                echo_success(f"Azure DevOps accessible: {ctx.config.target.url}")
            except WorkItemBridgeError as e:
                echo_error(f"Failed to connect to Azure DevOps: {e}")
                raise click.ClickException(f"Azure DevOps connection failed: {e}") from e
        finally:
            await ctx.aclose()

    asyncio.run(test_connections())


@config.command(name="show")
@pass_context
@requires_config
@handle_errors
def show(ctx: MigrationContext) -> None:
    """Display current configuration.

    Shows the loaded configuration with credentials masked.

    Examples:

        workitem-bridge config show --config config.yaml
    """
    config = ctx.config

    _display_config_summary(config)

    click.echo("\nRally:")
    click.echo(f"  URL: {config.source.url}")
    click.echo(f"  API Key: {'*' * 40} (masked)")
    click.echo(f"  Project: {config.source.project or '(workspace)'}")

    click.echo("\nAzure DevOps:")
    click.echo(f"  URL: {config.target.url}")
    click.echo(f"  Token: {'*' * 40} (masked)")
    click.echo(f"  API Version: {config.target.api_version}")

    click.echo("\nOptions:")
    for name, value in config.options.model_dump().items():
        click.echo(f"  {name}: {value}")

    click.echo("\nWorkflow Transitions:")
    for desired, steps in config.workflow.transitions.items():
        click.echo(f"  {desired}: {' -> '.join(steps)}")
