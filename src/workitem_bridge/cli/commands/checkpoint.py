"""
Checkpoint management commands.

This module provides commands for inspecting and clearing the checkpoint
that lets an interrupted run continue where it stopped.
"""

import click

from workitem_bridge.cli.context import MigrationContext
from workitem_bridge.cli.decorators import (
    confirm_action,
    handle_errors,
    pass_context,
    requires_config,
)
from workitem_bridge.cli.utils import echo_info, echo_success, echo_warning, print_table
from workitem_bridge.utils.logging import get_logger

logger = get_logger(__name__)


@click.group(name="checkpoint")
def checkpoint() -> None:
    """Checkpoint management commands.

    Inspect or clear the checkpoint used by --resume.
    """
    pass


@checkpoint.command(name="show")
@click.option(
    "--limit",
    type=int,
    default=20,
    help="Maximum number of id mappings to display",
)
@pass_context
@requires_config
@handle_errors
def show_checkpoint(ctx: MigrationContext, limit: int) -> None:
    """Show the saved checkpoint.

    Examples:

        workitem-bridge checkpoint show --config config.yaml
    """
    manager = ctx.checkpoint_manager
    saved = manager.load()

    if saved is None:
        echo_warning(f"No checkpoint found at {manager.path}")
        return

    print_table(
        "Checkpoint",
        ["Field", "Value"],
        [
            ["Path", str(manager.path)],
            ["Saved At", saved.timestamp or "N/A"],
            ["Last Completed Index", saved.last_checkpoint_index],
            ["Next Index On Resume", saved.last_checkpoint_index + 1],
            ["Mapped Records", len(saved.id_map)],
        ],
    )

    if saved.id_map:
        rows = [[source_id, target_id] for source_id, target_id in list(saved.id_map.items())[:limit]]
        print_table(
            f"Id Mappings (showing {len(rows)} of {len(saved.id_map)})",
            ["Rally ObjectID", "Azure DevOps Id"],
            rows,
        )


@checkpoint.command(name="clear")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt")
@pass_context
@requires_config
@handle_errors
@confirm_action("This will delete the checkpoint and its id map. Continue?")
def clear_checkpoint(ctx: MigrationContext, yes: bool) -> None:
    """Delete the saved checkpoint.

    The next run starts from the first id. Records already migrated are
    still found in Azure DevOps by their tags and are not duplicated.

    Examples:

        workitem-bridge checkpoint clear --config config.yaml --yes
    """
    manager = ctx.checkpoint_manager
    if manager.clear():
        logger.info("checkpoint_cleared_by_user", path=str(manager.path))
        echo_success(f"Checkpoint cleared: {manager.path}")
    else:
        echo_info("No checkpoint to clear")
