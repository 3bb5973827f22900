"""
Main CLI entry point for Work Item Bridge.

This module provides the command-line interface for migrating Rally work
items into Azure DevOps.
"""

import sys
from pathlib import Path

import click
from dotenv import load_dotenv

from workitem_bridge import __version__
from workitem_bridge.cli.commands import checkpoint as checkpoint_commands
from workitem_bridge.cli.commands import config as config_commands
from workitem_bridge.cli.commands import migrate as migrate_commands
from workitem_bridge.cli.context import MigrationContext
from workitem_bridge.utils.logging import configure_logging, get_logger

# Load environment variables from .env file
load_dotenv()

logger = get_logger(__name__)


@click.group()
@click.version_option(version=__version__, prog_name="workitem-bridge")
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, path_type=Path),
    help="Path to configuration file",
    envvar="WORKITEM_BRIDGE_CONFIG",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    help="Set console logging level (file logging stays at DEBUG)",
    envvar="WORKITEM_BRIDGE_LOG_LEVEL",
)
@click.option(
    "--log-file",
    type=click.Path(path_type=Path),
    help="Log file path (default: logs/migration.log)",
    envvar="WORKITEM_BRIDGE_LOG_FILE",
)
@click.pass_context
def cli(
    ctx: click.Context,
    config: Path | None,
    log_level: str,
    log_file: Path | None,
) -> None:
    """Work Item Bridge - Migrate Rally work items to Azure DevOps.

    Records are created once, patched when they drift, walked through the
    target workflow to their final state, and linked into the same
    parent/child hierarchy they had in Rally.

    Examples:

        # Validate configuration
        workitem-bridge config validate --config config.yaml

        # Check which ids exist and which are already migrated
        workitem-bridge migrate validate US123 DE456 --config config.yaml

        # Migrate ids listed in a file
        workitem-bridge migrate run --ids-file ids.txt --config config.yaml

        # Continue an interrupted run
        workitem-bridge migrate run --ids-file ids.txt --resume --config config.yaml
    """
    effective_log_file = log_file or Path("logs/migration.log")
    effective_log_file.parent.mkdir(parents=True, exist_ok=True)

    configure_logging(level=log_level.upper(), log_file=str(effective_log_file))

    ctx.obj = MigrationContext(
        config_path=config,
        log_level=log_level,
        log_file=log_file,
    )

    logger.debug(
        "cli_initialized",
        config=str(config) if config else None,
        log_level=log_level,
    )


cli.add_command(checkpoint_commands.checkpoint)
cli.add_command(config_commands.config)
cli.add_command(migrate_commands.migrate)


def main() -> int:
    """Main entry point for CLI."""
    try:
        # Exit codes raised by commands come back as the return value
        rv = cli(standalone_mode=False)
        return rv if isinstance(rv, int) else 0
    except click.ClickException as e:
        e.show()
        return e.exit_code
    except click.exceptions.Abort:
        click.echo("Aborted!", err=True)
        return 1
    except Exception as e:
        logger.error("unexpected_error", error=str(e), exc_info=True)
        click.echo(f"Error: {e}", err=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
