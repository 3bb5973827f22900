"""Decorators shared by the CLI commands.

``handle_errors`` turns the bridge's exceptions into exit codes:

    1  unexpected error
    2  configuration, field mapping or aborted run
    3  Rally or Azure DevOps rejected the credentials
    4  any other Rally or Azure DevOps API error
    5  checkpoint could not be read or written
"""

import functools
from collections.abc import Callable

import click

from workitem_bridge.cli.context import MigrationContext
from workitem_bridge.client.exceptions import (
    APIError,
    AuthenticationError,
    ConfigurationError,
    MigrationAbortedError,
    StateError,
)
from workitem_bridge.utils.logging import get_logger

logger = get_logger(__name__)

# Checked in order; the first matching type decides the exit code
_ERROR_EXITS: tuple[tuple[type[Exception], int, str, str | None], ...] = (
    (
        ConfigurationError,
        2,
        "Configuration Error",
        "Check the config file and the field mapping file.",
    ),
    (
        MigrationAbortedError,
        2,
        "Migration Aborted",
        "Fix the field mapping for the reported work item type and re-run with --resume.",
    ),
    (
        AuthenticationError,
        3,
        "Authentication Error",
        "Check the Rally API key and the Azure DevOps personal access token.",
    ),
    (APIError, 4, "API Error", None),
    (
        StateError,
        5,
        "Checkpoint Error",
        "Run 'workitem-bridge checkpoint clear' to discard the checkpoint and start over.",
    ),
)


def pass_context(f: Callable) -> Callable:
    """Hand the command the ``MigrationContext`` stored on the click context."""

    @click.pass_context
    @functools.wraps(f)
    def wrapper(click_ctx: click.Context, *args, **kwargs):
        return f(click_ctx.obj, *args, **kwargs)

    return wrapper


def handle_errors(f: Callable) -> Callable:
    """Report bridge errors on stderr and exit with the matching code."""

    @functools.wraps(f)
    def wrapper(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except (click.exceptions.Exit, click.ClickException):
            raise
        except Exception as e:
            for error_type, exit_code, label, hint in _ERROR_EXITS:
                if isinstance(e, error_type):
                    break
            else:
                logger.error("command_failed", error=str(e), exc_info=True)
                click.echo(f"Unexpected Error: {e}", err=True)
                click.echo("\nSee the log file for the traceback.", err=True)
                raise click.exceptions.Exit(1) from e

            logger.error("command_failed", error_type=type(e).__name__, error=str(e))
            click.echo(f"{label}: {e}", err=True)
            if isinstance(e, APIError) and e.status_code:
                click.echo(f"\nResponse status: {e.status_code}", err=True)
            if hint:
                click.echo(f"\n{hint}", err=True)
            raise click.exceptions.Exit(exit_code) from e

    return wrapper


def requires_config(f: Callable) -> Callable:
    """Load the migration config before the command runs; exit 2 if it cannot."""

    @functools.wraps(f)
    def wrapper(ctx: MigrationContext, *args, **kwargs):
        if ctx.config_path is None:
            click.echo(
                "Error: Configuration file required. "
                "Use --config option or set WORKITEM_BRIDGE_CONFIG.",
                err=True,
            )
            raise click.exceptions.Exit(2)
        try:
            _ = ctx.config
        except Exception as e:
            click.echo(f"Error loading configuration: {e}", err=True)
            raise click.exceptions.Exit(2) from e
        return f(ctx, *args, **kwargs)

    return wrapper


def confirm_action(message: str, abort_message: str = "Operation cancelled.") -> Callable:
    """Ask before a destructive command unless it was given ``--yes``."""

    def decorator(f: Callable) -> Callable:
        @functools.wraps(f)
        def wrapper(*args, **kwargs):
            if not click.get_current_context().params.get("yes") and not click.confirm(message):
                click.echo(abort_message)
                raise click.exceptions.Exit(0)
            return f(*args, **kwargs)

        return wrapper

    return decorator
