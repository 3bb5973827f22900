"""
Migration commands.

This module provides the commands that validate source ids and run a
migration batch from Rally into Azure DevOps.
"""

import asyncio
import signal
import time
from pathlib import Path

import click

from workitem_bridge.cli.context import MigrationContext
from workitem_bridge.cli.decorators import handle_errors, pass_context, requires_config
from workitem_bridge.cli.utils import (
    echo_error,
    echo_info,
    echo_success,
    echo_warning,
    format_duration,
    print_summary,
    print_table,
    read_ids_file,
)
from workitem_bridge.config import MigrationConfig
from workitem_bridge.migration.orchestrator import BatchOrchestrator
from workitem_bridge.migration.state import MigrationProgress
from workitem_bridge.migration.validator import validate_ids
from workitem_bridge.reporting import MigrationReport, ProgressTracker, generate_migration_report
from workitem_bridge.utils.logging import get_logger

logger = get_logger(__name__)


@click.group(name="migrate")
def migrate() -> None:
    """Migration commands.

    Validate source ids and migrate them into Azure DevOps.
    """
    pass


def _collect_ids(ids: tuple[str, ...], ids_file: Path | None) -> list[str]:
    collected = list(ids)
    if ids_file is not None:
        collected.extend(read_ids_file(ids_file))
    return collected


@migrate.command(name="run")
@click.argument("ids", nargs=-1)
@click.option(
    "--ids-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="File with one Rally ObjectID or FormattedID per line",
)
@click.option(
    "--query",
    "rally_query",
    type=str,
    help="Rally WSAPI query selecting the records to migrate, e.g. '(State = \"Open\")'",
)
@click.option(
    "--all",
    "migrate_all",
    is_flag=True,
    help="Migrate every artifact in the configured workspace/project",
)
@click.option(
    "--resume/--no-resume",
    default=None,
    help="Continue from the saved checkpoint (default: state.resume from config)",
)
@click.option("--dry-run", is_flag=True, help="Resolve and transform without writing")
@click.option(
    "--report-dir",
    type=click.Path(file_okay=False, path_type=Path),
    help="Directory for reports (default: paths.report_dir from config)",
)
@click.option("--no-report", is_flag=True, help="Skip writing report files")
@pass_context
@requires_config
@handle_errors
def run(
    ctx: MigrationContext,
    ids: tuple[str, ...],
    ids_file: Path | None,
    rally_query: str | None,
    migrate_all: bool,
    resume: bool | None,
    dry_run: bool,
    report_dir: Path | None,
    no_report: bool,
) -> None:
    """Migrate Rally records into Azure DevOps.

    IDS are Rally ObjectIDs or FormattedIDs. Parents, children and test
    cases of each record are migrated and linked as well, depending on
    the configured options.

    Press Ctrl+C to stop after the records in flight; the checkpoint is
    saved so the run can be continued with --resume.

    Examples:

        workitem-bridge migrate run US123 US124 --config config.yaml

        workitem-bridge migrate run --ids-file ids.txt --dry-run --config config.yaml

        workitem-bridge migrate run --query '(Iteration.Name = "Sprint 12")' --config config.yaml
    """
    config = ctx.config
    if dry_run:
        config = config.model_copy(
            update={"options": config.options.model_copy(update={"dry_run": True})}
        )

    source_ids = _collect_ids(ids, ids_file)
    if not source_ids and rally_query is None and not migrate_all:
        raise click.UsageError("Provide IDS, --ids-file, --query or --all")

    if config.options.dry_run:
        echo_warning("Dry run: nothing will be written to Azure DevOps")

    start = time.monotonic()
    progress = asyncio.run(_run_migration(ctx, config, source_ids, rally_query, migrate_all, resume))
    elapsed = time.monotonic() - start

    report = MigrationReport(progress, dry_run=config.options.dry_run)
    stats = report.statistics()
    stats["duration"] = format_duration(elapsed)
    click.echo()
    print_summary(stats, title="Migration Summary")

    failed = progress.failed_results()
    if failed:
        rows = [[r.formatted_id or r.source_id, r.reason or ""] for r in failed[:20]]
        print_table(
            f"Failed Records (showing {len(rows)} of {len(failed)})",
            ["Source Id", "Error"],
            rows,
        )

    if not no_report:
        files = generate_migration_report(
            progress,
            output_dir=report_dir or config.paths.report_dir,
            dry_run=config.options.dry_run,
        )
        for kind, path in files.items():
            echo_info(f"{kind.title()} report: {path}")

    if progress.cancelled:
        echo_warning("Migration cancelled; re-run with --resume to continue")
        raise click.exceptions.Exit(130)
    if failed:
        echo_error(f"{len(failed)} record(s) failed")
        raise click.exceptions.Exit(1)
    echo_success("Migration completed")


async def _run_migration(
    ctx: MigrationContext,
    config: MigrationConfig,
    source_ids: list[str],
    rally_query: str | None,
    migrate_all: bool,
    resume: bool | None,
) -> MigrationProgress:
    """Resolve the id list, run the orchestrator and close the clients."""
    try:
        if rally_query is not None or migrate_all:
            echo_info("Listing records in Rally...")
            queried = await ctx.source_client.fetch_all_record_ids(rally_query)
            echo_info(f"Found {len(queried)} record(s)")
            source_ids = source_ids + queried

        tracker = ProgressTracker(
            total=len(source_ids), enable=not config.logging.disable_progress
        )
        orchestrator = BatchOrchestrator.from_config(
            config,
            ctx.source_client,
            ctx.target_client,
            ctx.transformer,
            progress_callback=tracker,
            resume=resume,
        )

        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, orchestrator.cancel)
        except NotImplementedError:
            # Windows event loops do not support signal handlers
            pass

        try:
            with tracker:
                return await orchestrator.run(source_ids)
        finally:
            try:
                loop.remove_signal_handler(signal.SIGINT)
            except NotImplementedError:
                pass
    finally:
        await ctx.aclose()


@migrate.command(name="validate")
@click.argument("ids", nargs=-1)
@click.option(
    "--ids-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="File with one Rally ObjectID or FormattedID per line",
)
@click.option(
    "--concurrency",
    type=int,
    default=None,
    help="Parallel checks (default: performance.existence_check_concurrency)",
)
@pass_context
@requires_config
@handle_errors
def validate(
    ctx: MigrationContext,
    ids: tuple[str, ...],
    ids_file: Path | None,
    concurrency: int | None,
) -> None:
    """Check ids before a run.

    Reports which ids do not exist in Rally and which have already been
    migrated to Azure DevOps.

    Examples:

        workitem-bridge migrate validate US123 DE45 --config config.yaml
    """
    source_ids = _collect_ids(ids, ids_file)
    if not source_ids:
        raise click.UsageError("Provide IDS or --ids-file")

    workers = concurrency or ctx.config.performance.existence_check_concurrency

    async def run_validation():
        try:
            return await validate_ids(
                ctx.source_client, ctx.target_client, source_ids, concurrency=workers
            )
        finally:
            await ctx.aclose()

    echo_info(f"Validating {len(source_ids)} id(s)...")
    result = asyncio.run(run_validation())

    print_summary(
        {
            "valid": len(result.valid_ids),
            "invalid": len(result.invalid_ids),
            "already_migrated": len(result.already_migrated),
        },
        title="Id Validation",
    )

    if result.already_migrated:
        print_table(
            "Already Migrated",
            ["Source Id", "Azure DevOps Id"],
            [[sid, tid if tid is not None else "?"] for sid, tid in result.already_migrated.items()],
        )

    if result.invalid_ids:
        echo_error(f"Not found in Rally: {', '.join(result.invalid_ids)}")
        raise click.exceptions.Exit(1)

    echo_success("All ids found in Rally")
