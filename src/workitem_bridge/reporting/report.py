"""Migration report generation.

This module turns the final ``MigrationProgress`` of a run into JSON and
Markdown summaries, and exports failed and skipped records (CSV or JSON,
chosen by file extension) for follow-up.
"""

import csv
import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from workitem_bridge.migration.state import MigrationProgress
from workitem_bridge.models import MigrationResult
from workitem_bridge.utils.logging import get_logger

logger = get_logger(__name__)

EXPORT_COLUMNS = [
    "source_id",
    "formatted_id",
    "target_id",
    "outcome",
    "reason",
    "patched_fields",
    "timestamp",
]


class MigrationReport:
    """Generates migration reports.

    Creates a summary of one run including statistics, failures, skipped
    records and recommendations.
    """

    def __init__(self, progress: MigrationProgress, dry_run: bool = False):
        """Initialize migration report.

        Args:
            progress: Final progress of the run
            dry_run: Whether the run wrote nothing to the target
        """
        self.progress = progress
        self.dry_run = dry_run
        self.generated_at = datetime.now(UTC)

    def statistics(self) -> dict[str, Any]:
        """Aggregate counters of the run.

        Returns:
            Dictionary of counts and the success rate (percent)
        """
        p = self.progress
        processed = p.processed_items
        success_rate = (p.successful_items + p.skipped_items) / processed * 100 if processed else 0.0
        return {
            "total_items": p.total_items,
            "processed_items": processed,
            "created": p.created_items,
            "patched": p.patched_items,
            "successful": p.successful_items,
            "failed": p.failed_items,
            "skipped": p.skipped_items,
            "resumed_items": p.resumed_items,
            "mapped_records": len(p.id_map),
            "last_checkpoint_index": p.last_checkpoint_index,
            "cancelled": p.cancelled,
            "success_rate": round(success_rate, 2),
        }

    def generate_json(self, output_path: str | Path | None = None) -> str:
        """Generate JSON report.

        Args:
            output_path: Optional path to save report

        Returns:
            JSON report as string
        """
        report = {
            "report_version": "1.0",
            "generated_at": self.generated_at.isoformat(),
            "dry_run": self.dry_run,
            "statistics": self.statistics(),
            "failed": [r.to_dict() for r in self.progress.failed_results()],
            "skipped": [r.to_dict() for r in self.progress.skipped_results()],
            "recommendations": self._generate_recommendations(),
        }

        json_str = json.dumps(report, indent=2, default=str)

        if output_path:
            Path(output_path).write_text(json_str, encoding="utf-8")
            logger.info("json_report_saved", path=str(output_path))

        return json_str

    def generate_markdown(self, output_path: str | Path | None = None) -> str:
        """Generate Markdown report.

        Args:
            output_path: Optional path to save report

        Returns:
            Markdown report as string
        """
        stats = self.statistics()
        lines = [
            "# Work Item Migration Report",
            "",
            f"**Generated:** {self.generated_at.strftime('%Y-%m-%d %H:%M:%S UTC')}  ",
            f"**Dry Run:** {'Yes' if self.dry_run else 'No'}  ",
            f"**Cancelled:** {'Yes' if stats['cancelled'] else 'No'}  ",
            "",
            "## Statistics",
            "",
            "| Metric | Count |",
            "|--------|------:|",
            f"| Processed | {stats['processed_items']:,} |",
            f"| Created | {stats['created']:,} |",
            f"| Patched | {stats['patched']:,} |",
            f"| Skipped | {stats['skipped']:,} |",
            f"| Failed | {stats['failed']:,} |",
            f"| Resumed (already done) | {stats['resumed_items']:,} |",
            f"| Mapped records | {stats['mapped_records']:,} |",
            f"| Success Rate | {stats['success_rate']:.1f}% |",
            "",
        ]

        failed = self.progress.failed_results()
        if failed:
            lines.extend(["## Failures", "", f"Total failures: {len(failed)}", ""])
            lines.extend(self._result_table(failed[:20]))
            if len(failed) > 20:
                lines.append(f"*... and {len(failed) - 20} more failures*\n")

        skipped = self.progress.skipped_results()
        if skipped:
            lines.extend(["## Skipped Records", "", f"Total skipped: {len(skipped)}", ""])
            lines.extend(self._result_table(skipped[:20]))
            if len(skipped) > 20:
                lines.append(f"*... and {len(skipped) - 20} more skipped records*\n")

        recommendations = self._generate_recommendations()
        if recommendations:
            lines.extend(["## Recommendations", ""])
            lines.extend(f"- {rec}" for rec in recommendations)
            lines.append("")

        markdown = "\n".join(lines)

        if output_path:
            Path(output_path).write_text(markdown, encoding="utf-8")
            logger.info("markdown_report_saved", path=str(output_path))

        return markdown

    @staticmethod
    def _result_table(results: list[MigrationResult]) -> list[str]:
        lines = ["| Source | Target | Reason |", "|--------|-------:|--------|"]
        for r in results:
            reason = (r.reason or "").replace("|", "\\|")
            lines.append(f"| {r.formatted_id or r.source_id} | {r.target_id or ''} | {reason} |")
        lines.append("")
        return lines

    def export_failed(self, output_path: str | Path) -> Path:
        """Write failed records to ``output_path`` (``.json`` or CSV)."""
        return _export(self.progress.failed_results(), Path(output_path), "failed")

    def export_skipped(self, output_path: str | Path) -> Path:
        """Write skipped records to ``output_path`` (``.json`` or CSV)."""
        return _export(self.progress.skipped_results(), Path(output_path), "skipped")

    def _generate_recommendations(self) -> list[str]:
        recommendations = []
        stats = self.statistics()

        if stats["failed"] > 0:
            recommendations.append(
                f"{stats['failed']} records failed. Review the failed export and re-run them."
            )
        if stats["cancelled"]:
            recommendations.append("The run was cancelled. Re-run with --resume to continue.")
        if self.dry_run:
            recommendations.append(
                "This was a dry run. No changes were made to the target project. "
                "Run without --dry-run to perform the migration."
            )
        if not recommendations and stats["processed_items"]:
            recommendations.append("Migration completed without failures.")
        return recommendations


def _export(results: list[MigrationResult], path: Path, kind: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    rows = [r.to_dict() for r in results]

    if path.suffix.lower() == ".json":
        path.write_text(json.dumps(rows, indent=2, default=str), encoding="utf-8")
    else:
        with open(path, "w", newline="", encoding="utf-8") as f:
            writer = csv.DictWriter(f, fieldnames=EXPORT_COLUMNS)
            writer.writeheader()
            for row in rows:
                row["patched_fields"] = ";".join(row["patched_fields"])
                writer.writerow(row)

    logger.info("records_exported", kind=kind, path=str(path), count=len(rows))
    return path


def generate_migration_report(
    progress: MigrationProgress,
    output_dir: str | Path = "./reports",
    dry_run: bool = False,
) -> dict[str, str]:
    """Write the JSON and Markdown reports plus failed/skipped exports.

    Returns:
        Dictionary mapping report kind to file path
    """
    output_path = Path(output_dir)
    output_path.mkdir(parents=True, exist_ok=True)

    report = MigrationReport(progress, dry_run=dry_run)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    base = f"migration_report_{timestamp}"

    files = {
        "json": str(output_path / f"{base}.json"),
        "markdown": str(output_path / f"{base}.md"),
    }
    report.generate_json(files["json"])
    report.generate_markdown(files["markdown"])

    if progress.failed_items:
        files["failed"] = str(report.export_failed(output_path / f"failed_{timestamp}.csv"))
    if progress.skipped_items:
        files["skipped"] = str(report.export_skipped(output_path / f"skipped_{timestamp}.csv"))

    logger.info("migration_reports_generated", files=files)
    return files
