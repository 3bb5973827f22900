"""Reporting and progress tracking for work item migration."""

from workitem_bridge.reporting.progress import ProgressTracker
from workitem_bridge.reporting.report import MigrationReport, generate_migration_report

__all__ = [
    "ProgressTracker",
    "MigrationReport",
    "generate_migration_report",
]
