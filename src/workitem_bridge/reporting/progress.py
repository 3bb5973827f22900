"""Progress display for migration runs.

``ProgressTracker`` is a callable that accepts ``ProgressSnapshot`` objects,
so it can be handed straight to the orchestrator as its progress callback.
"""

from tqdm import tqdm

from workitem_bridge.models import ProgressSnapshot
from workitem_bridge.utils.logging import get_logger

logger = get_logger(__name__)


class ProgressTracker:
    """Tracks and displays migration progress with a tqdm bar."""

    def __init__(self, total: int = 0, enable: bool = True, desc: str = "Migrating"):
        """Initialize progress tracker.

        Args:
            total: Number of records to process (0 if unknown yet)
            enable: Whether to show a progress bar (False for CI/automation)
            desc: Bar description
        """
        self.enable = enable
        self.bar: tqdm | None = None
        self.last: ProgressSnapshot | None = None

        if self.enable:
            self.bar = tqdm(
                total=total or None,
                desc=desc,
                unit="record",
                leave=True,
                bar_format="{desc}: {percentage:3.0f}%|{bar}| {n_fmt}/{total_fmt} [{elapsed}<{remaining}, {rate_fmt}]",
            )

    def __call__(self, snapshot: ProgressSnapshot) -> None:
        self.update(snapshot)

    def update(self, snapshot: ProgressSnapshot) -> None:
        """Advance the bar to ``snapshot``.

        Snapshots may arrive out of order from concurrent tasks; the bar
        never moves backwards.
        """
        if self.last is None or snapshot.processed_items >= self.last.processed_items:
            self.last = snapshot

        if not self.enable or self.bar is None:
            return

        if self.bar.total != snapshot.total_items:
            self.bar.total = snapshot.total_items
        delta = self.last.processed_items - self.bar.n
        if delta > 0:
            self.bar.update(delta)
        self.bar.set_postfix(
            ok=self.last.successful_items,
            skipped=self.last.skipped_items,
            failed=self.last.failed_items,
            mapped=self.last.mapped_records,
        )

    def close(self) -> None:
        """Close the progress bar."""
        if self.bar is not None:
            self.bar.close()
            self.bar = None
        if self.last is not None:
            logger.info(
                "progress_tracker_closed",
                processed=self.last.processed_items,
                failed=self.last.failed_items,
            )

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()
