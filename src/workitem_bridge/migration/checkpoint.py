"""
Checkpoint persistence for resumable runs.

A checkpoint is a small JSON document holding the last contiguous input
index that has been fully processed, the cross-reference map at that
point, and the created records that still owe completion steps. It is
rewritten atomically after every processed record.
"""

import json
import os
import tempfile
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from workitem_bridge.client.exceptions import CheckpointError
from workitem_bridge.utils.logging import get_logger, log_checkpoint

logger = get_logger(__name__)


@dataclass
class Checkpoint:
    """Persisted progress of a run."""

    last_checkpoint_index: int = -1
    id_map: dict[str, int] = field(default_factory=dict)
    timestamp: str | None = None
    # Source id -> completion steps still owed by a created record
    unfinished: dict[str, list[str]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "last_checkpoint_index": self.last_checkpoint_index,
            "id_map": self.id_map,
            "unfinished": self.unfinished,
            "timestamp": self.timestamp,
        }


class CheckpointManager:
    """
    Reads and writes the checkpoint file.

    Usage:
        manager = CheckpointManager(".workitem-bridge/checkpoint.json")
        checkpoint = manager.load()
        manager.save(12, {"123": 456})
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> Checkpoint | None:
        """Load the checkpoint, or None when there is none.

        Raises:
            CheckpointError: If the file exists but cannot be parsed
        """
        if not self.path.exists():
            return None

        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
            checkpoint = Checkpoint(
                last_checkpoint_index=int(data.get("last_checkpoint_index", -1)),
                id_map={str(k): int(v) for k, v in (data.get("id_map") or {}).items()},
                timestamp=data.get("timestamp"),
                unfinished={
                    str(k): [str(s) for s in v]
                    for k, v in (data.get("unfinished") or {}).items()
                },
            )
        except (OSError, ValueError, TypeError, AttributeError) as e:
            raise CheckpointError(f"Failed to read checkpoint {self.path}: {e}") from e

        logger.info(
            "checkpoint_loaded",
            checkpoint_path=str(self.path),
            last_index=checkpoint.last_checkpoint_index,
            mapped_records=len(checkpoint.id_map),
        )
        return checkpoint

    def save(
        self,
        last_checkpoint_index: int,
        id_map: dict[str, int],
        unfinished: dict[str, list[str]] | None = None,
    ) -> Checkpoint:
        """Atomically write a new checkpoint.

        Raises:
            CheckpointError: If the file cannot be written
        """
        checkpoint = Checkpoint(
            last_checkpoint_index=last_checkpoint_index,
            id_map=dict(id_map),
            timestamp=datetime.now(UTC).isoformat(),
            unfinished=dict(unfinished or {}),
        )

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(checkpoint.to_dict(), f, indent=2)
                os.replace(tmp_path, self.path)
            except BaseException:
                Path(tmp_path).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise CheckpointError(f"Failed to write checkpoint {self.path}: {e}") from e

        log_checkpoint(
            logger,
            str(self.path),
            last_checkpoint_index,
            len(checkpoint.id_map),
            unfinished_records=len(checkpoint.unfinished),
        )
        return checkpoint

    def clear(self) -> bool:
        """Delete the checkpoint file. Returns True if one was removed."""
        if not self.path.exists():
            return False
        try:
            self.path.unlink()
        except OSError as e:
            raise CheckpointError(f"Failed to delete checkpoint {self.path}: {e}") from e
        logger.info("checkpoint_cleared", checkpoint_path=str(self.path))
        return True
