"""Shared run state: the cross-reference map and progress counters.

Both objects are shared by every concurrently running record task. All
mutations happen under an ``asyncio.Lock`` owned by the aggregate being
mutated.
"""

import asyncio
import time
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field

from workitem_bridge.models import MigrationOutcome, MigrationResult, ProgressSnapshot
from workitem_bridge.utils.logging import get_logger

logger = get_logger(__name__)

# Steps that follow the creation of a target record
FINALIZE_STEP = "finalize"
RELATIONS_STEP = "relations"
CONTENT_STEP = "content"
COMPLETION_STEPS = frozenset({FINALIZE_STEP, RELATIONS_STEP, CONTENT_STEP})


class CrossReferenceMap:
    """Source id -> target id map shared across a run.

    The map only grows. ``register`` keeps the first target id recorded for
    a source id, so concurrent callers always agree on one target record.
    Callers about to create a record hold ``creation_lock(source_id)`` and
    re-check the map inside it.

    A record that was created but whose finalisation, relations or content
    were interrupted stays listed as unfinished until a later attempt
    claims and completes the remaining steps.

    Usage:
        async with id_map.creation_lock(source_id):
            target_id = id_map.get(source_id)
            if target_id is None:
                target_id = await id_map.register(source_id, await create())
    """

    def __init__(
        self,
        initial: Mapping[str, int] | None = None,
        unfinished: Mapping[str, Iterable[str]] | None = None,
    ):
        self._map: dict[str, int] = {str(k): int(v) for k, v in (initial or {}).items()}
        self._unfinished: dict[str, set[str]] = {
            str(k): set(steps) & COMPLETION_STEPS
            for k, steps in (unfinished or {}).items()
            if str(k) in self._map and set(steps) & COMPLETION_STEPS
        }
        self._lock = asyncio.Lock()
        self._creation_locks: dict[str, asyncio.Lock] = {}

    def get(self, source_id: str) -> int | None:
        return self._map.get(str(source_id))

    def __contains__(self, source_id: object) -> bool:
        return str(source_id) in self._map

    def __len__(self) -> int:
        return len(self._map)

    def __iter__(self) -> Iterator[str]:
        return iter(self._map)

    def items(self) -> list[tuple[str, int]]:
        return list(self._map.items())

    def to_dict(self) -> dict[str, int]:
        return dict(self._map)

    async def register(self, source_id: str, target_id: int) -> int:
        """Record ``source_id -> target_id`` unless a mapping already exists.

        Returns:
            The target id now associated with ``source_id``
        """
        source_id = str(source_id)
        async with self._lock:
            existing = self._map.get(source_id)
            if existing is not None:
                if existing != target_id:
                    logger.warning(
                        "mapping_conflict",
                        source_id=source_id,
                        kept_target_id=existing,
                        ignored_target_id=target_id,
                    )
                return existing
            self._map[source_id] = target_id
            return target_id

    def creation_lock(self, source_id: str) -> asyncio.Lock:
        """Lock serializing record creation for one source id."""
        return self._creation_locks.setdefault(str(source_id), asyncio.Lock())

    # Created but not finished

    def mark_unfinished(self, source_id: str, steps: Iterable[str]) -> None:
        """Record completion steps still owed by a created target record."""
        source_id = str(source_id)
        steps = set(steps) & COMPLETION_STEPS
        if not steps or source_id not in self._map:
            return
        self._unfinished.setdefault(source_id, set()).update(steps)
        logger.info("record_unfinished", source_id=source_id, steps=sorted(steps))

    def pending_steps(self, source_id: str) -> frozenset[str]:
        """Steps still owed by ``source_id``, without claiming them."""
        return frozenset(self._unfinished.get(str(source_id), ()))

    def claim_unfinished(self, source_id: str) -> set[str]:
        """Take ownership of the steps still owed by ``source_id``.

        The entry is removed, so only one caller resumes a record. A caller
        that cannot finish puts the remaining steps back with
        ``mark_unfinished``.
        """
        return self._unfinished.pop(str(source_id), set())

    def unfinished(self) -> dict[str, list[str]]:
        return {k: sorted(v) for k, v in self._unfinished.items()}


@dataclass
class MigrationProgress:
    """Aggregate progress of one run.

    Owned by the batch orchestrator. Concurrent tasks mutate it only
    through ``record_locked`` while holding ``lock``.
    """

    total_items: int = 0
    processed_items: int = 0
    successful_items: int = 0
    failed_items: int = 0
    skipped_items: int = 0
    last_checkpoint_index: int = -1
    resumed_items: int = 0
    id_map: CrossReferenceMap = field(default_factory=CrossReferenceMap)
    results: list[MigrationResult] = field(default_factory=list)
    started_at: float = field(default_factory=time.monotonic)
    cancelled: bool = False
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    _done_indices: set[int] = field(default_factory=set, repr=False)

    @property
    def lock(self) -> asyncio.Lock:
        return self._lock

    @property
    def created_items(self) -> int:
        return sum(1 for r in self.results if r.outcome is MigrationOutcome.CREATED)

    @property
    def patched_items(self) -> int:
        return sum(1 for r in self.results if r.outcome is MigrationOutcome.PATCHED)

    def record_locked(self, index: int | None, result: MigrationResult) -> None:
        """Apply ``result`` for input ``index``. Caller holds ``lock``.

        ``index`` is None for records outside the input list (resumed
        leftovers); they count but do not move the checkpoint watermark.
        """
        self.processed_items += 1
        if result.outcome is MigrationOutcome.FAILED:
            self.failed_items += 1
        elif result.outcome is MigrationOutcome.SKIPPED:
            self.skipped_items += 1
        else:
            self.successful_items += 1
        self.results.append(result)

        if index is None:
            return
        # Highest index with every earlier item done
        self._done_indices.add(index)
        while self.last_checkpoint_index + 1 in self._done_indices:
            self.last_checkpoint_index += 1
            self._done_indices.discard(self.last_checkpoint_index)

    def snapshot(self, last_result: MigrationResult | None = None) -> ProgressSnapshot:
        return ProgressSnapshot(
            total_items=self.total_items,
            processed_items=self.processed_items,
            successful_items=self.successful_items,
            failed_items=self.failed_items,
            skipped_items=self.skipped_items,
            mapped_records=len(self.id_map),
            last_result=last_result,
            elapsed_seconds=time.monotonic() - self.started_at,
        )

    def failed_results(self) -> list[MigrationResult]:
        return [r for r in self.results if r.outcome is MigrationOutcome.FAILED]

    def skipped_results(self) -> list[MigrationResult]:
        return [r for r in self.results if r.outcome is MigrationOutcome.SKIPPED]
