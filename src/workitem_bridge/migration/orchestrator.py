"""
Batch orchestration of a migration run.

The orchestrator pre-resolves existence for every requested record, keeping
only the match, then processes the input in fixed-size batches. Batches run
strictly in order; records inside a batch run concurrently under a shared
semaphore. Each record is fetched again when it is processed. After every
record the progress counters are updated, a snapshot is handed to the
progress callback and a checkpoint is written, so an interrupted run can
resume without re-creating anything. Records created but left unfinished
by an earlier run are completed first.
"""

import asyncio
from collections.abc import Callable, Iterable
from typing import Any

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from workitem_bridge.client.exceptions import (
    RETRYABLE_ERRORS,
    CheckpointError,
    ConfigurationError,
    MappingError,
    MigrationAbortedError,
    NetworkError,
    WorkItemBridgeError,
)
from workitem_bridge.client.protocols import SourceConnector, TargetConnector
from workitem_bridge.config import (
    MigrationConfig,
    MigrationOptions,
    PerformanceConfig,
    WorkflowConfig,
)
from workitem_bridge.migration.checkpoint import CheckpointManager
from workitem_bridge.migration.comparator import FieldComparator
from workitem_bridge.migration.content import ContentMigrator
from workitem_bridge.migration.existence import ExistenceResolver
from workitem_bridge.migration.hierarchy import HierarchyMigrator, child_link
from workitem_bridge.migration.mapping import FieldMappingTransformer
from workitem_bridge.migration.rich_content import (
    DESCRIPTION_FIELD,
    placeholder_keys,
    relation_urls,
    replace_placeholders,
)
from workitem_bridge.migration.state import (
    COMPLETION_STEPS,
    RELATIONS_STEP,
    CrossReferenceMap,
    MigrationProgress,
)
from workitem_bridge.migration.transitions import (
    STATE_FIELD,
    TransitionTable,
    WorkflowTransitionController,
    normalize_state,
)
from workitem_bridge.migration.writer import RecordWriter
from workitem_bridge.models import (
    ExistenceMatch,
    MigrationOutcome,
    MigrationResult,
    ProgressSnapshot,
    SourceRecord,
    TargetFieldSet,
    TargetRecord,
    TransitionResult,
)
from workitem_bridge.utils.logging import get_logger, log_batch_progress, log_record_error
from workitem_bridge.utils.retry import record_retry_wait

logger = get_logger(__name__)

ProgressCallback = Callable[[ProgressSnapshot], None]


def _result(
    record: SourceRecord | None,
    source_id: str,
    outcome: MigrationOutcome,
    target_id: int | None = None,
    reason: str | None = None,
    patched_fields: Iterable[str] = (),
) -> MigrationResult:
    return MigrationResult(
        source_id=record.object_id if record else source_id,
        outcome=outcome,
        formatted_id=record.formatted_id if record else None,
        target_id=target_id,
        reason=reason,
        patched_fields=tuple(patched_fields),
    )


class BatchOrchestrator:
    """
    Drives a complete migration run.

    ``pause``, ``resume`` and ``cancel`` are cooperative: they flip flags
    that running tasks check between records, and may be called from any
    coroutine or signal handler on the event loop thread.

    Usage:
        orchestrator = BatchOrchestrator.from_config(config, source, target, transformer)
        progress = await orchestrator.run(["12345", "US678"])
        print(progress.successful_items, progress.failed_items)
    """

    def __init__(
        self,
        source: SourceConnector,
        target: TargetConnector,
        transformer: FieldMappingTransformer,
        performance: PerformanceConfig | None = None,
        options: MigrationOptions | None = None,
        workflow: WorkflowConfig | None = None,
        checkpoint: CheckpointManager | None = None,
        resume: bool = False,
        progress_callback: ProgressCallback | None = None,
        comparator: FieldComparator | None = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            source: Source connector
            target: Target connector
            transformer: Field mapping transformer
            performance: Batch size, concurrency and retry tuning
            options: Migration behaviour switches
            workflow: Transition table and initial state
            checkpoint: Checkpoint manager (no checkpointing when None)
            resume: Continue from the checkpoint when one exists
            progress_callback: Called with a snapshot after every record
            comparator: Field comparator for existing records
        """
        self.source = source
        self.target = target
        self.transformer = transformer
        self.performance = performance or PerformanceConfig()
        self.options = options or MigrationOptions()
        self.workflow = workflow or WorkflowConfig()
        self.checkpoint = checkpoint
        self.resume_from_checkpoint = resume
        self.progress_callback = progress_callback
        self.comparator = comparator or FieldComparator()

        self.resolver = ExistenceResolver(target)
        self.transitions = WorkflowTransitionController(
            target,
            TransitionTable.from_config(self.workflow),
            initial_state=self.workflow.initial_state,
            bypass_rules=self.options.bypass_rules,
        )
        self.writer = RecordWriter(
            target, transformer, self.transitions, bypass_rules=self.options.bypass_rules
        )
        self.content = ContentMigrator(
            target, source, attachment_concurrency=self.performance.attachment_concurrency
        )

        self.progress = MigrationProgress()
        self.hierarchy = self._build_hierarchy(self.progress.id_map)
        self._prefetched: dict[str, ExistenceMatch] = {}
        self._paused = False
        self._cancelled = False
        self._abort_error: Exception | None = None

    @classmethod
    def from_config(
        cls,
        config: MigrationConfig,
        source: SourceConnector,
        target: TargetConnector,
        transformer: FieldMappingTransformer,
        progress_callback: ProgressCallback | None = None,
        resume: bool | None = None,
    ) -> "BatchOrchestrator":
        """Build an orchestrator from the application configuration."""
        return cls(
            source=source,
            target=target,
            transformer=transformer,
            performance=config.performance,
            options=config.options,
            workflow=config.workflow,
            checkpoint=CheckpointManager(config.state.checkpoint_path),
            resume=config.state.resume if resume is None else resume,
            progress_callback=progress_callback,
        )

    def _build_hierarchy(self, id_map: CrossReferenceMap) -> HierarchyMigrator:
        return HierarchyMigrator(
            self.source,
            self.target,
            self.resolver,
            self.writer,
            self.content,
            id_map,
            self.options,
        )

    # Control

    def pause(self) -> None:
        """Stop starting new records until ``resume`` is called."""
        if not self._paused:
            self._paused = True
            logger.info("migration_paused")

    def resume(self) -> None:
        """Continue after ``pause``."""
        if self._paused:
            self._paused = False
            logger.info("migration_resumed")

    def cancel(self) -> None:
        """Stop after the records currently in flight."""
        if not self._cancelled:
            self._cancelled = True
            logger.info("migration_cancel_requested")

    @property
    def is_paused(self) -> bool:
        return self._paused

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    def _should_stop(self) -> bool:
        return self._cancelled or self._abort_error is not None

    async def _wait_if_paused(self) -> None:
        while self._paused and not self._should_stop():
            await asyncio.sleep(self.performance.pause_poll_interval)

    # Run

    async def run(self, source_ids: Iterable[str]) -> MigrationProgress:
        """Migrate ``source_ids``.

        Args:
            source_ids: Source ObjectIDs or FormattedIDs, in processing order

        Returns:
            Final MigrationProgress (also available as ``self.progress``)

        Raises:
            MigrationAbortedError: On a mapping or configuration failure
        """
        ids = list(dict.fromkeys(str(i) for i in source_ids))
        start_index = self._prepare_progress(ids)
        pending = list(enumerate(ids))[start_index:]
        leftovers: list[str] = []
        if not self.options.dry_run:
            # Ids at or before the checkpoint index are not processed again
            pending_ids = {source_id for _, source_id in pending}
            leftovers = [s for s in self.progress.id_map.unfinished() if s not in pending_ids]
        self.progress.total_items += len(leftovers)

        logger.info(
            "migration_started",
            total=len(ids),
            pending=len(pending),
            resumed_items=start_index,
            batch_size=self.performance.batch_size,
            max_concurrent=self.performance.max_concurrent,
            unfinished=len(leftovers),
            dry_run=self.options.dry_run,
        )

        if leftovers and not self._should_stop():
            await self._resume_leftovers(leftovers)

        if pending and not self._should_stop():
            await self._precheck([source_id for _, source_id in pending])

        semaphore = asyncio.Semaphore(self.performance.max_concurrent)
        batch_size = self.performance.batch_size
        batch_count = (len(pending) + batch_size - 1) // batch_size

        async def process_with_semaphore(index: int, source_id: str) -> None:
            async with semaphore:
                await self._wait_if_paused()
                if self._should_stop():
                    return
                result = await self._process(source_id)
                await self._complete(index, result)

        for batch_number, offset in enumerate(range(0, len(pending), batch_size), start=1):
            if self._should_stop():
                break

            batch = pending[offset : offset + batch_size]
            outcomes = await asyncio.gather(
                *(process_with_semaphore(index, source_id) for index, source_id in batch),
                return_exceptions=True,
            )
            for (index, source_id), outcome in zip(batch, outcomes, strict=True):
                if isinstance(outcome, BaseException):
                    logger.error(
                        "record_task_crashed", index=index, source_id=source_id, error=str(outcome)
                    )

            log_batch_progress(
                logger,
                batch=batch_number,
                batches=batch_count,
                processed=self.progress.processed_items,
                total=self.progress.total_items,
            )

            if batch_number < batch_count and not self._should_stop():
                await asyncio.sleep(self.performance.inter_batch_delay)

        self.progress.cancelled = self._cancelled
        self._prefetched.clear()

        if self._abort_error is not None:
            self._save_checkpoint()
            logger.error("migration_aborted", error=str(self._abort_error))
            raise MigrationAbortedError(
                f"Migration aborted: {self._abort_error}", cause=self._abort_error
            )

        logger.info(
            "migration_finished",
            processed=self.progress.processed_items,
            successful=self.progress.successful_items,
            failed=self.progress.failed_items,
            skipped=self.progress.skipped_items,
            mapped_records=len(self.progress.id_map),
            cancelled=self._cancelled,
        )
        return self.progress

    def _prepare_progress(self, ids: list[str]) -> int:
        """Reset progress for a new run and apply the checkpoint when resuming.

        Returns:
            Index of the first input id still to process
        """
        id_map = CrossReferenceMap()
        start_index = 0

        if self.resume_from_checkpoint and self.checkpoint is not None:
            saved = self.checkpoint.load()
            if saved is not None:
                id_map = CrossReferenceMap(saved.id_map, saved.unfinished)
                start_index = min(saved.last_checkpoint_index + 1, len(ids))
                logger.info(
                    "migration_resuming",
                    last_checkpoint_index=saved.last_checkpoint_index,
                    mapped_records=len(id_map),
                    unfinished_records=len(id_map.unfinished()),
                )

        self.progress = MigrationProgress(
            total_items=len(ids) - start_index,
            last_checkpoint_index=start_index - 1,
            resumed_items=start_index,
            id_map=id_map,
        )
        self.hierarchy = self._build_hierarchy(id_map)
        self._abort_error = None
        return start_index

    async def _resume_leftovers(self, source_ids: list[str]) -> None:
        """Finish records an earlier run created but did not complete."""
        logger.info("unfinished_records_resuming", count=len(source_ids))
        for source_id in source_ids:
            if self._should_stop():
                return
            await self._complete(None, await self._process(source_id))

    async def _precheck(self, source_ids: list[str]) -> None:
        """Resolve existence of every pending record once, with bounded concurrency.

        Only the match is kept; the record is fetched again when it is
        processed. Failures are not cached.
        """
        semaphore = asyncio.Semaphore(self.performance.existence_check_concurrency)

        async def check_with_semaphore(source_id: str) -> None:
            async with semaphore:
                if self._should_stop():
                    return
                try:
                    record = await self.source.fetch_record(source_id)
                except WorkItemBridgeError as e:
                    logger.warning("precheck_fetch_failed", source_id=source_id, error=str(e))
                    return
                if record is None:
                    return
                self._prefetched[source_id] = await self.resolver.resolve(record)

        await asyncio.gather(*(check_with_semaphore(s) for s in source_ids))
        existing = sum(1 for match in self._prefetched.values() if match.exists)
        logger.info(
            "existence_precheck_completed",
            checked=len(source_ids),
            resolved=len(self._prefetched),
            existing=existing,
        )

    async def _complete(self, index: int | None, result: MigrationResult) -> None:
        async with self.progress.lock:
            self.progress.record_locked(index, result)
            snapshot = self.progress.snapshot(result)
            self._save_checkpoint()

        if self.progress_callback is not None:
            try:
                self.progress_callback(snapshot)
            except Exception as e:
                logger.warning("progress_callback_failed", error=str(e))

    def _save_checkpoint(self) -> None:
        if self.checkpoint is None or self.options.dry_run:
            return
        try:
            self.checkpoint.save(
                self.progress.last_checkpoint_index,
                self.progress.id_map.to_dict(),
                self.progress.id_map.unfinished(),
            )
        except CheckpointError as e:
            logger.error("checkpoint_save_failed", error=str(e))

    # Per record

    async def _process(self, source_id: str) -> MigrationResult:
        """Migrate one record, retrying transport failures."""
        attempts = self.performance.max_retries + 1
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(attempts),
                wait=record_retry_wait(
                    self.performance.retry_delay, self.performance.connection_retry_delay
                ),
                retry=retry_if_exception_type(RETRYABLE_ERRORS),
                reraise=True,
            ):
                with attempt:
                    number = attempt.retry_state.attempt_number
                    if number > 1:
                        logger.info(
                            "record_retry", source_id=source_id, attempt=number, max_attempts=attempts
                        )
                    return await self._migrate_record(source_id)
        except (MappingError, ConfigurationError) as e:
            self._abort_error = e
            return _result(None, source_id, MigrationOutcome.FAILED, reason=str(e))
        except RETRYABLE_ERRORS as e:
            logger.warning("record_retries_exhausted", source_id=source_id, error=str(e))
            return _result(
                None,
                source_id,
                MigrationOutcome.FAILED,
                reason=f"Transport error after {attempts} attempts: {e}",
            )
        except WorkItemBridgeError as e:
            logger.warning("record_failed", source_id=source_id, error=str(e))
            return _result(None, source_id, MigrationOutcome.FAILED, reason=str(e))
        except Exception as e:
            log_record_error(logger, e, source_id, stage="migrate")
            return _result(None, source_id, MigrationOutcome.FAILED, reason=f"Unexpected error: {e}")
        raise AssertionError("retry loop exited without a result")

    async def _migrate_record(self, source_id: str) -> MigrationResult:
        match = self._prefetched.pop(source_id, None)
        record = await self.source.fetch_record(source_id)
        if record is None:
            return _result(None, source_id, MigrationOutcome.FAILED, reason="Source record not found")

        mapped = self.progress.id_map.get(record.object_id)
        if mapped is None and match is None:
            match = await self.resolver.resolve(record)

        if self.options.dry_run:
            return self._dry_run_result(record, mapped, match)

        if mapped is not None:
            return await self._migrate_mapped(record, mapped)

        if match is not None and match.exists and match.target_id is not None:
            target_id = await self.progress.id_map.register(record.object_id, match.target_id)
            snapshot = match.snapshot if target_id == match.target_id else None
            return await self._migrate_existing(record, target_id, snapshot)

        return await self._migrate_new(record)

    def _dry_run_result(
        self, record: SourceRecord, mapped: int | None, match: ExistenceMatch | None
    ) -> MigrationResult:
        self.writer.prepare(record)
        target_id = mapped if mapped is not None else (match.target_id if match else None)
        if target_id is not None:
            return _result(record, record.object_id, MigrationOutcome.SKIPPED, target_id, "Dry run")
        return _result(record, record.object_id, MigrationOutcome.CREATED, reason="Dry run")

    async def _migrate_mapped(self, record: SourceRecord, target_id: int) -> MigrationResult:
        """Finish a record created earlier but left unfinished, or reconcile it."""
        id_map = self.progress.id_map
        pending = id_map.pending_steps(record.object_id)
        if not pending:
            return await self._migrate_existing(record, target_id)

        # Parent first; never while owning this record's steps
        parent_target = None
        if RELATIONS_STEP in pending:
            parent_target = await self.hierarchy.ensure_parent(record)

        steps = id_map.claim_unfinished(record.object_id)
        if not steps:
            return await self._migrate_existing(record, target_id)

        logger.info(
            "record_resuming",
            source_id=record.object_id,
            formatted_id=record.formatted_id,
            target_id=target_id,
            steps=sorted(steps),
        )
        transition = await self.hierarchy.finish(
            record, target_id, steps, link_to=child_link(parent_target)
        )
        return self._created_result(record, target_id, transition)

    def _created_result(
        self, record: SourceRecord, target_id: int, transition: TransitionResult | None
    ) -> MigrationResult:
        if transition is not None and not transition.success:
            return _result(
                record, record.object_id, MigrationOutcome.FAILED, target_id, transition.message
            )
        return _result(record, record.object_id, MigrationOutcome.CREATED, target_id)

    async def _migrate_existing(
        self, record: SourceRecord, target_id: int, snapshot: TargetRecord | None = None
    ) -> MigrationResult:
        """Bring an existing target record in line with the source."""
        if not self.options.enable_difference_patch:
            return _result(
                record, record.object_id, MigrationOutcome.SKIPPED, target_id, "Already exists"
            )

        lock = self.progress.id_map.creation_lock(record.object_id)
        if lock.locked():
            # Another task is still finishing this record
            snapshot = None
        async with lock:
            return await self._reconcile(record, target_id, snapshot)

    def _desired_fields(
        self, record: SourceRecord, fieldset: TargetFieldSet, snapshot: TargetRecord
    ) -> dict[str, Any]:
        desired = fieldset.merged()
        description = desired.get(DESCRIPTION_FIELD)
        if placeholder_keys(description):
            # Placeholders resolve to the files already attached to the target
            urls = relation_urls(snapshot.relations, record.attachments)
            desired[DESCRIPTION_FIELD], _ = replace_placeholders(str(description), urls)
        return desired

    async def _reconcile(
        self, record: SourceRecord, target_id: int, snapshot: TargetRecord | None
    ) -> MigrationResult:
        fieldset = self.writer.prepare(record)
        if snapshot is None:
            snapshot = await self.target.get_record(target_id)

        differences = self.comparator.compute_differences(
            snapshot.fields, self._desired_fields(record, fieldset, snapshot)
        )
        # The state goes through the transition controller, never a plain patch
        desired_state = differences.pop(STATE_FIELD, None)

        patched: list[str] = []
        if differences:
            await self.target.patch_fields(
                target_id, differences, bypass_rules=self.options.bypass_rules
            )
            patched.extend(sorted(differences))

        if desired_state is not None:
            if fieldset.target_type == "Task":
                desired_state = normalize_state(str(desired_state))
            transition = await self.transitions.transition(
                target_id, str(desired_state), current_state=snapshot.state
            )
            if transition.transient:
                raise NetworkError(transition.message)
            if not transition.success:
                return _result(
                    record,
                    record.object_id,
                    MigrationOutcome.FAILED,
                    target_id,
                    transition.message,
                    patched,
                )
            if transition.final_state != snapshot.state:
                patched.append(STATE_FIELD)

        if not patched:
            return _result(
                record, record.object_id, MigrationOutcome.SKIPPED, target_id, "No changes detected"
            )

        logger.info(
            "record_patched",
            source_id=record.object_id,
            formatted_id=record.formatted_id,
            target_id=target_id,
            fields=patched,
        )
        return _result(record, record.object_id, MigrationOutcome.PATCHED, target_id, None, patched)

    async def _migrate_new(self, record: SourceRecord) -> MigrationResult:
        """Create a record with its parent, children, test cases and content."""
        fieldset = self.writer.prepare(record)

        # Parent first; never while holding this record's creation lock
        parent_target = await self.hierarchy.ensure_parent(record)

        target_id, created, transition = await self.hierarchy.create_once(record, fieldset)
        if not created:
            return await self._migrate_mapped(record, target_id)

        transition = await self.hierarchy.finish(
            record,
            target_id,
            COMPLETION_STEPS,
            transition,
            finalized=True,
            link_to=child_link(parent_target),
        )
        return self._created_result(record, target_id, transition)
