"""Hierarchy migration: parents, children and linked test cases.

Related records are resolved through the shared cross-reference map before
anything is created, so a record reachable through several branches (two
siblings sharing a parent, a diamond, or malformed cyclic source data) is
created at most once. Recursion is bounded by an explicit ancestry/visited
set and a configurable depth cap.

Creating a record is followed by three completion steps: finalisation,
relations and content. Steps that a transport error interrupts are left in
the cross-reference map as unfinished and the error is raised, so the
record-level retry (or a later run) resumes the record instead of treating
it as complete. Permanent errors on related records are logged and skipped.
"""

from collections.abc import Iterable

from workitem_bridge.client.exceptions import RETRYABLE_ERRORS, APIError, NetworkError
from workitem_bridge.client.protocols import SourceConnector, TargetConnector
from workitem_bridge.config import MigrationOptions
from workitem_bridge.migration.content import ContentMigrator
from workitem_bridge.migration.existence import ExistenceResolver
from workitem_bridge.migration.state import (
    COMPLETION_STEPS,
    CONTENT_STEP,
    FINALIZE_STEP,
    RELATIONS_STEP,
    CrossReferenceMap,
)
from workitem_bridge.migration.writer import RecordWriter
from workitem_bridge.models import LinkKind, SourceRecord, TargetFieldSet, TransitionResult
from workitem_bridge.utils.logging import get_logger

logger = get_logger(__name__)


def child_link(parent_target: int | None) -> tuple[int, LinkKind] | None:
    """``link_to`` argument placing a record under ``parent_target``."""
    return (parent_target, LinkKind.CHILD) if parent_target is not None else None


class HierarchyMigrator:
    """Ensures related records exist in the target and links them.

    Args:
        source: Source connector
        target: Target connector
        resolver: Existence resolver for related records
        writer: Record writer used to create missing related records
        content: Comment/attachment migrator for created related records
        id_map: Cross-reference map shared with the orchestrator
        options: Migration options (which relations to follow, depth cap)
    """

    def __init__(
        self,
        source: SourceConnector,
        target: TargetConnector,
        resolver: ExistenceResolver,
        writer: RecordWriter,
        content: ContentMigrator,
        id_map: CrossReferenceMap,
        options: MigrationOptions | None = None,
    ):
        self.source = source
        self.target = target
        self.resolver = resolver
        self.writer = writer
        self.content = content
        self.id_map = id_map
        self.options = options or MigrationOptions()

    @property
    def max_depth(self) -> int:
        return self.options.max_hierarchy_depth

    async def create_once(
        self, record: SourceRecord, fieldset: TargetFieldSet
    ) -> tuple[int, bool, TransitionResult | None]:
        """Create and finalize ``record`` unless another task already did.

        The map is re-checked under the per-record creation lock. The lock
        is held until the new record has its post fields and workflow
        state, so no other task works on a half-finished record. Should
        finalisation raise, every completion step is marked unfinished
        before the error propagates.

        Returns:
            ``(target_id, created, transition)``; ``transition`` is None
            when nothing was created or no state is mapped
        """
        async with self.id_map.creation_lock(record.object_id):
            existing = self.id_map.get(record.object_id)
            if existing is not None:
                return existing, False, None
            target_id = await self.writer.create(record, fieldset)
            target_id = await self.id_map.register(record.object_id, target_id)
            try:
                transition = await self.writer.finalize(record, target_id, fieldset)
            except Exception:
                self.id_map.mark_unfinished(record.object_id, COMPLETION_STEPS)
                raise
            return target_id, True, transition

    async def finish(
        self,
        record: SourceRecord,
        target_id: int,
        steps: Iterable[str],
        transition: TransitionResult | None = None,
        finalized: bool = False,
        link_to: tuple[int, LinkKind] | None = None,
        recurse: bool = True,
        visited: set[str] | None = None,
        depth: int = 0,
    ) -> TransitionResult | None:
        """Run the completion steps owed by a created record.

        ``steps`` belong to the caller: either all of them straight after
        ``create_once``, or the ones taken with ``claim_unfinished``.
        Whatever does not complete goes back into the map.

        Args:
            record: Source record
            target_id: Its target record
            steps: Completion steps to run
            transition: Result of a finalisation that already ran
            finalized: ``create_once`` ran finalisation in this attempt; a
                transient ``transition`` then stays owed for the retry
            link_to: ``(owner_target, kind)`` link to add as a relation
            recurse: Follow children and test cases of ``record``
            visited: Source ids already handled on this walk
            depth: Current recursion depth

        Returns:
            The finalisation result, or None when no state is mapped

        Raises:
            NetworkError: When finalisation was interrupted by a transport
                error; raised after the other steps ran
        """
        remaining = set(steps)
        try:
            if FINALIZE_STEP in remaining:
                if not finalized:
                    async with self.id_map.creation_lock(record.object_id):
                        transition = await self.writer.finalize(
                            record, target_id, self.writer.prepare(record), resume=True
                        )
                if transition is None or not transition.transient:
                    remaining.discard(FINALIZE_STEP)

            if RELATIONS_STEP in remaining:
                if link_to is not None:
                    await self.link(link_to[0], target_id, link_to[1])
                if recurse:
                    visited = visited if visited is not None else {record.object_id}
                    await self.migrate_children(target_id, record, visited, depth)
                    await self.migrate_linked(target_id, record, visited, depth)
                remaining.discard(RELATIONS_STEP)

            if CONTENT_STEP in remaining:
                await self._migrate_content(record, target_id)
                remaining.discard(CONTENT_STEP)
        finally:
            self.id_map.mark_unfinished(record.object_id, remaining)

        if FINALIZE_STEP in remaining:
            raise NetworkError(f"{record.label} not finalized: {transition.message}")
        return transition

    async def link(self, parent_id: int, child_id: int, kind: LinkKind) -> bool:
        """Link two target records.

        Rejected links are logged and reported as False. Transport errors
        propagate so the owning step can be retried.
        """
        try:
            return await self.target.link_records(parent_id, child_id, kind.value)
        except RETRYABLE_ERRORS:
            raise
        except APIError as e:
            logger.warning(
                "hierarchy_link_failed",
                parent_id=parent_id,
                child_id=child_id,
                kind=kind.name,
                error=str(e),
            )
            return False

    async def _fetch(self, source_id: str, relation: str, owner: SourceRecord) -> SourceRecord | None:
        try:
            related = await self.source.fetch_record(source_id)
        except RETRYABLE_ERRORS:
            raise
        except APIError as e:
            logger.warning(
                "related_record_fetch_failed",
                source_id=source_id,
                relation=relation,
                owner_id=owner.object_id,
                error=str(e),
            )
            return None
        if related is None:
            logger.warning(
                "related_record_not_found",
                source_id=source_id,
                relation=relation,
                owner_id=owner.object_id,
            )
        return related

    def _report_transition(
        self, record: SourceRecord, target_id: int, result: TransitionResult | None
    ) -> None:
        if result is not None and not result.success and not result.transient:
            logger.warning(
                "related_record_transition_failed",
                source_id=record.object_id,
                target_id=target_id,
                expected_state=result.expected_state,
                actual_state=result.actual_state,
            )

    async def _migrate_content(self, record: SourceRecord, target_id: int) -> None:
        await self.content.migrate(
            record,
            target_id,
            comments=self.options.migrate_comments,
            attachments=self.options.migrate_attachments,
        )

    async def _resume(
        self,
        record: SourceRecord,
        target_id: int,
        link_to: tuple[int, LinkKind] | None = None,
        recurse: bool = True,
        visited: set[str] | None = None,
        depth: int = 0,
    ) -> None:
        steps = self.id_map.claim_unfinished(record.object_id)
        if not steps:
            return
        logger.info(
            "related_record_resuming",
            source_id=record.object_id,
            target_id=target_id,
            steps=sorted(steps),
        )
        transition = await self.finish(
            record, target_id, steps, link_to=link_to, recurse=recurse, visited=visited, depth=depth
        )
        self._report_transition(record, target_id, transition)

    # Parents

    async def ensure_parent(
        self,
        record: SourceRecord,
        depth: int = 0,
        ancestry: set[str] | None = None,
    ) -> int | None:
        """Make sure the parent of ``record`` exists in the target.

        The parent's own parent is resolved first, so a whole ancestor
        chain is created top-down. A mapped parent with unfinished steps is
        completed before it is returned.

        Args:
            record: Record whose parent is needed
            depth: Current recursion depth
            ancestry: Source ids already on this chain (cycle guard)

        Returns:
            Target id of the parent, or None when there is no usable parent
        """
        parent_id = record.parent
        if not parent_id or not self.options.migrate_parents:
            return None

        ancestry = set(ancestry or ()) | {record.object_id}
        if parent_id in ancestry:
            logger.warning(
                "hierarchy_cycle_detected",
                source_id=record.object_id,
                parent_id=parent_id,
                relation="parent",
            )
            return None
        if depth >= self.max_depth:
            logger.warning(
                "hierarchy_depth_exceeded",
                source_id=record.object_id,
                parent_id=parent_id,
                depth=depth,
            )
            return None

        mapped = self.id_map.get(parent_id)
        if mapped is not None and not self.id_map.pending_steps(parent_id):
            return mapped

        parent = await self._fetch(parent_id, "parent", record)
        if parent is None:
            return mapped

        if mapped is not None:
            grandparent_target = None
            if RELATIONS_STEP in self.id_map.pending_steps(parent_id):
                grandparent_target = await self.ensure_parent(parent, depth + 1, ancestry)
            await self._resume(parent, mapped, child_link(grandparent_target), recurse=False)
            return mapped

        match = await self.resolver.resolve(parent)
        if match.exists and match.target_id is not None:
            return await self.id_map.register(parent.object_id, match.target_id)

        grandparent_target = await self.ensure_parent(parent, depth + 1, ancestry)

        fieldset = self.writer.prepare(parent)
        try:
            target_id, created, transition = await self.create_once(parent, fieldset)
        except RETRYABLE_ERRORS:
            raise
        except APIError as e:
            logger.warning(
                "parent_creation_failed",
                source_id=record.object_id,
                parent_id=parent_id,
                error=str(e),
            )
            return None

        if created:
            self._report_transition(parent, target_id, transition)
            await self.finish(
                parent,
                target_id,
                COMPLETION_STEPS,
                transition,
                finalized=True,
                link_to=child_link(grandparent_target),
                recurse=False,
            )
            logger.info(
                "parent_created",
                source_id=parent.object_id,
                formatted_id=parent.formatted_id,
                target_id=target_id,
                child_id=record.object_id,
            )
        return target_id

    # Children and linked records

    async def migrate_children(
        self,
        target_id: int,
        record: SourceRecord,
        visited: set[str] | None = None,
        depth: int = 0,
    ) -> list[int]:
        """Create (or find) and link the children of ``record``.

        Returns:
            Target ids of all linked children
        """
        if not self.options.migrate_children or not record.children:
            return []
        return await self._migrate_related(
            target_id, record, record.children, LinkKind.CHILD, visited, depth, recurse=True
        )

    async def migrate_linked(
        self,
        target_id: int,
        record: SourceRecord,
        visited: set[str] | None = None,
        depth: int = 0,
    ) -> list[int]:
        """Create (or find) and link the test cases of ``record``."""
        if not self.options.migrate_test_cases or not record.test_cases:
            return []
        return await self._migrate_related(
            target_id, record, record.test_cases, LinkKind.TESTED_BY, visited, depth, recurse=False
        )

    async def _migrate_related(
        self,
        target_id: int,
        record: SourceRecord,
        related_ids: tuple[str, ...],
        kind: LinkKind,
        visited: set[str] | None,
        depth: int,
        recurse: bool,
    ) -> list[int]:
        visited = visited if visited is not None else set()
        visited.add(record.object_id)

        if depth >= self.max_depth:
            logger.warning(
                "hierarchy_depth_exceeded",
                source_id=record.object_id,
                relation=kind.name,
                depth=depth,
            )
            return []

        linked = []
        for related_id in related_ids:
            if related_id in visited:
                logger.info(
                    "hierarchy_already_visited",
                    source_id=related_id,
                    owner_id=record.object_id,
                    relation=kind.name,
                )
                continue
            visited.add(related_id)

            try:
                related_target = await self._migrate_one(
                    target_id, record, related_id, kind, visited, depth, recurse
                )
            except RETRYABLE_ERRORS:
                raise
            except APIError as e:
                logger.warning(
                    "related_record_failed",
                    source_id=related_id,
                    owner_id=record.object_id,
                    relation=kind.name,
                    error=str(e),
                )
                continue
            if related_target is not None:
                linked.append(related_target)
        return linked

    async def _migrate_one(
        self,
        owner_target: int,
        owner: SourceRecord,
        related_id: str,
        kind: LinkKind,
        visited: set[str],
        depth: int,
        recurse: bool,
    ) -> int | None:
        mapped = self.id_map.get(related_id)
        if mapped is not None and not self.id_map.pending_steps(related_id):
            await self.link(owner_target, mapped, kind)
            return mapped

        related = await self._fetch(related_id, kind.name.lower(), owner)
        if related is None:
            return mapped

        if mapped is not None:
            await self.link(owner_target, mapped, kind)
            await self._resume(related, mapped, recurse=recurse, visited=visited, depth=depth + 1)
            return mapped

        match = await self.resolver.resolve(related)
        if match.exists and match.target_id is not None:
            related_target = await self.id_map.register(related.object_id, match.target_id)
            await self.link(owner_target, related_target, kind)
            return related_target

        fieldset = self.writer.prepare(related)
        related_target, created, transition = await self.create_once(related, fieldset)
        if not created:
            await self.link(owner_target, related_target, kind)
            return related_target

        self._report_transition(related, related_target, transition)
        logger.info(
            "related_record_created",
            source_id=related.object_id,
            formatted_id=related.formatted_id,
            target_id=related_target,
            owner_id=owner.object_id,
            relation=kind.name,
        )
        await self.finish(
            related,
            related_target,
            COMPLETION_STEPS,
            transition,
            finalized=True,
            link_to=(owner_target, kind),
            recurse=recurse,
            visited=visited,
            depth=depth + 1,
        )
        return related_target
