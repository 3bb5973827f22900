"""Existence resolution for source records.

Determines whether a source record already has a counterpart in the target
project so that repeated runs patch instead of creating duplicates.
"""

import asyncio
from collections.abc import Awaitable, Callable, Iterable

from workitem_bridge.client.exceptions import APIError, NetworkError, NotFoundError
from workitem_bridge.client.protocols import TargetConnector
from workitem_bridge.models import ExistenceMatch, SourceRecord, target_type_for
from workitem_bridge.utils.logging import get_logger

logger = get_logger(__name__)

OBJECT_ID_TAG_PREFIX = "RallyObjectID-"
FORMATTED_ID_TAG_PREFIX = "Rally-"


def object_id_tag(object_id: str) -> str:
    """Tag carrying the source unique id."""
    return f"{OBJECT_ID_TAG_PREFIX}{object_id}"


def formatted_id_tag(formatted_id: str) -> str:
    """Tag carrying the source human-readable id."""
    return f"{FORMATTED_ID_TAG_PREFIX}{formatted_id}"


class ExistenceResolver:
    """Looks source records up in the target system.

    Strategies are tried in a fixed order and the first one that finds a
    record wins:

    1. ``object_id_tag``: records tagged ``RallyObjectID-<ObjectID>``
    2. ``formatted_id_tag``: records tagged ``Rally-<FormattedID>``
    3. ``title``: records whose title contains ``[<FormattedID>]``, filtered
       by the mapped target type when the source type is known

    Lookup failures never propagate: a failing strategy counts as "not
    found" and the next strategy is tried. Once a strategy has matched,
    the record is reported as existing even when its snapshot cannot be
    read, so a transient read error never leads to a duplicate.
    """

    def __init__(self, target: TargetConnector):
        self.target = target

    def _strategies(
        self, record: SourceRecord
    ) -> list[tuple[str, Callable[[], Awaitable[list[int]]]]]:
        strategies: list[tuple[str, Callable[[], Awaitable[list[int]]]]] = [
            ("object_id_tag", lambda: self.target.find_by_tag(object_id_tag(record.object_id)))
        ]
        if record.formatted_id:
            strategies.append(
                (
                    "formatted_id_tag",
                    lambda: self.target.find_by_tag(formatted_id_tag(record.formatted_id)),
                )
            )
            strategies.append(
                (
                    "title",
                    lambda: self.target.find_by_title(
                        f"[{record.formatted_id}]", target_type_for(record.record_type)
                    ),
                )
            )
        return strategies

    async def resolve(self, record: SourceRecord) -> ExistenceMatch:
        """Find the target record corresponding to ``record``.

        Returns:
            ExistenceMatch with the target id and a fresh snapshot of the
            target record, or ``ExistenceMatch.not_found()``. When the match
            is found but its snapshot cannot be read, the match is returned
            without a snapshot and the caller fetches it again later.
        """
        for strategy, lookup in self._strategies(record):
            try:
                ids = await lookup()
            except (APIError, NetworkError) as e:
                logger.warning(
                    "existence_strategy_failed",
                    source_id=record.object_id,
                    strategy=strategy,
                    error=str(e),
                )
                continue

            if not ids:
                continue

            target_id = ids[0]
            if len(ids) > 1:
                logger.warning(
                    "existence_multiple_matches",
                    source_id=record.object_id,
                    strategy=strategy,
                    target_ids=ids,
                )

            try:
                snapshot = await self.target.get_record(target_id)
            except NotFoundError:
                # Deleted since the search ran
                logger.warning(
                    "existence_match_vanished",
                    source_id=record.object_id,
                    strategy=strategy,
                    target_id=target_id,
                )
                continue
            except (APIError, NetworkError) as e:
                logger.warning(
                    "existence_snapshot_failed",
                    source_id=record.object_id,
                    strategy=strategy,
                    target_id=target_id,
                    error=str(e),
                )
                snapshot = None

            logger.debug(
                "existing_record_found",
                source_id=record.object_id,
                formatted_id=record.formatted_id,
                target_id=target_id,
                strategy=strategy,
            )
            return ExistenceMatch(
                exists=True, target_id=target_id, snapshot=snapshot, strategy=strategy
            )

        return ExistenceMatch.not_found()

    async def resolve_many(
        self, records: Iterable[SourceRecord], concurrency: int = 8
    ) -> dict[str, ExistenceMatch]:
        """Resolve many records with bounded concurrency.

        Args:
            records: Records to resolve
            concurrency: Maximum lookups in flight

        Returns:
            Matches keyed by source object id
        """
        semaphore = asyncio.Semaphore(concurrency)

        async def resolve_with_semaphore(record: SourceRecord) -> tuple[str, ExistenceMatch]:
            async with semaphore:
                return record.object_id, await self.resolve(record)

        pairs = await asyncio.gather(*(resolve_with_semaphore(r) for r in records))
        return dict(pairs)
