"""Pre-flight validation of requested source ids."""

import asyncio

from workitem_bridge.client.protocols import SourceConnector, TargetConnector
from workitem_bridge.migration.existence import object_id_tag
from workitem_bridge.models import IdValidationResult
from workitem_bridge.utils.logging import get_logger

logger = get_logger(__name__)


async def validate_ids(
    source: SourceConnector,
    target: TargetConnector,
    source_ids: list[str],
    concurrency: int = 8,
) -> IdValidationResult:
    """Classify ids as valid, invalid (not in the source) or already migrated.

    Args:
        source: Source connector
        target: Target connector
        source_ids: ObjectIDs or FormattedIDs to check
        concurrency: Maximum checks in flight

    Returns:
        IdValidationResult with ids in input order within each group
    """
    semaphore = asyncio.Semaphore(concurrency)

    async def check_with_semaphore(source_id: str) -> tuple[str, str, int | None]:
        async with semaphore:
            record = await source.fetch_record(source_id)
            if record is None:
                return source_id, "invalid", None
            if await target.record_exists(record.object_id):
                matches = await target.find_by_tag(object_id_tag(record.object_id))
                return source_id, "migrated", matches[0] if matches else None
            return source_id, "valid", None

    checks = await asyncio.gather(*(check_with_semaphore(str(s)) for s in source_ids))

    result = IdValidationResult()
    for source_id, status, target_id in checks:
        if status == "invalid":
            result.invalid_ids.append(source_id)
        elif status == "migrated":
            result.already_migrated[source_id] = target_id
        else:
            result.valid_ids.append(source_id)

    logger.info(
        "ids_validated",
        total=len(source_ids),
        valid=len(result.valid_ids),
        invalid=len(result.invalid_ids),
        already_migrated=len(result.already_migrated),
    )
    return result
