"""Comment and attachment migration for one record."""

import asyncio
import html
from dataclasses import replace
from datetime import datetime

from workitem_bridge.client.exceptions import APIError, NetworkError
from workitem_bridge.client.protocols import SourceConnector, TargetConnector
from workitem_bridge.migration.rich_content import (
    DESCRIPTION_FIELD,
    attachment_urls,
    placeholder_keys,
    relation_urls,
    replace_placeholders,
)
from workitem_bridge.models import SourceAttachment, SourceComment, SourceRecord
from workitem_bridge.utils.logging import get_logger

logger = get_logger(__name__)


def format_comment(comment: SourceComment) -> str:
    """Comment body with a header naming the original author and date."""
    author = html.escape(comment.user or "unknown user")
    header = f"<i>Migrated comment by {author}"
    if comment.creation_date is not None:
        header += f" on {comment.creation_date:%Y-%m-%d %H:%M}"
    return f"{header}</i><br/>{comment.text}"


def _chronological(comments: tuple[SourceComment, ...]) -> list[SourceComment]:
    return sorted(comments, key=lambda c: (c.creation_date is None, c.creation_date or datetime.min))


class ContentMigrator:
    """Copies discussion posts and attachments to a target record.

    Comments are posted one at a time in chronological order. Attachments
    upload concurrently under their own small semaphore; each one's content
    is downloaded from the source right before its upload, so no more than
    ``attachment_concurrency`` attachments are held in memory. Individual
    failures are logged and the remaining items are still processed.

    After the uploads, attachment placeholders in the target description
    are replaced with the uploaded URLs.
    """

    def __init__(
        self,
        target: TargetConnector,
        source: SourceConnector | None = None,
        attachment_concurrency: int = 3,
    ):
        self.target = target
        self.source = source
        self.attachment_concurrency = attachment_concurrency

    async def migrate_comments(self, record: SourceRecord, target_id: int) -> int:
        """Post all comments of ``record``. Returns the number posted."""
        posted = 0
        for comment in _chronological(record.comments):
            try:
                await self.target.add_comment(target_id, format_comment(comment))
                posted += 1
            except (APIError, NetworkError) as e:
                logger.warning(
                    "comment_migration_failed",
                    source_id=record.object_id,
                    target_id=target_id,
                    comment_id=comment.object_id,
                    error=str(e),
                )
        if posted:
            logger.debug("comments_migrated", source_id=record.object_id, count=posted)
        return posted

    async def _load(self, attachment: SourceAttachment) -> SourceAttachment:
        if attachment.content or self.source is None or not attachment.content_ref:
            return attachment
        content = await self.source.fetch_attachment_content(attachment)
        return replace(attachment, content=content, size=attachment.size or len(content))

    async def migrate_attachments(self, record: SourceRecord, target_id: int) -> dict[str, str]:
        """Upload all attachments of ``record``.

        Returns:
            Attachment ObjectID -> uploaded URL, for the uploads that succeeded
        """
        if not record.attachments:
            return {}

        semaphore = asyncio.Semaphore(self.attachment_concurrency)

        async def upload_with_semaphore(attachment: SourceAttachment) -> str | None:
            async with semaphore:
                try:
                    return await self.target.upload_attachment(
                        target_id, await self._load(attachment)
                    )
                except (APIError, NetworkError) as e:
                    logger.warning(
                        "attachment_migration_failed",
                        source_id=record.object_id,
                        target_id=target_id,
                        name=attachment.name,
                        error=str(e),
                    )
                    return None

        results = await asyncio.gather(*(upload_with_semaphore(a) for a in record.attachments))
        uploaded = {
            attachment.object_id: url
            for attachment, url in zip(record.attachments, results, strict=True)
            if url is not None
        }
        logger.debug(
            "attachments_migrated",
            source_id=record.object_id,
            uploaded=len(uploaded),
            total=len(record.attachments),
        )
        return uploaded

    async def replace_image_placeholders(
        self, record: SourceRecord, target_id: int, uploaded: dict[str, str]
    ) -> int:
        """Point inline images of the target description at uploaded attachments.

        The description is read back from the target so edits made since
        creation are kept. Failures are logged, not raised.

        Returns:
            Number of placeholders replaced
        """
        try:
            current = await self.target.get_record(target_id)
            description = current.fields.get(DESCRIPTION_FIELD)
            if not placeholder_keys(description):
                return 0

            urls = relation_urls(current.relations, record.attachments)
            urls.update(attachment_urls(record.attachments, uploaded))
            updated, replaced = replace_placeholders(str(description), urls)
            if replaced:
                await self.target.patch_fields(target_id, {DESCRIPTION_FIELD: updated})
        except (APIError, NetworkError) as e:
            logger.warning(
                "image_placeholders_failed",
                source_id=record.object_id,
                target_id=target_id,
                error=str(e),
            )
            return 0

        missing = placeholder_keys(updated)
        if missing:
            logger.warning(
                "image_placeholders_unresolved",
                source_id=record.object_id,
                target_id=target_id,
                keys=missing,
            )
        if replaced:
            logger.info(
                "image_placeholders_replaced",
                source_id=record.object_id,
                target_id=target_id,
                count=replaced,
            )
        return replaced

    async def migrate(
        self, record: SourceRecord, target_id: int, comments: bool = True, attachments: bool = True
    ) -> None:
        if comments and record.comments:
            await self.migrate_comments(record, target_id)
        if attachments and record.attachments:
            uploaded = await self.migrate_attachments(record, target_id)
            await self.replace_image_placeholders(record, target_id, uploaded)
