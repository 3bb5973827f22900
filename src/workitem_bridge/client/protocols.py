"""Connector interfaces consumed by the migration engine.

The engine talks to both platforms only through these protocols. The
httpx-based clients in this package implement them; tests use in-memory
fakes.
"""

from typing import Any, Protocol, runtime_checkable

from workitem_bridge.models import SourceAttachment, SourceRecord, TargetRecord


@runtime_checkable
class SourceConnector(Protocol):
    """Read access to the source work-tracking system."""

    async def fetch_record(self, record_id: str) -> SourceRecord | None:
        """Fetch one record by unique or human-readable id.

        Returns None when the record does not exist or cannot be read.
        """
        ...

    async def fetch_all_record_ids(self, query: str | None = None) -> list[str]:
        """Return unique ids of all records matching ``query``."""
        ...

    async def fetch_attachment_content(self, attachment: SourceAttachment) -> bytes:
        """Download the bytes of an attachment listed on a fetched record."""
        ...


@runtime_checkable
class TargetConnector(Protocol):
    """Read/write access to the target work-tracking system."""

    async def find_by_tag(self, tag: str) -> list[int]:
        """Ids of target records carrying ``tag``."""
        ...

    async def find_by_title(self, fragment: str, work_item_type: str | None = None) -> list[int]:
        """Ids of target records whose title contains ``fragment``."""
        ...

    async def record_exists(self, source_unique_id: str) -> bool:
        """Whether a target record is tagged with the source unique id."""
        ...

    async def get_record(self, record_id: int) -> TargetRecord:
        """Current fields and relations of a target record."""
        ...

    async def create_record(
        self, work_item_type: str, fields: dict[str, Any], bypass_rules: bool = False
    ) -> int:
        """Create a record and return its id."""
        ...

    async def patch_fields(
        self, record_id: int, fields: dict[str, Any], bypass_rules: bool = False
    ) -> bool:
        """Set ``fields`` on an existing record."""
        ...

    async def link_records(self, parent_id: int, child_id: int, link_kind: str) -> bool:
        """Add a ``link_kind`` relation from ``parent_id`` to ``child_id``."""
        ...

    async def upload_attachment(self, record_id: int, attachment: SourceAttachment) -> str:
        """Upload ``attachment``, attach it to the record and return its URL."""
        ...

    async def add_comment(self, record_id: int, text: str) -> bool:
        """Add a discussion comment to the record."""
        ...
