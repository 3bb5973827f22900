"""Data models shared by the migration engine."""

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from types import MappingProxyType
from typing import Any


class MigrationOutcome(Enum):
    """Outcome of migrating one source record."""

    CREATED = "created"
    PATCHED = "patched"
    SKIPPED = "skipped"
    FAILED = "failed"


class LinkKind(Enum):
    """Relation types used to connect target records."""

    CHILD = "System.LinkTypes.Hierarchy-Forward"
    PARENT = "System.LinkTypes.Hierarchy-Reverse"
    TESTED_BY = "Microsoft.VSTS.Common.TestedBy-Forward"
    RELATED = "System.LinkTypes.Related"


# Source type -> target work item type, used when searching by title
SOURCE_TO_TARGET_TYPE: dict[str, str] = {
    "hierarchicalrequirement": "User Story",
    "defect": "Bug",
    "task": "Task",
    "testcase": "Test Case",
    "portfolioitem/feature": "Feature",
    "portfolioitem/epic": "Epic",
    "feature": "Feature",
    "epic": "Epic",
}


def target_type_for(source_type: str | None) -> str | None:
    """Return the default target work item type for a source type name."""
    if not source_type:
        return None
    return SOURCE_TO_TARGET_TYPE.get(source_type.lower())


@dataclass(frozen=True)
class SourceComment:
    """A discussion post attached to a source record."""

    object_id: str
    text: str
    creation_date: datetime | None = None
    user: str | None = None


@dataclass(frozen=True)
class SourceAttachment:
    """A binary attachment of a source record."""

    object_id: str
    name: str
    content: bytes = b""
    content_type: str = "application/octet-stream"
    size: int = 0
    description: str | None = None
    creation_date: datetime | None = None
    user: str | None = None
    # Where the bytes can be downloaded when ``content`` is not loaded yet
    content_ref: str | None = None


@dataclass(frozen=True)
class SourceTestStep:
    """One step of a source test case."""

    index: int
    input: str = ""
    expected_result: str = ""


# Source API field names -> SourceRecord attribute
_SOURCE_FIELD_ALIASES: dict[str, str] = {
    "objectid": "object_id",
    "formattedid": "formatted_id",
    "_type": "record_type",
    "type": "record_type",
    "name": "name",
    "owner": "owner",
    "state": "state",
    "schedulestate": "state",
    "description": "description",
    "notes": "notes",
    "planestimate": "plan_estimate",
    "estimate": "estimate",
    "todo": "to_do",
    "actuals": "actuals",
    "parent": "parent",
    "creationdate": "creation_date",
    "lastupdatedate": "last_update_date",
}


@dataclass(frozen=True)
class SourceRecord:
    """Immutable snapshot of one source work item.

    Produced by the source connector and only ever read by the engine.
    ``children`` and ``test_cases`` hold source ids of related records;
    ``parent`` holds the parent's source id when there is one.
    """

    object_id: str
    formatted_id: str
    record_type: str
    name: str = ""
    owner: str | None = None
    state: str | None = None
    description: str | None = None
    notes: str | None = None
    plan_estimate: float | None = None
    estimate: float | None = None
    to_do: float | None = None
    actuals: float | None = None
    parent: str | None = None
    children: tuple[str, ...] = ()
    test_cases: tuple[str, ...] = ()
    test_steps: tuple[SourceTestStep, ...] = ()
    comments: tuple[SourceComment, ...] = ()
    attachments: tuple[SourceAttachment, ...] = ()
    creation_date: datetime | None = None
    last_update_date: datetime | None = None
    custom_fields: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    def __post_init__(self) -> None:
        if not isinstance(self.custom_fields, MappingProxyType):
            object.__setattr__(self, "custom_fields", MappingProxyType(dict(self.custom_fields)))

    def get_field(self, name: str) -> Any:
        """Read a field by its source API name.

        Well-known names resolve to attributes; anything else is looked up
        in ``custom_fields`` (exact name first, then case-insensitively).
        """
        if not name:
            return None
        attribute = _SOURCE_FIELD_ALIASES.get(name.lower())
        if attribute is not None:
            return getattr(self, attribute)
        if name in self.custom_fields:
            return self.custom_fields[name]
        lowered = name.lower()
        for key, value in self.custom_fields.items():
            if key.lower() == lowered:
                return value
        return None

    @property
    def label(self) -> str:
        """Human-friendly identifier for log messages."""
        return self.formatted_id or self.object_id


@dataclass
class TargetFieldSet:
    """Transformed target fields split by when they may be written."""

    target_type: str
    creation_fields: dict[str, Any] = field(default_factory=dict)
    post_fields: dict[str, Any] = field(default_factory=dict)

    def merged(self) -> dict[str, Any]:
        """Creation and post fields combined, post fields taking precedence."""
        return {**self.creation_fields, **self.post_fields}

    def __len__(self) -> int:
        return len(self.creation_fields) + len(self.post_fields)


@dataclass
class TargetRecord:
    """Current state of a record in the target system."""

    id: int
    fields: dict[str, Any] = field(default_factory=dict)
    relations: list[dict[str, Any]] = field(default_factory=list)
    rev: int | None = None

    @property
    def state(self) -> str | None:
        value = self.fields.get("System.State")
        return str(value) if value is not None else None

    @property
    def work_item_type(self) -> str | None:
        return self.fields.get("System.WorkItemType")


@dataclass(frozen=True)
class ExistenceMatch:
    """Result of looking a source record up in the target system."""

    exists: bool
    target_id: int | None = None
    snapshot: TargetRecord | None = None
    strategy: str | None = None

    @classmethod
    def not_found(cls) -> "ExistenceMatch":
        return cls(exists=False)


@dataclass(frozen=True)
class FieldDifference:
    """A field whose desired value differs materially from the target value."""

    field: str
    new_value: Any
    old_value: Any = None


@dataclass(frozen=True)
class TransitionPlan:
    """Ordered workflow states needed to reach ``target_state``.

    ``direct`` is True when no path is registered and a single update is
    attempted.
    """

    target_state: str
    steps: tuple[str, ...]
    direct: bool = False


@dataclass(frozen=True)
class TransitionResult:
    """Outcome of driving a record to a desired workflow state."""

    success: bool
    target_state: str
    final_state: str | None = None
    failed_step: int | None = None
    expected_state: str | None = None
    actual_state: str | None = None
    message: str = ""
    # Set when a transport error interrupted the walk; a retry may finish it
    transient: bool = False


@dataclass(frozen=True)
class MigrationResult:
    """Outcome of one attempt to migrate one source record."""

    source_id: str
    outcome: MigrationOutcome
    formatted_id: str | None = None
    target_id: int | None = None
    reason: str | None = None
    patched_fields: tuple[str, ...] = ()
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON/CSV serialization."""
        return {
            "source_id": self.source_id,
            "formatted_id": self.formatted_id,
            "target_id": self.target_id,
            "outcome": self.outcome.value,
            "reason": self.reason,
            "patched_fields": list(self.patched_fields),
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class ProgressSnapshot:
    """Point-in-time copy of run progress handed to progress observers."""

    total_items: int
    processed_items: int
    successful_items: int
    failed_items: int
    skipped_items: int
    mapped_records: int
    last_result: MigrationResult | None = None
    elapsed_seconds: float = 0.0

    @property
    def percentage(self) -> float:
        if self.total_items <= 0:
            return 0.0
        return min(100.0, self.processed_items / self.total_items * 100)


@dataclass
class IdValidationResult:
    """Classification of requested source ids before a run."""

    valid_ids: list[str] = field(default_factory=list)
    invalid_ids: list[str] = field(default_factory=list)
    already_migrated: dict[str, int | None] = field(default_factory=dict)
