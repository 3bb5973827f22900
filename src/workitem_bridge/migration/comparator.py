"""Field reconciliation between desired and existing target values.

Given the fields a source record maps to and the fields the target record
currently holds, work out the smallest set that actually needs patching.
Comparison is type-aware because the target platform normalizes values on
write: tags come back reordered, dates gain a time component, numbers gain
trailing decimals and rich text gets re-serialized.
"""

from datetime import datetime
from typing import Any

from workitem_bridge.models import FieldDifference
from workitem_bridge.utils.logging import get_logger

logger = get_logger(__name__)

NUMERIC_TOLERANCE = 1e-3

# System-owned fields the migration never writes
EXCLUDED_FIELDS = frozenset(
    {
        "System.Id",
        "System.Rev",
        "System.CreatedBy",
        "System.CreatedDate",
        "System.ChangedBy",
        "System.ChangedDate",
        "System.AuthorizedDate",
        "System.RevisedDate",
        "System.WorkItemType",
        "System.TeamProject",
        "System.AreaId",
        "System.NodeName",
        "System.AreaLevel1",
        "System.AreaLevel2",
        "System.AreaLevel3",
        "System.AreaLevel4",
    }
)

HTML_FIELDS = frozenset(
    {
        "System.Description",
        "Microsoft.VSTS.TCM.ReproSteps",
        "Microsoft.VSTS.TCM.SystemInfo",
        "Microsoft.VSTS.TCM.Steps",
    }
)

TAG_FIELDS = frozenset({"System.Tags"})

NUMERIC_FIELDS = frozenset(
    {
        "Microsoft.VSTS.Scheduling.StoryPoints",
        "Microsoft.VSTS.Scheduling.OriginalEstimate",
        "Microsoft.VSTS.Scheduling.RemainingWork",
        "Microsoft.VSTS.Scheduling.CompletedWork",
        "Microsoft.VSTS.Common.Priority",
        "Microsoft.VSTS.Common.StackRank",
    }
)


def normalize_tags(value: Any) -> str:
    """Canonical form of a tag list: split on ``;``/``,``, trimmed, sorted case-insensitively."""
    text = "" if value is None else str(value)
    tags = [tag.strip() for tag in text.replace(",", ";").split(";")]
    return ";".join(sorted((tag for tag in tags if tag), key=str.lower))


def _is_date_field(name: str) -> bool:
    lowered = name.lower()
    return "date" in lowered or "time" in lowered


def _is_numeric_field(name: str) -> bool:
    return name in NUMERIC_FIELDS or "Estimate" in name or "Points" in name


def _parse_date(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value
    text = str(value).strip()
    if not text:
        return None
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None


class FieldComparator:
    """Type-aware comparison of target field values.

    Args:
        html_fields: Extra rich-text fields that are always re-sent
        excluded_fields: Extra fields that are never compared
    """

    def __init__(
        self,
        html_fields: set[str] | frozenset[str] | None = None,
        excluded_fields: set[str] | frozenset[str] | None = None,
    ):
        self.html_fields = HTML_FIELDS | frozenset(html_fields or ())
        self.excluded_fields = EXCLUDED_FIELDS | frozenset(excluded_fields or ())

    def is_different(self, field_name: str, existing: Any, desired: Any) -> bool:
        """Whether ``desired`` differs materially from ``existing`` for ``field_name``.

        Any exception while comparing counts as a difference so an update is
        never silently dropped.
        """
        try:
            return self._compare(field_name, existing, desired)
        except Exception as e:
            logger.debug("field_compare_failed", field=field_name, error=str(e))
            return True

    def _compare(self, field_name: str, existing: Any, desired: Any) -> bool:
        if existing is None and desired is None:
            return False
        if existing is None or desired is None:
            return True

        if field_name in self.html_fields:
            return True

        if field_name in TAG_FIELDS:
            return normalize_tags(existing) != normalize_tags(desired)

        if _is_date_field(field_name):
            existing_date = _parse_date(existing)
            desired_date = _parse_date(desired)
            if existing_date is not None and desired_date is not None:
                return existing_date.date() != desired_date.date()

        if _is_numeric_field(field_name):
            try:
                return abs(float(existing) - float(desired)) > NUMERIC_TOLERANCE
            except (TypeError, ValueError):
                pass

        return str(existing).strip() != str(desired).strip()

    def diff(
        self, existing_fields: dict[str, Any] | None, desired_fields: dict[str, Any]
    ) -> list[FieldDifference]:
        """Fields of ``desired_fields`` that need to be written.

        When the existing record has no fields at all every desired field is
        returned.
        """
        existing_fields = existing_fields or {}
        differences = []
        for field_name, desired in desired_fields.items():
            if field_name in self.excluded_fields:
                continue
            if not existing_fields:
                differences.append(FieldDifference(field_name, desired))
                continue
            existing = existing_fields.get(field_name)
            if self.is_different(field_name, existing, desired):
                differences.append(FieldDifference(field_name, desired, existing))
        return differences

    def compute_differences(
        self, existing_fields: dict[str, Any] | None, desired_fields: dict[str, Any]
    ) -> dict[str, Any]:
        """Same as :meth:`diff` but as a ready-to-patch ``{field: new_value}`` dict."""
        return {d.field: d.new_value for d in self.diff(existing_fields, desired_fields)}


def compute_differences(
    existing_fields: dict[str, Any] | None, desired_fields: dict[str, Any]
) -> dict[str, Any]:
    """Module-level shortcut using the default comparison rules."""
    return FieldComparator().compute_differences(existing_fields, desired_fields)
