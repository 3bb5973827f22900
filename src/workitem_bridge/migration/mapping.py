"""Field mapping transformer.

Loads a field mapping configuration (YAML or JSON) and turns a
``SourceRecord`` into a ``TargetFieldSet``. Fields the target platform
rejects on creation (workflow state and historical metadata) are routed
into ``post_fields`` so they can be applied after the record exists.
Test case steps are rendered into the steps field, and inline images in
HTML fields get attachment placeholders (see ``rich_content``).
"""

import html
import json
import re
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from workitem_bridge.client.exceptions import ConfigurationError, MappingError
from workitem_bridge.migration.existence import formatted_id_tag, object_id_tag
from workitem_bridge.migration.rich_content import (
    STEPS_FIELD,
    build_test_steps_xml,
    insert_placeholders,
)
from workitem_bridge.models import SourceRecord, TargetFieldSet
from workitem_bridge.utils.logging import get_logger

logger = get_logger(__name__)

POST_CREATION_FIELDS = frozenset(
    {"System.State", "System.CreatedDate", "System.ChangedDate", "System.CreatedBy"}
)

TEST_CASE_TYPE = "Test Case"

SUPPORTED_TRANSFORMATIONS = frozenset(
    {
        "DIRECT",
        "CONSTANT",
        "DATE_FORMAT",
        "STATE_MAPPING",
        "ENUM_MAPPING",
        "COLLECTION_TO_STRING",
        "RALLY_ID_FORMAT",
        "PROJECT_TO_AREA",
        "HTML_PRESERVE",
    }
)

_COLOR_MARKUP = re.compile(r"\{color:([^}]+)\}(.*?)\{color\}", re.DOTALL)
_HTML_TAG = re.compile(r"<[a-zA-Z/][^>]*>")


class FieldMapping(BaseModel):
    """One source field -> target field rule."""

    source_field: str = Field(..., description="Source API field name")
    target_field: str = Field(..., description="Target field reference name")
    transformation: str = Field(
        default="DIRECT", description="Comma-separated transformation chain"
    )
    default_value: str | None = Field(default=None, description="Fallback or constant value")
    required: bool = Field(default=False, description="Map even when the source value is empty")
    skip: bool = Field(default=False, description="Ignore this mapping")

    @field_validator("transformation")
    @classmethod
    def validate_transformation(cls, v: str) -> str:
        """Normalize and validate the transformation chain."""
        steps = [step.strip().upper() for step in (v or "DIRECT").split(",") if step.strip()]
        unknown = [step for step in steps if step not in SUPPORTED_TRANSFORMATIONS]
        if unknown:
            raise ValueError(f"Unsupported transformation(s): {', '.join(unknown)}")
        return ",".join(steps) or "DIRECT"

    @property
    def steps(self) -> list[str]:
        return self.transformation.split(",")


class WorkItemTypeMapping(BaseModel):
    """Mapping rules for one source record type."""

    source_type: str
    target_type: str
    field_mappings: list[FieldMapping] = Field(default_factory=list)


class MappingConfiguration(BaseModel):
    """Complete field mapping configuration."""

    version: str = "1.0"
    description: str | None = None
    default_project: str | None = Field(
        default=None, description="Default area path when no mapping yields one"
    )
    area_path_mappings: dict[str, str] = Field(default_factory=dict)
    state_mappings: dict[str, dict[str, str]] = Field(
        default_factory=dict, description="Source type -> source state -> target state"
    )
    enum_mappings: dict[str, dict[str, str]] = Field(
        default_factory=dict, description="Source field -> source value -> target value"
    )
    work_item_type_mappings: list[WorkItemTypeMapping] = Field(default_factory=list)

    def mapping_for(self, source_type: str) -> WorkItemTypeMapping | None:
        lowered = (source_type or "").lower()
        for mapping in self.work_item_type_mappings:
            if mapping.source_type.lower() == lowered:
                return mapping
        return None


def load_mapping_configuration(path: str | Path) -> MappingConfiguration:
    """Load a field mapping configuration from YAML or JSON.

    Raises:
        ConfigurationError: If the file is missing, unreadable or invalid
    """
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"Field mapping file not found: {path}")

    try:
        with open(path, encoding="utf-8") as f:
            if path.suffix.lower() == ".json":
                data = json.load(f)
            else:
                data = yaml.safe_load(f)
    except (OSError, json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Cannot read field mapping file {path}: {e}") from e

    if not data:
        raise ConfigurationError(f"Empty field mapping file: {path}")

    try:
        config = MappingConfiguration(**data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid field mapping file {path}: {e}") from e

    logger.info(
        "mapping_configuration_loaded",
        path=str(path),
        version=config.version,
        types=[m.source_type for m in config.work_item_type_mappings],
    )
    return config


def _ref_name(value: Any) -> Any:
    if isinstance(value, dict):
        return value.get("_refObjectName") or value.get("Name") or value.get("name")
    return value


class FieldMappingTransformer:
    """Applies a ``MappingConfiguration`` to source records.

    The transformer is pure from the caller's point of view: it never
    talks to either platform.
    """

    def __init__(self, config: MappingConfiguration):
        self.config = config

    @classmethod
    def from_file(cls, path: str | Path) -> "FieldMappingTransformer":
        return cls(load_mapping_configuration(path))

    def transform(self, record: SourceRecord) -> TargetFieldSet:
        """Map ``record`` to target fields split into creation and post fields.

        Raises:
            MappingError: If the record type has no mapping or no fields result
        """
        type_mapping = self.config.mapping_for(record.record_type)
        if type_mapping is None:
            raise MappingError(f"No field mapping for source type '{record.record_type}'")

        creation: dict[str, Any] = {}
        post: dict[str, Any] = {}

        for mapping in type_mapping.field_mappings:
            is_post = mapping.target_field in POST_CREATION_FIELDS
            if mapping.skip and not is_post:
                continue

            try:
                value = record.get_field(mapping.source_field)
                if value is None and not mapping.required and mapping.default_value is None:
                    continue
                value = self._apply(value, record, mapping)
            except (TypeError, ValueError) as e:
                logger.warning(
                    "field_mapping_failed",
                    source_id=record.object_id,
                    source_field=mapping.source_field,
                    error=str(e),
                )
                continue

            if value is None:
                continue
            (post if is_post else creation)[mapping.target_field] = value

        if not creation and not post:
            raise MappingError(f"Field mapping produced no fields for {record.label}")

        self._add_tags(creation, record)
        self._ensure_required(creation, record)
        if type_mapping.target_type == TEST_CASE_TYPE and record.test_steps:
            creation.setdefault(STEPS_FIELD, build_test_steps_xml(record.test_steps))
        # The creation call always uses the platform's initial state
        if "System.State" in creation:
            post.setdefault("System.State", creation.pop("System.State"))

        return TargetFieldSet(
            target_type=type_mapping.target_type, creation_fields=creation, post_fields=post
        )

    def _apply(self, value: Any, record: SourceRecord, mapping: FieldMapping) -> Any:
        if "CONSTANT" in mapping.steps and mapping.default_value is not None:
            return mapping.default_value
        if value is None:
            value = mapping.default_value
        if value is None:
            return None

        for step in mapping.steps:
            if step == "DATE_FORMAT":
                value = self._format_date(value)
            elif step == "STATE_MAPPING":
                value = self._map_state(value, record.record_type)
            elif step == "ENUM_MAPPING":
                value = self._map_enum(value, mapping.source_field)
            elif step == "COLLECTION_TO_STRING":
                value = self._collection_to_string(value)
            elif step == "RALLY_ID_FORMAT":
                value = f"[{record.formatted_id}] {record.name}" if record.formatted_id else record.name
            elif step == "PROJECT_TO_AREA":
                value = self._project_to_area(value, mapping)
            elif step == "HTML_PRESERVE":
                value = insert_placeholders(self._html_preserve(value))
            if value is None:
                return None
        return value

    @staticmethod
    def _format_date(value: Any) -> Any:
        if isinstance(value, datetime):
            parsed = value
        else:
            try:
                parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
            except ValueError:
                return value
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone(UTC)
        return parsed.strftime("%Y-%m-%dT%H:%M:%S.") + f"{parsed.microsecond // 1000:03d}Z"

    def _map_state(self, value: Any, source_type: str) -> Any:
        states = {}
        for key, mapping in self.config.state_mappings.items():
            if key.lower() == (source_type or "").lower():
                states = mapping
                break
        text = str(_ref_name(value))
        for source_state, target_state in states.items():
            if source_state.lower() == text.lower():
                return target_state
        return text

    def _map_enum(self, value: Any, source_field: str) -> Any:
        text = str(_ref_name(value)).strip()
        if not text:
            return None
        values = self.config.enum_mappings.get(source_field) or {}
        return values.get(text, text)

    @staticmethod
    def _collection_to_string(value: Any) -> str:
        if isinstance(value, list | tuple | set):
            return ", ".join(str(_ref_name(item)) for item in value if item is not None)
        return str(_ref_name(value))

    def _project_to_area(self, value: Any, mapping: FieldMapping) -> str | None:
        default = mapping.default_value or self.config.default_project
        name = _ref_name(value)
        if not name:
            return default
        name = str(name).strip()
        mapped = self.config.area_path_mappings.get(name)
        if mapped is None and "|" in name:
            mapped = self.config.area_path_mappings.get(name.split("|")[0].strip())
        return mapped or default

    @staticmethod
    def _html_preserve(value: Any) -> str:
        raw = str(value)
        if not raw.strip():
            return ""
        if _HTML_TAG.search(raw):
            return raw
        raw = _COLOR_MARKUP.sub(
            lambda m: f"<span style='color:{html.escape(m.group(1))}'>{html.escape(m.group(2))}</span>",
            raw,
        )
        parts = re.split(r"(<span style='[^']*'>.*?</span>)", raw, flags=re.DOTALL)
        escaped = "".join(p if p.startswith("<span") else html.escape(p) for p in parts)
        return "<div>" + escaped.replace("\r\n", "<br/>").replace("\n", "<br/>") + "</div>"

    @staticmethod
    def _add_tags(fields: dict[str, Any], record: SourceRecord) -> None:
        existing = str(fields.get("System.Tags") or "")
        tags = [tag.strip() for tag in existing.split(";") if tag.strip()]
        for tag in (formatted_id_tag(record.formatted_id), object_id_tag(record.object_id)):
            if tag not in tags:
                tags.append(tag)
        fields["System.Tags"] = ";".join(tags)

    def _ensure_required(self, fields: dict[str, Any], record: SourceRecord) -> None:
        title = fields.get("System.Title")
        if title is None or not str(title).strip():
            fields["System.Title"] = f"[{record.formatted_id}] {record.name}".strip()
        if "System.AreaPath" not in fields and self.config.default_project:
            fields["System.AreaPath"] = self.config.default_project
