"""Creation and finalisation of target records.

Creation always uses the platform's mandatory initial state. Everything the
platform rejects on creation (historical fields, the real workflow state)
is applied afterwards by ``finalize``.
"""

from typing import Any

from workitem_bridge.client.exceptions import (
    RETRYABLE_ERRORS,
    APIError,
    MappingError,
    NetworkError,
)
from workitem_bridge.client.protocols import TargetConnector
from workitem_bridge.migration.mapping import FieldMappingTransformer
from workitem_bridge.migration.transitions import (
    STATE_FIELD,
    WorkflowTransitionController,
    normalize_state,
)
from workitem_bridge.models import SourceRecord, TargetFieldSet, TransitionResult
from workitem_bridge.utils.logging import get_logger

logger = get_logger(__name__)

# Only writable with rule bypass enabled
HISTORICAL_FIELDS = frozenset({"System.CreatedDate", "System.ChangedDate", "System.CreatedBy"})


class RecordWriter:
    """Turns source records into fully populated target records.

    Args:
        target: Target connector
        transformer: Field mapping transformer
        transitions: Workflow transition controller
        bypass_rules: Apply post fields with rule bypass (needed for historical fields)
    """

    def __init__(
        self,
        target: TargetConnector,
        transformer: FieldMappingTransformer,
        transitions: WorkflowTransitionController,
        bypass_rules: bool = False,
    ):
        self.target = target
        self.transformer = transformer
        self.transitions = transitions
        self.bypass_rules = bypass_rules

    def prepare(self, record: SourceRecord) -> TargetFieldSet:
        """Transform ``record``.

        Raises:
            MappingError: If the transform yields nothing
        """
        fieldset = self.transformer.transform(record)
        if not fieldset:
            raise MappingError(f"Field mapping produced no fields for {record.label}")
        return fieldset

    async def create(self, record: SourceRecord, fieldset: TargetFieldSet) -> int:
        """Create the target record in the initial workflow state."""
        fields = dict(fieldset.creation_fields)
        fields[STATE_FIELD] = self.transitions.initial_state
        target_id = await self.target.create_record(
            fieldset.target_type, fields, bypass_rules=False
        )
        logger.info(
            "record_created",
            source_id=record.object_id,
            formatted_id=record.formatted_id,
            target_id=target_id,
            work_item_type=fieldset.target_type,
        )
        return target_id

    def desired_state(self, record: SourceRecord, fieldset: TargetFieldSet) -> str | None:
        """Workflow state the record should end up in."""
        state = fieldset.post_fields.get(STATE_FIELD)
        if state is None:
            return None
        if fieldset.target_type == "Task":
            return normalize_state(str(state))
        return str(state)

    def post_fields(self, fieldset: TargetFieldSet) -> dict[str, Any]:
        """Post-creation fields other than the workflow state."""
        fields = {k: v for k, v in fieldset.post_fields.items() if k != STATE_FIELD}
        if not self.bypass_rules:
            fields = {k: v for k, v in fields.items() if k not in HISTORICAL_FIELDS}
        return fields

    async def finalize(
        self,
        record: SourceRecord,
        target_id: int,
        fieldset: TargetFieldSet,
        resume: bool = False,
    ) -> TransitionResult | None:
        """Apply post fields and drive the record to its desired state.

        A post-field patch rejected by the target is logged and does not
        stop the transition. Connector errors never escape: a retryable
        one ends the call early with a ``transient`` failed result so the
        caller can run ``finalize`` again later.

        Args:
            record: Source record
            target_id: Target record id
            fieldset: Transformed fields of ``record``
            resume: Re-read the current state from the target instead of
                assuming the initial state

        Returns:
            The transition result, or None when no state is mapped
        """
        desired = self.desired_state(record, fieldset)
        fields = self.post_fields(fieldset)
        if fields:
            try:
                await self.target.patch_fields(target_id, fields, bypass_rules=self.bypass_rules)
            except RETRYABLE_ERRORS as e:
                logger.warning(
                    "post_fields_interrupted",
                    source_id=record.object_id,
                    target_id=target_id,
                    error=str(e),
                )
                return TransitionResult(
                    success=False,
                    target_state=desired or "",
                    message=f"Post-creation fields not applied: {e}",
                    transient=True,
                )
            except (APIError, NetworkError) as e:
                logger.warning(
                    "post_fields_failed",
                    source_id=record.object_id,
                    target_id=target_id,
                    fields=sorted(fields),
                    error=str(e),
                )

        if desired is None:
            return None
        current_state = None if resume else self.transitions.initial_state
        return await self.transitions.transition(target_id, desired, current_state=current_state)
