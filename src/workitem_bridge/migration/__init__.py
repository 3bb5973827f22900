"""Migration engine: existence resolution, reconciliation, workflow and hierarchy."""

from workitem_bridge.migration.checkpoint import Checkpoint, CheckpointManager
from workitem_bridge.migration.comparator import FieldComparator, compute_differences
from workitem_bridge.migration.existence import ExistenceResolver
from workitem_bridge.migration.hierarchy import HierarchyMigrator
from workitem_bridge.migration.mapping import (
    FieldMappingTransformer,
    MappingConfiguration,
    load_mapping_configuration,
)
from workitem_bridge.migration.orchestrator import BatchOrchestrator
from workitem_bridge.migration.state import CrossReferenceMap, MigrationProgress
from workitem_bridge.migration.transitions import (
    TransitionTable,
    WorkflowTransitionController,
    normalize_state,
)
from workitem_bridge.migration.validator import validate_ids

__all__ = [
    "BatchOrchestrator",
    "Checkpoint",
    "CheckpointManager",
    "CrossReferenceMap",
    "ExistenceResolver",
    "FieldComparator",
    "FieldMappingTransformer",
    "HierarchyMigrator",
    "MappingConfiguration",
    "MigrationProgress",
    "TransitionTable",
    "WorkflowTransitionController",
    "compute_differences",
    "load_mapping_configuration",
    "normalize_state",
    "validate_ids",
]
