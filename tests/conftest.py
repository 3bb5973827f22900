"""
Shared pytest fixtures.

Provides a field mapping, in-memory connectors and a factory for
orchestrators tuned for fast test runs.
"""

import pytest

from tests.fakes import FakeSource, FakeTarget
from workitem_bridge.config import MigrationOptions, PerformanceConfig, WorkflowConfig
from workitem_bridge.migration.checkpoint import CheckpointManager
from workitem_bridge.migration.mapping import FieldMappingTransformer, MappingConfiguration
from workitem_bridge.migration.orchestrator import BatchOrchestrator

MAPPING = {
    "version": "1.0",
    "default_project": "Migration",
    "area_path_mappings": {"Team Rocket": "Migration\\Rocket"},
    "state_mappings": {
        "HierarchicalRequirement": {
            "Defined": "New",
            "In-Progress": "Active",
            "Completed": "Resolved",
            "Accepted": "Closed",
        },
        "PortfolioItem/Feature": {"Discovering": "New", "Done": "Closed"},
    },
    "enum_mappings": {"Priority": {"High": "1", "Normal": "2", "Low": "3"}},
    "work_item_type_mappings": [
        {
            "source_type": "HierarchicalRequirement",
            "target_type": "User Story",
            "field_mappings": [
                {
                    "source_field": "Name",
                    "target_field": "System.Title",
                    "transformation": "RALLY_ID_FORMAT",
                },
                {
                    "source_field": "Description",
                    "target_field": "System.Description",
                    "transformation": "HTML_PRESERVE",
                },
                {
                    "source_field": "ScheduleState",
                    "target_field": "System.State",
                    "transformation": "STATE_MAPPING",
                },
                {
                    "source_field": "PlanEstimate",
                    "target_field": "Microsoft.VSTS.Scheduling.StoryPoints",
                },
                {
                    "source_field": "Project",
                    "target_field": "System.AreaPath",
                    "transformation": "PROJECT_TO_AREA",
                },
                {
                    "source_field": "CreationDate",
                    "target_field": "System.CreatedDate",
                    "transformation": "DATE_FORMAT",
                },
            ],
        },
        {
            "source_type": "PortfolioItem/Feature",
            "target_type": "Feature",
            "field_mappings": [
                {
                    "source_field": "Name",
                    "target_field": "System.Title",
                    "transformation": "RALLY_ID_FORMAT",
                },
                {
                    "source_field": "State",
                    "target_field": "System.State",
                    "transformation": "STATE_MAPPING",
                },
            ],
        },
        {
            "source_type": "Task",
            "target_type": "Task",
            "field_mappings": [
                {
                    "source_field": "Name",
                    "target_field": "System.Title",
                    "transformation": "RALLY_ID_FORMAT",
                },
                {"source_field": "State", "target_field": "System.State"},
                {
                    "source_field": "ToDo",
                    "target_field": "Microsoft.VSTS.Scheduling.RemainingWork",
                },
            ],
        },
        {
            "source_type": "TestCase",
            "target_type": "Test Case",
            "field_mappings": [
                {
                    "source_field": "Name",
                    "target_field": "System.Title",
                    "transformation": "RALLY_ID_FORMAT",
                },
                {
                    "source_field": "Priority",
                    "target_field": "Microsoft.VSTS.Common.Priority",
                    "transformation": "ENUM_MAPPING",
                },
            ],
        },
    ],
}


@pytest.fixture
def mapping_config() -> MappingConfiguration:
    return MappingConfiguration(**MAPPING)


@pytest.fixture
def transformer(mapping_config) -> FieldMappingTransformer:
    return FieldMappingTransformer(mapping_config)


@pytest.fixture
def source() -> FakeSource:
    return FakeSource()


@pytest.fixture
def target() -> FakeTarget:
    return FakeTarget()


@pytest.fixture
def performance() -> PerformanceConfig:
    """Performance settings without sleeps."""
    return PerformanceConfig(
        batch_size=10,
        max_concurrent=4,
        inter_batch_delay=0.0,
        pause_poll_interval=0.01,
        max_retries=2,
        retry_delay=0.0,
        connection_retry_delay=0.0,
    )


@pytest.fixture
def checkpoint_manager(tmp_path) -> CheckpointManager:
    return CheckpointManager(tmp_path / "state" / "checkpoint.json")


@pytest.fixture
def make_orchestrator(source, target, transformer, performance):
    """Factory building orchestrators that share the fixture connectors."""

    def _make(**overrides) -> BatchOrchestrator:
        options = overrides.pop("options", None) or MigrationOptions()
        kwargs = {
            "source": source,
            "target": target,
            "transformer": transformer,
            "performance": performance,
            "options": options,
            "workflow": WorkflowConfig(),
        }
        kwargs.update(overrides)
        return BatchOrchestrator(**kwargs)

    return _make
