"""Tests for batch orchestration."""

import asyncio
from datetime import datetime

import pytest

from tests.fakes import make_record
from workitem_bridge.migration.state import CONTENT_STEP, RELATIONS_STEP
from workitem_bridge.client.exceptions import (
    AuthorizationError,
    MigrationAbortedError,
    NetworkError,
    ServerError,
)
from workitem_bridge.config import MigrationOptions, PerformanceConfig
from workitem_bridge.models import LinkKind, MigrationOutcome, SourceAttachment, SourceComment


def _outcomes(progress):
    return {r.source_id: r.outcome for r in progress.results}


@pytest.fixture
def family(source):
    """Feature 10 -> story 20 -> task 30."""
    source.add(make_record("10", "F10", record_type="PortfolioItem/Feature", state="Done"))
    source.add(make_record("20", "US20", parent="10", children=("30",), state="Accepted"))
    source.add(make_record("30", "TA30", record_type="Task", parent="20", state="Completed"))


class TestHierarchyOrdering:
    """Parents before the record, children after it."""

    async def test_parent_record_child(self, family, target, make_orchestrator):
        progress = await make_orchestrator().run(["20"])

        id_map = progress.id_map
        assert _outcomes(progress) == {"20": MigrationOutcome.CREATED}
        assert target.created == [id_map.get("10"), id_map.get("20"), id_map.get("30")]
        assert (id_map.get("10"), id_map.get("20"), LinkKind.CHILD.value) in target.links
        assert (id_map.get("20"), id_map.get("30"), LinkKind.CHILD.value) in target.links
        assert target.items[id_map.get("20")]["System.State"] == "Closed"
        assert target.items[id_map.get("30")]["System.State"] == "Closed"

    async def test_parent_and_child_in_same_batch_not_duplicated(
        self, family, target, make_orchestrator
    ):
        progress = await make_orchestrator().run(["20", "30", "10"])

        assert len(target.created) == 3
        assert len(progress.id_map) == 3
        assert progress.failed_items == 0


class TestIdempotence:
    """Repeated runs never create duplicates."""

    async def test_second_run_skips(self, family, target, make_orchestrator):
        await make_orchestrator().run(["20"])
        created = list(target.created)

        progress = await make_orchestrator().run(["20", "10", "30"])

        assert target.created == created
        assert set(_outcomes(progress).values()) == {MigrationOutcome.SKIPPED}

    async def test_drift_patched(self, source, target, make_orchestrator):
        source.add(make_record("1", "US1", name="Login"))
        progress = await make_orchestrator().run(["1"])
        target_id = progress.id_map.get("1")
        target.items[target_id]["System.Title"] = "[US1] edited in target"
        target.patches.clear()

        progress = await make_orchestrator().run(["1"])

        result = progress.results[0]
        assert result.outcome is MigrationOutcome.PATCHED
        assert result.patched_fields == ("System.Title",)
        assert target.patches == [(target_id, {"System.Title": "[US1] Login"})]

    async def test_existing_record_state_transitioned(self, source, target, make_orchestrator):
        source.add(make_record("1", "US1", name="Login", state="Accepted"))
        target_id = target.seed(
            {
                "System.Title": "[US1] Login",
                "System.Tags": "RallyObjectID-1;Rally-US1",
                "System.AreaPath": "Migration",
                "System.State": "New",
            }
        )

        progress = await make_orchestrator().run(["1"])

        result = progress.results[0]
        assert result.outcome is MigrationOutcome.PATCHED
        assert result.patched_fields == ("System.State",)
        assert target.items[target_id]["System.State"] == "Closed"
        assert target.created == []

    async def test_difference_patch_disabled(self, source, target, make_orchestrator):
        source.add(make_record("1"))
        target.seed({"System.Tags": "RallyObjectID-1"})

        progress = await make_orchestrator(
            options=MigrationOptions(enable_difference_patch=False)
        ).run(["1"])

        assert progress.results[0].outcome is MigrationOutcome.SKIPPED
        assert progress.results[0].reason == "Already exists"
        assert target.patches == []


class TestFailures:
    """Per-record failures and run aborts."""

    async def test_missing_source_record(self, source, make_orchestrator):
        source.add(make_record("1"))

        progress = await make_orchestrator().run(["404", "1"])

        outcomes = _outcomes(progress)
        assert outcomes["404"] is MigrationOutcome.FAILED
        assert outcomes["1"] is MigrationOutcome.CREATED
        assert progress.failed_results()[0].reason == "Source record not found"

    async def test_transition_failure_reported(self, source, target, make_orchestrator):
        source.add(make_record("1", state="Accepted"))
        target.rejected_states = {"Closed"}

        progress = await make_orchestrator().run(["1"])

        result = progress.results[0]
        assert result.outcome is MigrationOutcome.FAILED
        assert result.target_id == progress.id_map.get("1")
        assert "expected 'Closed', found 'Active'" in result.reason

    async def test_transient_error_retried(self, source, target, make_orchestrator):
        source.add(make_record("1"))
        target.fail_next("create_record", ServerError("unavailable", status_code=503))

        progress = await make_orchestrator().run(["1"])

        assert progress.results[0].outcome is MigrationOutcome.CREATED
        assert target.calls["create_record"] == 2
        assert len(target.created) == 1

    async def test_retries_exhausted(self, source, target, make_orchestrator):
        source.add(make_record("1"))
        target.fail_next("create_record", *(NetworkError("reset") for _ in range(3)))

        progress = await make_orchestrator().run(["1"])

        result = progress.results[0]
        assert result.outcome is MigrationOutcome.FAILED
        assert result.reason.startswith("Transport error after 3 attempts")
        assert target.created == []

    async def test_non_retryable_error_fails_once(self, source, target, make_orchestrator):
        source.add(make_record("1"))
        target.fail_next("create_record", AuthorizationError("forbidden", status_code=403))

        progress = await make_orchestrator().run(["1"])

        assert progress.results[0].outcome is MigrationOutcome.FAILED
        assert target.calls["create_record"] == 1

    async def test_mapping_error_aborts(self, source, make_orchestrator, checkpoint_manager):
        source.add(make_record("1", record_type="Risk"))
        orchestrator = make_orchestrator(checkpoint=checkpoint_manager)

        with pytest.raises(MigrationAbortedError, match="No field mapping"):
            await orchestrator.run(["1"])

        assert orchestrator.progress.failed_items == 1
        assert checkpoint_manager.exists()


class TestDryRun:
    async def test_nothing_written(self, source, target, make_orchestrator, checkpoint_manager):
        source.add(make_record("1"))
        source.add(make_record("2"))
        existing = target.seed({"System.Tags": "RallyObjectID-2"})

        progress = await make_orchestrator(
            options=MigrationOptions(dry_run=True), checkpoint=checkpoint_manager
        ).run(["1", "2"])

        results = {r.source_id: r for r in progress.results}
        assert results["1"].outcome is MigrationOutcome.CREATED
        assert results["1"].reason == "Dry run"
        assert results["2"].outcome is MigrationOutcome.SKIPPED
        assert results["2"].target_id == existing
        assert target.created == []
        assert target.patches == []
        assert not checkpoint_manager.exists()

    async def test_mapping_errors_still_abort(self, source, make_orchestrator):
        source.add(make_record("1", record_type="Risk"))

        with pytest.raises(MigrationAbortedError):
            await make_orchestrator(options=MigrationOptions(dry_run=True)).run(["1"])


class TestCheckpointAndResume:
    """Progress is checkpointed and resumable."""

    async def test_checkpoint_written(self, source, make_orchestrator, checkpoint_manager):
        for i in range(1, 4):
            source.add(make_record(str(i)))

        progress = await make_orchestrator(checkpoint=checkpoint_manager).run(["1", "2", "3"])

        saved = checkpoint_manager.load()
        assert saved.last_checkpoint_index == 2
        assert saved.id_map == progress.id_map.to_dict()

    async def test_resume_skips_completed(self, source, target, make_orchestrator, checkpoint_manager):
        for i in range(1, 4):
            source.add(make_record(str(i)))
        await make_orchestrator(checkpoint=checkpoint_manager).run(["1", "2"])
        fetches = dict(source.fetch_counts)

        progress = await make_orchestrator(checkpoint=checkpoint_manager, resume=True).run(
            ["1", "2", "3"]
        )

        assert progress.total_items == 1
        assert progress.resumed_items == 2
        assert [r.source_id for r in progress.results] == ["3"]
        assert source.fetch_counts["1"] == fetches["1"]
        assert len(progress.id_map) == 3
        assert len(target.created) == 3
        assert checkpoint_manager.load().last_checkpoint_index == 2

    async def test_without_resume_starts_over(self, source, make_orchestrator, checkpoint_manager):
        source.add(make_record("1"))
        await make_orchestrator(checkpoint=checkpoint_manager).run(["1"])

        progress = await make_orchestrator(checkpoint=checkpoint_manager).run(["1"])

        assert progress.resumed_items == 0
        assert progress.results[0].outcome is MigrationOutcome.SKIPPED


class TestControl:
    """Pause, resume, cancel and progress reporting."""

    async def test_cancel_stops_after_in_flight(self, source, make_orchestrator, checkpoint_manager):
        for i in range(1, 6):
            source.add(make_record(str(i)))
        performance = PerformanceConfig(
            batch_size=1, max_concurrent=1, inter_batch_delay=0.0, retry_delay=0.0
        )
        orchestrator = make_orchestrator(performance=performance, checkpoint=checkpoint_manager)
        orchestrator.progress_callback = lambda snapshot: orchestrator.cancel()

        progress = await orchestrator.run([str(i) for i in range(1, 6)])

        assert progress.cancelled
        assert progress.processed_items == 1
        assert checkpoint_manager.load().last_checkpoint_index == 0

    async def test_pause_and_resume(self, source, make_orchestrator):
        for i in range(1, 4):
            source.add(make_record(str(i)))
        orchestrator = make_orchestrator()
        orchestrator.pause()

        task = asyncio.create_task(orchestrator.run(["1", "2", "3"]))
        await asyncio.sleep(0.05)
        assert orchestrator.is_paused
        assert orchestrator.progress.processed_items == 0

        orchestrator.resume()
        progress = await asyncio.wait_for(task, timeout=5)

        assert progress.processed_items == 3

    async def test_progress_callback(self, source, make_orchestrator):
        for i in range(1, 4):
            source.add(make_record(str(i)))
        snapshots = []

        await make_orchestrator(progress_callback=snapshots.append).run(["1", "2", "3", "1"])

        assert len(snapshots) == 3
        assert max(s.processed_items for s in snapshots) == 3
        assert all(s.total_items == 3 for s in snapshots)

    async def test_failing_callback_ignored(self, source, make_orchestrator):
        source.add(make_record("1"))

        def explode(snapshot):
            raise RuntimeError("display broke")

        progress = await make_orchestrator(progress_callback=explode).run(["1"])

        assert progress.successful_items == 1


class TestContent:
    async def test_comments_and_attachments(self, source, target, make_orchestrator):
        record = make_record(
            "1",
            comments=(
                SourceComment("c2", "second", datetime(2024, 1, 2), "bob"),
                SourceComment("c1", "first", datetime(2024, 1, 1), "alice"),
            ),
            attachments=(SourceAttachment("a1", "log.txt", b"data"),),
        )
        source.add(record)

        progress = await make_orchestrator().run(["1"])

        target_id = progress.id_map.get("1")
        assert [c.split("<br/>")[1] for c in target.comments[target_id]] == ["first", "second"]
        assert target.attachments[target_id] == ["log.txt"]

    async def test_attachment_content_loaded_only_when_uploaded(
        self, source, target, make_orchestrator
    ):
        """The record carries attachment metadata; bytes are fetched right before upload."""
        record = make_record(
            "1",
            description='<p>Layout:<img src="/slm/attachment/5001/diagram.png"/></p>',
            attachments=(
                SourceAttachment("5001", "diagram.png", content_ref="https://rally.test/5001"),
            ),
        )
        source.add(record)
        source.add_attachment_content("5001", b"png-bytes")

        progress = await make_orchestrator().run(["1"])

        target_id = progress.id_map.get("1")
        assert source.attachment_fetches == ["5001"]
        assert target.uploaded_content[target_id] == [b"png-bytes"]
        assert target.items[target_id]["System.Description"] == (
            '<p>Layout:<img src="https://example.invalid/attachments/5001"/></p>'
        )

    async def test_inline_image_url_kept_on_rerun(self, source, target, make_orchestrator):
        """Reconciling an existing record resolves placeholders from its attached files."""
        source.add(
            make_record(
                "1",
                description='<img src="/slm/attachment/5001/diagram.png">',
                attachments=(SourceAttachment("5001", "diagram.png", b"png-bytes"),),
            )
        )
        progress = await make_orchestrator().run(["1"])
        target_id = progress.id_map.get("1")

        await make_orchestrator().run(["1"])

        assert target.items[target_id]["System.Description"] == (
            '<img src="https://example.invalid/attachments/5001">'
        )
        assert target.attachments[target_id] == ["diagram.png"]


class TestInterruptedCreation:
    """Transport errors after a record was created never lose its remaining work."""

    @pytest.fixture
    def commented_family(self, family, source):
        source.add(
            make_record(
                "20",
                "US20",
                parent="10",
                children=("30",),
                state="Accepted",
                comments=(SourceComment("c1", "looks good", datetime(2024, 1, 1), "alice"),),
            )
        )

    async def test_transition_interrupted_after_create(
        self, commented_family, target, make_orchestrator
    ):
        """F10 takes patches 1-2; the third patch is US20's first transition step."""
        target.fail_on("patch_fields", 3, NetworkError("connection reset"))

        progress = await make_orchestrator().run(["20"])

        id_map = progress.id_map
        feature, story, task = id_map.get("10"), id_map.get("20"), id_map.get("30")
        assert _outcomes(progress) == {"20": MigrationOutcome.CREATED}
        assert target.created == [feature, story, task]
        assert target.links_of(LinkKind.CHILD.value) == [(feature, story), (story, task)]
        assert target.items[story]["System.State"] == "Closed"
        assert target.items[task]["System.State"] == "Closed"
        assert len(target.comments[story]) == 1
        assert id_map.unfinished() == {}

    async def test_post_fields_interrupted_after_create(self, source, target, make_orchestrator):
        source.add(make_record("1", state="Accepted", creation_date=datetime(2023, 5, 1)))
        target.fail_on("patch_fields", 1, ServerError("unavailable", status_code=503))

        progress = await make_orchestrator(options=MigrationOptions(bypass_rules=True)).run(["1"])

        target_id = progress.id_map.get("1")
        assert progress.results[0].outcome is MigrationOutcome.CREATED
        assert target.created == [target_id]
        assert target.items[target_id]["System.CreatedDate"].startswith("2023-05-01")
        assert target.items[target_id]["System.State"] == "Closed"

    async def test_child_creation_interrupted(self, commented_family, target, make_orchestrator):
        """TA30's first create call fails; the retry creates it and keeps the story's links."""
        target.fail_on("create_record", 3, NetworkError("connection reset"))

        progress = await make_orchestrator().run(["20"])

        id_map = progress.id_map
        feature, story, task = id_map.get("10"), id_map.get("20"), id_map.get("30")
        assert _outcomes(progress) == {"20": MigrationOutcome.CREATED}
        assert target.calls["create_record"] == 4
        assert target.created == [feature, story, task]
        assert target.links_of(LinkKind.CHILD.value) == [(feature, story), (story, task)]
        assert len(target.comments[story]) == 1

    async def test_unfinished_record_resumed_by_next_run(
        self, commented_family, target, make_orchestrator, checkpoint_manager
    ):
        for call in (3, 4, 5):
            target.fail_on("create_record", call, NetworkError("connection reset"))

        first = await make_orchestrator(checkpoint=checkpoint_manager).run(["20"])

        assert _outcomes(first) == {"20": MigrationOutcome.FAILED}
        saved = checkpoint_manager.load()
        assert saved.unfinished == {"20": sorted({CONTENT_STEP, RELATIONS_STEP})}

        second = await make_orchestrator(checkpoint=checkpoint_manager, resume=True).run(["20"])

        story, task = second.id_map.get("20"), second.id_map.get("30")
        assert _outcomes(second) == {"20": MigrationOutcome.CREATED}
        assert second.total_items == 1
        assert len(target.created) == 3
        assert (story, task) in target.links_of(LinkKind.CHILD.value)
        assert len(target.comments[story]) == 1
        assert checkpoint_manager.load().unfinished == {}
        assert checkpoint_manager.load().last_checkpoint_index == 0


class TestExistingMatchSnapshotFailure:
    """A matched record whose snapshot cannot be read is reconciled, never duplicated."""

    @pytest.fixture
    def existing(self, source, target):
        source.add(make_record("1", "US1", name="Login", state="Accepted"))
        return target.seed(
            {
                "System.Title": "[US1] Login",
                "System.Tags": "RallyObjectID-1;Rally-US1",
                "System.AreaPath": "Migration",
                "System.State": "New",
            }
        )

    async def test_snapshot_fetch_fails_in_precheck(self, existing, target, make_orchestrator):
        target.fail_on("get_record", 1, NetworkError("connection reset"))

        progress = await make_orchestrator().run(["1"])

        result = progress.results[0]
        assert result.outcome is MigrationOutcome.PATCHED
        assert result.target_id == existing
        assert target.created == []
        assert target.items[existing]["System.State"] == "Closed"

    async def test_snapshot_keeps_failing(self, existing, target, make_orchestrator):
        target.fail_next("get_record", NetworkError("reset"), NetworkError("reset"))

        progress = await make_orchestrator().run(["1"])

        assert progress.results[0].outcome is MigrationOutcome.PATCHED
        assert progress.id_map.get("1") == existing
        assert target.created == []
