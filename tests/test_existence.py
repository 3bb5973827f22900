"""Tests for existence resolution."""

from tests.fakes import FakeTarget, make_record
from workitem_bridge.client.exceptions import NetworkError, NotFoundError, ServerError
from workitem_bridge.migration.existence import (
    ExistenceResolver,
    formatted_id_tag,
    object_id_tag,
)


class TestTags:
    def test_tag_formats(self):
        assert object_id_tag("12345") == "RallyObjectID-12345"
        assert formatted_id_tag("US42") == "Rally-US42"


class TestExistenceResolver:
    """Tests for the lookup strategy chain."""

    async def test_not_found(self):
        resolver = ExistenceResolver(FakeTarget())

        match = await resolver.resolve(make_record("1", "US1"))

        assert not match.exists
        assert match.target_id is None

    async def test_object_id_tag_wins(self):
        target = FakeTarget()
        by_formatted = target.seed({"System.Tags": "Rally-US1"})
        by_object = target.seed({"System.Tags": "RallyObjectID-1", "System.State": "Active"})

        match = await ExistenceResolver(target).resolve(make_record("1", "US1"))

        assert match.exists
        assert match.target_id == by_object
        assert match.target_id != by_formatted
        assert match.strategy == "object_id_tag"
        assert match.snapshot.state == "Active"

    async def test_formatted_id_tag_fallback(self):
        target = FakeTarget()
        target_id = target.seed({"System.Tags": "Rally-US1"})

        match = await ExistenceResolver(target).resolve(make_record("1", "US1"))

        assert match.target_id == target_id
        assert match.strategy == "formatted_id_tag"

    async def test_title_fallback_filters_by_type(self):
        target = FakeTarget()
        target.seed({"System.Title": "[US1] Login", "System.WorkItemType": "Bug"})
        story = target.seed({"System.Title": "[US1] Login", "System.WorkItemType": "User Story"})

        match = await ExistenceResolver(target).resolve(make_record("1", "US1"))

        assert match.target_id == story
        assert match.strategy == "title"

    async def test_failing_strategy_falls_through(self):
        target = FakeTarget()
        target_id = target.seed({"System.Tags": "Rally-US1"})
        target.fail_next("find_by_tag", ServerError("boom", status_code=500))

        match = await ExistenceResolver(target).resolve(make_record("1", "US1"))

        assert match.target_id == target_id
        assert match.strategy == "formatted_id_tag"

    async def test_snapshot_failure_keeps_match(self):
        target = FakeTarget()
        target_id = target.seed({"System.Tags": "RallyObjectID-1"})
        target.fail_next("get_record", NetworkError("connection reset"))

        match = await ExistenceResolver(target).resolve(make_record("1", "US1"))

        assert match.exists
        assert match.target_id == target_id
        assert match.snapshot is None
        assert match.strategy == "object_id_tag"

    async def test_vanished_match_falls_through(self):
        target = FakeTarget()
        target.seed({"System.Tags": "RallyObjectID-1"})
        survivor = target.seed({"System.Tags": "Rally-US1"})
        target.fail_next("get_record", NotFoundError("gone", status_code=404))

        match = await ExistenceResolver(target).resolve(make_record("1", "US1"))

        assert match.target_id == survivor
        assert match.strategy == "formatted_id_tag"

    async def test_all_lookups_failing_is_not_found(self):
        target = FakeTarget()
        target.seed({"System.Tags": "RallyObjectID-1;Rally-US1"})
        target.fail_next("find_by_tag", NetworkError("down"), NetworkError("down"))
        target.fail_next("find_by_title", NetworkError("down"))

        match = await ExistenceResolver(target).resolve(make_record("1", "US1"))

        assert not match.exists

    async def test_resolve_many_keys_by_object_id(self):
        target = FakeTarget()
        existing = target.seed({"System.Tags": "RallyObjectID-2"})
        records = [make_record(str(i)) for i in range(1, 4)]

        matches = await ExistenceResolver(target).resolve_many(records, concurrency=2)

        assert set(matches) == {"1", "2", "3"}
        assert matches["2"].target_id == existing
        assert not matches["1"].exists
