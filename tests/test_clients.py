"""Tests for the Rally and Azure DevOps HTTP clients using httpx.MockTransport."""

import base64
import json

import httpx
import pytest

from workitem_bridge.client.ado_client import AdoTargetClient, build_field_operations
from workitem_bridge.client.exceptions import APIError, AuthenticationError
from workitem_bridge.client.rally_client import RallySourceClient
from workitem_bridge.config import AdoConfig, RallyConfig
from workitem_bridge.models import SourceAttachment


def _ado(handler) -> AdoTargetClient:
    config = AdoConfig(
        url="https://dev.azure.test", organization="acme", project="My Project", token="pat"
    )
    return AdoTargetClient(config, rate_limit=200, transport=httpx.MockTransport(handler))


def _rally(handler) -> RallySourceClient:
    config = RallyConfig(url="https://rally.test", api_key="key", workspace="111")
    return RallySourceClient(config, rate_limit=200, transport=httpx.MockTransport(handler))


class TestAdoTargetClient:
    """Tests for the Azure DevOps client."""

    def test_build_field_operations(self):
        assert build_field_operations({"System.Title": "x"}) == [
            {"op": "add", "path": "/fields/System.Title", "value": "x"}
        ]

    async def test_find_by_tag_runs_wiql(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["auth"] = request.headers["Authorization"]
            seen["query"] = json.loads(request.content)["query"]
            return httpx.Response(200, json={"workItems": [{"id": 7}, {"id": 9}]})

        client = _ado(handler)
        try:
            ids = await client.find_by_tag("RallyObjectID-1")
        finally:
            await client.close()

        assert ids == [7, 9]
        assert seen["path"] == "/acme/My Project/_apis/wit/wiql"
        assert seen["auth"] == "Basic " + base64.b64encode(b":pat").decode()
        assert "[System.Tags] CONTAINS 'RallyObjectID-1'" in seen["query"]
        assert "[System.TeamProject] = 'My Project'" in seen["query"]

    async def test_wiql_literals_escaped(self):
        seen = {}

        def handler(request):
            seen["query"] = json.loads(request.content)["query"]
            return httpx.Response(200, json={"workItems": []})

        client = _ado(handler)
        try:
            await client.find_by_title("[US1] it's", "User Story")
        finally:
            await client.close()

        assert "CONTAINS '[US1] it''s'" in seen["query"]
        assert "[System.WorkItemType] = 'User Story'" in seen["query"]

    async def test_create_record(self):
        seen = {}

        def handler(request):
            seen["method"] = request.method
            seen["path"] = request.url.path
            seen["content_type"] = request.headers["Content-Type"]
            seen["body"] = json.loads(request.content)
            seen["params"] = dict(request.url.params)
            return httpx.Response(200, json={"id": 42})

        client = _ado(handler)
        try:
            record_id = await client.create_record("User Story", {"System.Title": "x"})
        finally:
            await client.close()

        assert record_id == 42
        assert seen["method"] == "POST"
        assert seen["path"] == "/acme/My Project/_apis/wit/workitems/$User Story"
        assert seen["content_type"] == "application/json-patch+json"
        assert seen["body"] == [{"op": "add", "path": "/fields/System.Title", "value": "x"}]
        assert "bypassRules" not in seen["params"]

    async def test_patch_with_bypass_rules(self):
        seen = {}

        def handler(request):
            seen["params"] = dict(request.url.params)
            return httpx.Response(200, json={"id": 5})

        client = _ado(handler)
        try:
            await client.patch_fields(5, {"System.CreatedDate": "2020-01-01"}, bypass_rules=True)
        finally:
            await client.close()

        assert seen["params"]["bypassRules"] == "true"

    async def test_get_record(self):
        def handler(request):
            return httpx.Response(
                200,
                json={
                    "id": 5,
                    "rev": 3,
                    "fields": {"System.State": "Active", "System.WorkItemType": "Bug"},
                    "relations": [{"rel": "AttachedFile", "url": "u"}],
                },
            )

        client = _ado(handler)
        try:
            record = await client.get_record(5)
        finally:
            await client.close()

        assert record.state == "Active"
        assert record.work_item_type == "Bug"
        assert record.rev == 3
        assert len(record.relations) == 1

    async def test_duplicate_link_is_success(self):
        def handler(request):
            return httpx.Response(400, json={"message": "Relation already exists."})

        client = _ado(handler)
        try:
            assert await client.link_records(1, 2, "System.LinkTypes.Hierarchy-Forward")
        finally:
            await client.close()

    async def test_link_payload(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"id": 1})

        client = _ado(handler)
        try:
            await client.link_records(1, 2, "System.LinkTypes.Hierarchy-Forward")
        finally:
            await client.close()

        assert seen["body"] == [
            {
                "op": "add",
                "path": "/relations/-",
                "value": {
                    "rel": "System.LinkTypes.Hierarchy-Forward",
                    "url": "https://dev.azure.test/acme/_apis/wit/workItems/2",
                },
            }
        ]

    async def test_authentication_error(self):
        client = _ado(lambda request: httpx.Response(401, json={"message": "bad token"}))
        try:
            with pytest.raises(AuthenticationError):
                await client.get_record(1)
        finally:
            await client.close()


class TestRallySourceClient:
    """Tests for the Rally client."""

    async def test_fetch_record(self):
        story = {
            "_type": "HierarchicalRequirement",
            "ObjectID": 1,
            "FormattedID": "US1",
            "Name": "Login",
            "ScheduleState": "Accepted",
            "PlanEstimate": "3",
            "Parent": {"ObjectID": 9, "_refObjectName": "Epic"},
            "Children": {
                "_ref": "https://rally.test/slm/webservice/v2.0/HierarchicalRequirement/1/Children",
                "Count": 1,
            },
            "Tasks": {"Count": 0},
            "Discussion": None,
            "Attachments": None,
            "c_Team": {"_refObjectName": "Blue"},
        }
        seen = []

        def handler(request):
            seen.append(request)
            if request.url.path.endswith("/Children"):
                return httpx.Response(
                    200,
                    json={"QueryResult": {"Results": [{"ObjectID": 2}], "TotalResultCount": 1}},
                )
            return httpx.Response(
                200, json={"QueryResult": {"Results": [story], "TotalResultCount": 1}}
            )

        client = _rally(handler)
        try:
            record = await client.fetch_record("US1")
        finally:
            await client.close()

        assert record.object_id == "1"
        assert record.formatted_id == "US1"
        assert record.record_type == "HierarchicalRequirement"
        assert record.state == "Accepted"
        assert record.plan_estimate == 3.0
        assert record.parent == "9"
        assert record.children == ("2",)
        assert record.get_field("c_Team") == "Blue"
        assert seen[0].headers["ZSESSIONID"] == "key"
        assert seen[0].url.params["query"] == '(FormattedID = "US1")'
        assert seen[0].url.params["workspace"] == "/workspace/111"

    async def test_missing_record(self):
        client = _rally(
            lambda request: httpx.Response(
                200, json={"QueryResult": {"Results": [], "TotalResultCount": 0}}
            )
        )
        try:
            assert await client.fetch_record("12345") is None
        finally:
            await client.close()

    async def test_query_errors_raise(self):
        client = _rally(
            lambda request: httpx.Response(
                200, json={"QueryResult": {"Errors": ["Could not parse"], "Results": []}}
            )
        )
        try:
            with pytest.raises(APIError, match="Could not parse"):
                await client.query("artifact", query="(bad")
        finally:
            await client.close()

    async def test_query_all_pages(self):
        pages = {
            "1": {"Results": [{"ObjectID": 1}, {"ObjectID": 2}], "TotalResultCount": 3},
            "3": {"Results": [{"ObjectID": 3}], "TotalResultCount": 3},
        }

        def handler(request):
            return httpx.Response(200, json={"QueryResult": pages[request.url.params["start"]]})

        client = _rally(handler)
        try:
            ids = await client.fetch_all_record_ids()
        finally:
            await client.close()

        assert ids == ["1", "2", "3"]

    async def test_test_case_steps_and_attachment_metadata(self):
        test_case = {
            "_type": "TestCase",
            "ObjectID": 7,
            "FormattedID": "TC7",
            "Name": "Login works",
            "Steps": {"Count": 3},
            "Attachments": {"Count": 1},
        }
        steps = [
            {"StepIndex": 2, "Input": "Submit", "ExpectedResult": "Dashboard shown"},
            {"StepIndex": 0, "Input": "Open the login page", "ExpectedResult": ""},
            {"StepIndex": 1, "Input": "", "ExpectedResult": None},
        ]
        attachment = {
            "ObjectID": 5001,
            "Name": "shot.png",
            "ContentType": "image/png",
            "Size": 9,
            "Content": {"_ref": "https://rally.test/slm/webservice/v2.0/attachmentcontent/6001"},
        }
        seen = []

        def handler(request):
            seen.append(request.url.path)
            path = request.url.path.lower()
            if path.endswith("/testcasestep"):
                results = steps
            elif path.endswith("/attachment"):
                results = [attachment]
            else:
                results = [test_case]
            return httpx.Response(
                200, json={"QueryResult": {"Results": results, "TotalResultCount": len(results)}}
            )

        client = _rally(handler)
        try:
            record = await client.fetch_record("TC7")
        finally:
            await client.close()

        assert [(s.index, s.input, s.expected_result) for s in record.test_steps] == [
            (0, "Open the login page", ""),
            (2, "Submit", "Dashboard shown"),
        ]
        (meta,) = record.attachments
        assert meta.content == b""
        assert meta.size == 9
        assert meta.content_ref.endswith("/attachmentcontent/6001")
        assert not any(path.endswith("/6001") for path in seen)

    async def test_fetch_attachment_content(self):
        ref = "https://rally.test/slm/webservice/v2.0/attachmentcontent/6001"
        encoded = base64.b64encode(b"png-bytes").decode()

        def handler(request):
            assert str(request.url).startswith(ref)
            return httpx.Response(200, json={"AttachmentContent": {"Content": encoded}})

        client = _rally(handler)
        try:
            content = await client.fetch_attachment_content(
                SourceAttachment("5001", "shot.png", content_ref=ref)
            )
        finally:
            await client.close()

        assert content == b"png-bytes"
