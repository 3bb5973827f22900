"""Rally source client.

Implements the source connector over the Rally Web Services API v2.0.
Records are read through the ``artifact`` endpoint so one lookup covers
stories, defects, tasks, test cases and portfolio items; related
collections, discussion posts, test case steps and attachment metadata are
fetched through the ``_ref`` links the API returns. Attachment content is
downloaded separately, right before the attachment is uploaded.
"""

import asyncio
import base64
from datetime import datetime
from typing import Any

import httpx

from workitem_bridge.client.base_client import BaseAPIClient
from workitem_bridge.client.exceptions import APIError, NetworkError, NotFoundError
from workitem_bridge.config import RallyConfig
from workitem_bridge.models import (
    SourceAttachment,
    SourceComment,
    SourceRecord,
    SourceTestStep,
)
from workitem_bridge.utils.logging import get_logger
from workitem_bridge.utils.retry import retry_api_call_short

logger = get_logger(__name__)

ARTIFACT_TYPES = "hierarchicalrequirement,defect,task,testcase,portfolioitem"

# Attributes that hold the parent reference, by artifact type (checked in order)
PARENT_ATTRIBUTES = ("Parent", "PortfolioItem", "WorkProduct", "Requirement")
# Collections whose members become children of the record
CHILD_COLLECTIONS = ("Children", "Tasks", "UserStories")

_KNOWN_ATTRIBUTES = {
    "ObjectID",
    "FormattedID",
    "Name",
    "Description",
    "Notes",
    "ScheduleState",
    "State",
    "Owner",
    "PlanEstimate",
    "Estimate",
    "ToDo",
    "Actuals",
    "CreationDate",
    "LastUpdateDate",
    "Discussion",
    "Attachments",
    "TestCases",
    "Steps",
    *PARENT_ATTRIBUTES,
    *CHILD_COLLECTIONS,
}


def _parse_datetime(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


def _parse_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _ref_name(value: Any) -> Any:
    """Collapse a Rally object reference to its display name."""
    if isinstance(value, dict):
        return value.get("_refObjectName") or value.get("Name") or value.get("_ref")
    return value


def _state_of(raw: dict[str, Any]) -> str | None:
    state = raw.get("ScheduleState") or raw.get("State")
    return _ref_name(state) if state is not None else None


class RallySourceClient(BaseAPIClient):
    """Client for a Rally workspace."""

    def __init__(
        self,
        config: RallyConfig,
        rate_limit: int = 20,
        page_size: int = 200,
        log_payloads: bool = False,
        max_payload_size: int = 10000,
        max_connections: int | None = None,
        max_keepalive_connections: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize Rally source client.

        Args:
            config: Rally configuration
            rate_limit: Maximum requests per second
            page_size: Page size for queries
            log_payloads: Enable request/response payload logging
            max_payload_size: Maximum payload size to log before truncation
            max_connections: Maximum number of connections in pool
            max_keepalive_connections: Maximum keep-alive connections
            transport: Optional httpx transport override
        """
        self.config = config
        self.page_size = page_size
        super().__init__(
            base_url=f"{config.url}/slm/webservice/v2.0",
            verify_ssl=config.verify_ssl,
            timeout=config.timeout,
            rate_limit=rate_limit,
            log_payloads=log_payloads,
            max_payload_size=max_payload_size,
            max_connections=max_connections,
            max_keepalive_connections=max_keepalive_connections,
            transport=transport,
        )

    def _build_headers(self) -> dict[str, str]:
        return {
            "ZSESSIONID": self.config.api_key,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _scope_params(self) -> dict[str, Any]:
        params: dict[str, Any] = {"workspace": f"/workspace/{self.config.workspace}"}
        if self.config.project:
            params["project"] = f"/project/{self.config.project}"
            params["projectScopeDown"] = "true"
        return params

    @retry_api_call_short
    async def query(
        self,
        endpoint: str,
        query: str | None = None,
        fetch: str = "true",
        start: int = 1,
        pagesize: int | None = None,
        extra: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Run one page of a WSAPI query and return the ``QueryResult`` body."""
        params = {
            **self._scope_params(),
            "fetch": fetch,
            "start": start,
            "pagesize": pagesize or self.page_size,
        }
        if query:
            params["query"] = query
        if extra:
            params.update(extra)

        data = await self.get(endpoint, params=params)
        result = data.get("QueryResult", {})
        errors = result.get("Errors") or []
        if errors:
            raise APIError(message=f"Rally query failed: {'; '.join(errors)}", response=result)
        return result

    async def query_all(
        self, endpoint: str, query: str | None = None, fetch: str = "true", **extra: Any
    ) -> list[dict[str, Any]]:
        """Page through a WSAPI query and return every result."""
        results: list[dict[str, Any]] = []
        start = 1
        while True:
            page = await self.query(endpoint, query=query, fetch=fetch, start=start, extra=extra)
            items = page.get("Results", [])
            results.extend(items)
            total = int(page.get("TotalResultCount", len(results)))
            if not items or len(results) >= total:
                return results
            start += len(items)

    async def _find_artifact(self, record_id: str) -> dict[str, Any] | None:
        if record_id.isdigit():
            query = f"(ObjectID = {record_id})"
        else:
            query = f'(FormattedID = "{record_id}")'
        page = await self.query("artifact", query=query, extra={"types": ARTIFACT_TYPES})
        results = page.get("Results", [])
        return results[0] if results else None

    async def _collection_ids(self, raw: dict[str, Any], attribute: str) -> list[str]:
        ref = raw.get(attribute)
        if not isinstance(ref, dict) or not ref.get("_ref") or not ref.get("Count"):
            return []
        items = await self.query_all(ref["_ref"], fetch="ObjectID,FormattedID")
        return [str(item["ObjectID"]) for item in items if item.get("ObjectID") is not None]

    async def _comments(self, object_id: str) -> list[SourceComment]:
        posts = await self.query_all(
            "conversationpost",
            query=f"(Artifact.ObjectID = {object_id})",
            fetch="ObjectID,Text,User,CreationDate",
        )
        return [
            SourceComment(
                object_id=str(post.get("ObjectID", "")),
                text=post.get("Text") or "",
                creation_date=_parse_datetime(post.get("CreationDate")),
                user=_ref_name(post.get("User")),
            )
            for post in posts
        ]

    async def _attachments(self, object_id: str) -> list[SourceAttachment]:
        # Metadata only; content is downloaded when the attachment is uploaded
        items = await self.query_all(
            "attachment",
            query=f"(Artifact.ObjectID = {object_id})",
            fetch="ObjectID,Name,Description,ContentType,Size,Content,CreationDate,User",
        )
        attachments = []
        for item in items:
            content_ref = item.get("Content")
            attachments.append(
                SourceAttachment(
                    object_id=str(item.get("ObjectID", "")),
                    name=item.get("Name") or f"attachment-{item.get('ObjectID')}",
                    content_type=item.get("ContentType") or "application/octet-stream",
                    size=int(item.get("Size") or 0),
                    description=item.get("Description"),
                    creation_date=_parse_datetime(item.get("CreationDate")),
                    user=_ref_name(item.get("User")),
                    content_ref=content_ref.get("_ref") if isinstance(content_ref, dict) else None,
                )
            )
        return attachments

    async def fetch_attachment_content(self, attachment: SourceAttachment) -> bytes:
        """Download the bytes of ``attachment``."""
        if attachment.content or not attachment.content_ref:
            return attachment.content
        body = await self.get(attachment.content_ref)
        encoded = body.get("AttachmentContent", {}).get("Content") or ""
        return base64.b64decode(encoded)

    async def _test_steps(self, object_id: str) -> list[SourceTestStep]:
        items = await self.query_all(
            "testcasestep",
            query=f"(TestCase.ObjectID = {object_id})",
            fetch="StepIndex,Input,ExpectedResult",
        )
        steps = [
            SourceTestStep(
                index=int(item.get("StepIndex") or 0),
                input=item.get("Input") or "",
                expected_result=item.get("ExpectedResult") or "",
            )
            for item in items
            if item.get("Input") or item.get("ExpectedResult")
        ]
        return sorted(steps, key=lambda step: step.index)

    async def fetch_record(self, record_id: str) -> SourceRecord | None:
        try:
            raw = await self._find_artifact(str(record_id))
            if raw is None:
                logger.warning("source_record_not_found", record_id=record_id)
                return None
            return await self._build_record(raw)
        except NotFoundError:
            logger.warning("source_record_not_found", record_id=record_id)
            return None
        except (APIError, NetworkError) as e:
            logger.warning("source_record_fetch_failed", record_id=record_id, error=str(e))
            raise

    async def _build_record(self, raw: dict[str, Any]) -> SourceRecord:
        object_id = str(raw["ObjectID"])

        parent = None
        for attribute in PARENT_ATTRIBUTES:
            ref = raw.get(attribute)
            if isinstance(ref, dict) and ref.get("ObjectID") is not None:
                parent = str(ref["ObjectID"])
                break

        child_lists = await asyncio.gather(
            *(self._collection_ids(raw, attribute) for attribute in CHILD_COLLECTIONS)
        )
        children = tuple(dict.fromkeys(cid for ids in child_lists for cid in ids))
        test_cases = tuple(await self._collection_ids(raw, "TestCases"))

        comments = await self._comments(object_id) if raw.get("Discussion") else []
        attachments = await self._attachments(object_id) if raw.get("Attachments") else []
        test_steps = await self._test_steps(object_id) if raw.get("Steps") else []

        custom_fields = {
            key: _ref_name(value)
            for key, value in raw.items()
            if not key.startswith("_") and key not in _KNOWN_ATTRIBUTES
        }

        return SourceRecord(
            object_id=object_id,
            formatted_id=raw.get("FormattedID") or "",
            record_type=raw.get("_type") or "",
            name=raw.get("Name") or "",
            owner=_ref_name(raw.get("Owner")),
            state=_state_of(raw),
            description=raw.get("Description"),
            notes=raw.get("Notes"),
            plan_estimate=_parse_float(raw.get("PlanEstimate")),
            estimate=_parse_float(raw.get("Estimate")),
            to_do=_parse_float(raw.get("ToDo")),
            actuals=_parse_float(raw.get("Actuals")),
            parent=parent,
            children=children,
            test_cases=test_cases,
            test_steps=tuple(test_steps),
            comments=tuple(comments),
            attachments=tuple(attachments),
            creation_date=_parse_datetime(raw.get("CreationDate")),
            last_update_date=_parse_datetime(raw.get("LastUpdateDate")),
            custom_fields=custom_fields,
        )

    async def fetch_all_record_ids(self, query: str | None = None) -> list[str]:
        items = await self.query_all(
            "artifact", query=query, fetch="ObjectID", types=ARTIFACT_TYPES, order="ObjectID"
        )
        ids = [str(item["ObjectID"]) for item in items if item.get("ObjectID") is not None]
        logger.info("source_ids_listed", query=query, count=len(ids))
        return ids
