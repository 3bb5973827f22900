"""Azure DevOps target client.

Implements the target connector over the Azure DevOps work item tracking
REST API: WIQL lookups, JSON-Patch create/update, relations, attachments
and comments.
"""

import base64
from typing import Any
from urllib.parse import quote

import httpx

from workitem_bridge.client.base_client import BaseAPIClient
from workitem_bridge.client.exceptions import APIError
from workitem_bridge.config import AdoConfig
from workitem_bridge.models import SourceAttachment, TargetRecord
from workitem_bridge.utils.logging import get_logger
from workitem_bridge.utils.retry import retry_api_call_short

logger = get_logger(__name__)

JSON_PATCH = {"Content-Type": "application/json-patch+json"}
COMMENTS_API_VERSION = "7.1-preview.3"


def _wiql_literal(value: str) -> str:
    """Quote a value for use inside a WIQL string literal."""
    return "'" + value.replace("'", "''") + "'"


def build_field_operations(fields: dict[str, Any]) -> list[dict[str, Any]]:
    """Convert a field dict into JSON-Patch ``add`` operations."""
    return [
        {"op": "add", "path": f"/fields/{name}", "value": value} for name, value in fields.items()
    ]


class AdoTargetClient(BaseAPIClient):
    """Client for an Azure DevOps project.

    All work item calls are scoped to ``config.project``.
    """

    def __init__(
        self,
        config: AdoConfig,
        rate_limit: int = 20,
        log_payloads: bool = False,
        max_payload_size: int = 10000,
        max_connections: int | None = None,
        max_keepalive_connections: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize Azure DevOps target client.

        Args:
            config: Azure DevOps configuration
            rate_limit: Maximum requests per second
            log_payloads: Enable request/response payload logging
            max_payload_size: Maximum payload size to log before truncation
            max_connections: Maximum number of connections in pool
            max_keepalive_connections: Maximum keep-alive connections
            transport: Optional httpx transport override
        """
        self.config = config
        self.project = config.project
        self.api_version = config.api_version
        self._project_path = quote(config.project, safe="")

        super().__init__(
            base_url=f"{config.url}/{quote(config.organization, safe='')}",
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
        credentials = base64.b64encode(f":{self.config.token}".encode()).decode("ascii")
        return {
            "Authorization": f"Basic {credentials}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _wit(self, path: str) -> str:
        return f"{self._project_path}/_apis/wit/{path}"

    def work_item_url(self, record_id: int) -> str:
        """Absolute API URL of a work item, as used in relations."""
        return f"{self.base_url}/_apis/wit/workItems/{record_id}"

    # Queries

    @retry_api_call_short
    async def query_ids(self, wiql: str) -> list[int]:
        """Run a WIQL query and return matching work item ids."""
        result = await self.post(
            self._wit("wiql"),
            json_data={"query": wiql},
            params={"api-version": self.api_version},
        )
        return [int(item["id"]) for item in result.get("workItems", [])]

    async def find_by_tag(self, tag: str) -> list[int]:
        wiql = (
            "SELECT [System.Id] FROM WorkItems "
            f"WHERE [System.TeamProject] = {_wiql_literal(self.project)} "
            f"AND [System.Tags] CONTAINS {_wiql_literal(tag)}"
        )
        return await self.query_ids(wiql)

    async def find_by_title(self, fragment: str, work_item_type: str | None = None) -> list[int]:
        wiql = (
            "SELECT [System.Id] FROM WorkItems "
            f"WHERE [System.TeamProject] = {_wiql_literal(self.project)} "
            f"AND [System.Title] CONTAINS {_wiql_literal(fragment)}"
        )
        if work_item_type:
            wiql += f" AND [System.WorkItemType] = {_wiql_literal(work_item_type)}"
        return await self.query_ids(wiql)

    async def record_exists(self, source_unique_id: str) -> bool:
        return bool(await self.find_by_tag(f"RallyObjectID-{source_unique_id}"))

    @retry_api_call_short
    async def get_record(self, record_id: int) -> TargetRecord:
        data = await self.get(
            self._wit(f"workitems/{record_id}"),
            params={"$expand": "relations", "api-version": self.api_version},
        )
        return TargetRecord(
            id=int(data["id"]),
            fields=data.get("fields", {}),
            relations=data.get("relations") or [],
            rev=data.get("rev"),
        )

    # Writes

    async def create_record(
        self, work_item_type: str, fields: dict[str, Any], bypass_rules: bool = False
    ) -> int:
        # Not retried here: a create that timed out may still have succeeded
        params = {"api-version": self.api_version}
        if bypass_rules:
            params["bypassRules"] = "true"

        result = await self.post(
            self._wit(f"workitems/${quote(work_item_type, safe='')}"),
            json_data=build_field_operations(fields),
            params=params,
            headers=JSON_PATCH,
        )
        record_id = int(result["id"])
        logger.info("work_item_created", work_item_type=work_item_type, target_id=record_id)
        return record_id

    @retry_api_call_short
    async def patch_fields(
        self, record_id: int, fields: dict[str, Any], bypass_rules: bool = False
    ) -> bool:
        if not fields:
            return True
        params = {"api-version": self.api_version}
        if bypass_rules:
            params["bypassRules"] = "true"

        await self.patch(
            self._wit(f"workitems/{record_id}"),
            json_data=build_field_operations(fields),
            params=params,
            headers=JSON_PATCH,
        )
        logger.debug(
            "work_item_patched",
            target_id=record_id,
            fields=sorted(fields),
            bypass_rules=bypass_rules,
        )
        return True

    async def add_relation(
        self, record_id: int, rel: str, url: str, attributes: dict[str, Any] | None = None
    ) -> None:
        """Append a relation to a work item."""
        value: dict[str, Any] = {"rel": rel, "url": url}
        if attributes:
            value["attributes"] = attributes
        await self.patch(
            self._wit(f"workitems/{record_id}"),
            json_data=[{"op": "add", "path": "/relations/-", "value": value}],
            params={"api-version": self.api_version},
            headers=JSON_PATCH,
        )

    @retry_api_call_short
    async def link_records(self, parent_id: int, child_id: int, link_kind: str) -> bool:
        try:
            await self.add_relation(parent_id, link_kind, self.work_item_url(child_id))
        except APIError as e:
            # Re-linking an existing pair is reported as a 400
            if e.status_code == 400 and "already exists" in str(e).lower():
                logger.debug("relation_already_exists", parent_id=parent_id, child_id=child_id)
                return True
            raise
        logger.info("work_items_linked", parent_id=parent_id, child_id=child_id, kind=link_kind)
        return True

    async def upload_attachment(self, record_id: int, attachment: SourceAttachment) -> str:
        uploaded = await self.post(
            self._wit("attachments"),
            params={"fileName": attachment.name, "api-version": self.api_version},
            content=attachment.content,
            headers={"Content-Type": "application/octet-stream"},
        )
        url = uploaded["url"]
        attributes = {"comment": attachment.description} if attachment.description else None
        await self.add_relation(record_id, "AttachedFile", url, attributes)
        logger.info(
            "attachment_uploaded",
            target_id=record_id,
            name=attachment.name,
            size=attachment.size or len(attachment.content),
        )
        return url

    async def add_comment(self, record_id: int, text: str) -> bool:
        await self.post(
            self._wit(f"workItems/{record_id}/comments"),
            json_data={"text": text},
            params={"api-version": COMMENTS_API_VERSION},
        )
        return True
