"""Client for the development workflow engine's public API."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel

from ..config import N8nConfig
from ..constants import DEFAULT_N8N_TIMEOUT, N8N_MAX_PAGE_SIZE
from ..errors import ConfigurationError, UpstreamParseError

logger = logging.getLogger(__name__)


class WorkflowSummary(BaseModel):
    id: str
    name: Optional[str] = None
    active: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class N8nClient:
    """Reads workflow metadata through the cursor-paginated REST API."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        api_version: str = "v1",
        page_size: int = N8N_MAX_PAGE_SIZE,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout_seconds: float = DEFAULT_N8N_TIMEOUT,
        verify_tls: bool = True,
    ) -> None:
        if not base_url or not api_key:
            raise ConfigurationError("n8n base_url and api_key are required")
        self._api_base = f"{base_url.rstrip('/')}/api/{api_version}"
        self._page_size = max(1, min(page_size, N8N_MAX_PAGE_SIZE))
        self._headers = {"Accept": "application/json", "X-N8N-API-KEY": api_key}
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=timeout_seconds, verify=verify_tls
        )

    @classmethod
    def from_config(cls, config: N8nConfig, **kwargs: Any) -> "N8nClient":
        return cls(
            config.base_url or "",
            config.api_key or "",
            api_version=config.api_version,
            page_size=config.page_size,
            timeout_seconds=config.timeout_seconds,
            verify_tls=not config.insecure_tls,
            **kwargs,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _get(self, path: str, params: Optional[Dict[str, str]] = None) -> Any:
        resp = await self._client.get(
            f"{self._api_base}{path}", params=params, headers=self._headers
        )
        resp.raise_for_status()
        try:
            return resp.json()
        except ValueError as exc:
            raise UpstreamParseError(f"Non-JSON response from n8n {path}") from exc

    async def list_workflows(self) -> List[WorkflowSummary]:
        """Return every workflow, following ``nextCursor`` until exhausted."""
        workflows: List[WorkflowSummary] = []
        cursor: Optional[str] = None
        while True:
            params = {"limit": str(self._page_size)}
            if cursor:
                params["cursor"] = cursor
            page = await self._get("/workflows", params)
            if not isinstance(page, dict):
                raise UpstreamParseError("Workflow listing is not a JSON object")
            for item in page.get("data") or []:
                workflows.append(
                    WorkflowSummary(
                        id=str(item.get("id")),
                        name=item.get("name"),
                        active=bool(item.get("active")),
                        created_at=item.get("createdAt"),
                        updated_at=item.get("updatedAt"),
                    )
                )
            cursor = page.get("nextCursor")
            if not cursor:
                break
        logger.debug(f"Listed {len(workflows)} workflows from {self._api_base}")
        return workflows

    async def get_workflow(self, workflow_id: str) -> Dict[str, Any]:
        doc = await self._get(f"/workflows/{workflow_id}")
        if not isinstance(doc, dict):
            raise UpstreamParseError(f"Workflow {workflow_id} is not a JSON object")
        return doc


def referenced_credential_ids(workflow: Dict[str, Any]) -> List[str]:
    """Credential ids used by a workflow's nodes, in first-seen order."""
    seen: Dict[str, None] = {}
    for node in workflow.get("nodes") or []:
        if not isinstance(node, dict):
            continue
        credentials = node.get("credentials")
        if not isinstance(credentials, dict):
            continue
        for ref in credentials.values():
            cred_id = ref.get("id") if isinstance(ref, dict) else None
            if cred_id not in (None, ""):
                seen.setdefault(str(cred_id), None)
    return list(seen)
