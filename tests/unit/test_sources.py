"""Tests for workflow and credential sources."""

import httpx
import pytest

from flowgate.errors import ConfigurationError, UpstreamParseError
from flowgate.sources import (
    CredentialInventory,
    InMemoryCredentialIndex,
    N8nClient,
    referenced_credential_ids,
)

N8N = "https://n8n.dev.example.com"


def n8n_client(handler, **kwargs) -> N8nClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return N8nClient(N8N, "dev-key", http_client=http, **kwargs)


@pytest.mark.asyncio
async def test_list_workflows_follows_cursor():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        cursor = request.url.params.get("cursor")
        if cursor is None:
            return httpx.Response(
                200,
                json={
                    "data": [{"id": 1, "name": "First", "active": True, "createdAt": "2024-05-01T10:00:00.000Z"}],
                    "nextCursor": "page2",
                },
            )
        return httpx.Response(200, json={"data": [{"id": "2", "name": "Second"}], "nextCursor": None})

    workflows = await n8n_client(handler, page_size=1).list_workflows()

    assert [w.id for w in workflows] == ["1", "2"]
    assert workflows[0].active is True
    assert workflows[0].created_at.year == 2024
    assert seen[0].url.path == "/api/v1/workflows"
    assert seen[0].url.params["limit"] == "1"
    assert seen[1].url.params["cursor"] == "page2"
    assert all(r.headers["X-N8N-API-KEY"] == "dev-key" for r in seen)


@pytest.mark.asyncio
async def test_page_size_is_capped():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"data": []})

    await n8n_client(handler, page_size=1000).list_workflows()
    assert seen[0].url.params["limit"] == "250"


@pytest.mark.asyncio
async def test_get_workflow():
    def handler(request):
        assert request.url.path == "/api/v1/workflows/42"
        return httpx.Response(200, json={"id": "42", "nodes": []})

    assert (await n8n_client(handler).get_workflow("42"))["id"] == "42"


@pytest.mark.asyncio
async def test_get_workflow_errors():
    not_found = n8n_client(lambda request: httpx.Response(404))
    with pytest.raises(httpx.HTTPStatusError):
        await not_found.get_workflow("404")

    not_json = n8n_client(lambda request: httpx.Response(200, text="oops"))
    with pytest.raises(UpstreamParseError):
        await not_json.get_workflow("1")


def test_n8n_client_requires_credentials():
    with pytest.raises(ConfigurationError):
        N8nClient("", "key")
    with pytest.raises(ConfigurationError):
        N8nClient(N8N, "")


def test_referenced_credential_ids_are_ordered_and_unique():
    workflow = {
        "nodes": [
            {"name": "Trigger"},
            {"name": "Slack", "credentials": {"slackApi": {"id": "5", "name": "Slack"}}},
            {"name": "HTTP", "credentials": {"httpBasicAuth": {"id": 3}, "oauth": {"name": "no id"}}},
            {"name": "Slack again", "credentials": {"slackApi": {"id": "5"}}},
            "garbage",
        ]
    }
    assert referenced_credential_ids(workflow) == ["5", "3"]
    assert referenced_credential_ids({}) == []


class StaticWorkflows:
    def __init__(self, workflow):
        self.workflow = workflow
        self.calls = 0

    async def get_workflow(self, workflow_id):
        self.calls += 1
        return self.workflow


@pytest.mark.asyncio
async def test_missing_credentials():
    workflows = StaticWorkflows(
        {"nodes": [{"credentials": {"a": {"id": "1"}, "b": {"id": "2"}, "c": {"id": "3"}}}]}
    )
    inventory = CredentialInventory(workflows, InMemoryCredentialIndex(["2"]))
    assert await inventory.missing_credentials("42") == ["1", "3"]

    promoted = CredentialInventory(workflows, InMemoryCredentialIndex(["1", "2", "3"]))
    assert await promoted.missing_credentials("42") == []


@pytest.mark.asyncio
async def test_workflow_without_credentials():
    inventory = CredentialInventory(StaticWorkflows({"nodes": []}), InMemoryCredentialIndex())
    assert await inventory.missing_credentials("42") == []
