"""Tests for the HTTP and in-memory engine clients."""

import json

import httpx
import pytest

from flowgate.engine import InMemoryEngineClient, find_suspend_nodes, suspend_schema
from flowgate.engine.http import HttpEngineClient
from flowgate.errors import EngineError

WAIT_WORKFLOW = {
    "id": "42",
    "nodes": [
        {"name": "Trigger", "type": "n8n-nodes-base.manualTrigger"},
        {
            "name": "Wait for approval",
            "type": "n8n-nodes-base.Wait",
            "parameters": {"inputSchema": {"approved": {"type": "boolean", "required": True}}},
        },
    ],
}


def _client(handler) -> HttpEngineClient:
    return HttpEngineClient(
        "http://n8n.test/",
        api_key="engine-key",
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


def test_suspend_node_detection():
    nodes = WAIT_WORKFLOW["nodes"] + [{"name": "Hook", "type": "n8n-nodes-base.webhook"}]
    assert [n["name"] for n in find_suspend_nodes(nodes)] == ["Wait for approval", "Hook"]
    assert suspend_schema(nodes) == {"approved": {"type": "boolean", "required": True}}
    assert "userInput" in suspend_schema([{"type": "n8n-nodes-base.set"}])


@pytest.mark.asyncio
async def test_execute_with_credentials_injects_keys():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["header"] = request.headers.get("X-N8N-API-KEY")
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200, json={"id": 7, "finished": True, "data": {"resultData": {"runData": {}}}}
        )

    client = _client(handler)
    result = await client.execute_workflow_with_credentials(
        "42", {"topic": "x"}, {"openrouter": {"apiKey": "sk-or-v1-abc"}}
    )

    assert seen["url"] == "http://n8n.test/api/v1/workflows/42/execute"
    assert seen["header"] == "engine-key"
    assert seen["body"]["data"] == {
        "topic": "x",
        "openrouter_api_key": "sk-or-v1-abc",
        "apiKey": "sk-or-v1-abc",
    }
    assert seen["body"]["credentialOverrides"] == {"openrouter": {"apiKey": "sk-or-v1-abc"}}
    assert result.finished
    assert result.execution_id == "7"
    await client.aclose()


@pytest.mark.asyncio
async def test_engine_errors_are_wrapped():
    client = _client(lambda request: httpx.Response(500, text="boom"))
    with pytest.raises(EngineError) as exc_info:
        await client.execute_workflow("42", {})
    assert "500" in str(exc_info.value)
    await client.aclose()


@pytest.mark.asyncio
async def test_waiting_run_becomes_one_requirement():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            return httpx.Response(200, json=WAIT_WORKFLOW)
        return httpx.Response(
            200, json={"id": 9, "finished": False, "waitTill": "2025-03-01T10:00:00Z"}
        )

    client = _client(handler)
    dynamic = await client.execute_workflow_with_dynamic_input("42", {}, timeout_minutes=30)

    assert dynamic.suspended
    assert len(dynamic.inputs_required) == 1
    requirement = dynamic.inputs_required[0]
    assert requirement.step == 1
    assert requirement.webhook_url.startswith("http://n8n.test/webhook/42-step-1-")
    assert requirement.input_schema == {"approved": {"type": "boolean", "required": True}}
    assert dynamic.execution.execution_id == "9"
    await client.aclose()


@pytest.mark.asyncio
async def test_finished_dynamic_run_has_no_requirements():
    client = _client(lambda request: httpx.Response(200, json={"id": 3, "finished": True}))
    dynamic = await client.execute_workflow_with_dynamic_input("42", {})
    assert not dynamic.suspended
    assert dynamic.execution.finished
    await client.aclose()


@pytest.mark.asyncio
async def test_resume_posts_payload_then_fetches_execution():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append((request.method, str(request.url)))
        if request.method == "POST":
            assert json.loads(request.content) == {"approved": True}
            return httpx.Response(200, json={"message": "Workflow was started"})
        return httpx.Response(
            200, json={"id": 9, "finished": True, "data": {"resultData": {"runData": {}}}}
        )

    client = _client(handler)
    result = await client.resume_workflow_with_input(
        "9", "http://n8n.test/webhook/42-step-1-abc", {"approved": True}
    )

    assert requests == [
        ("POST", "http://n8n.test/webhook/42-step-1-abc"),
        ("GET", "http://n8n.test/api/v1/executions/9"),
    ]
    assert result.finished
    await client.aclose()


@pytest.mark.asyncio
async def test_resume_failure_raises_engine_error():
    client = _client(lambda request: httpx.Response(404))
    with pytest.raises(EngineError) as exc_info:
        await client.resume_workflow_with_input("9", "http://n8n.test/webhook/x", {})
    assert str(exc_info.value).startswith("Failed to resume workflow")
    await client.aclose()


@pytest.mark.asyncio
async def test_inmemory_engine_records_calls():
    engine = InMemoryEngineClient()
    engine.script("wf", suspends=True, extra_requirements=1, resume_finished=False)

    dynamic = await engine.execute_workflow_with_dynamic_input("wf", {"a": 1}, step=2)
    assert [r.step for r in dynamic.inputs_required] == [2, 3]
    assert engine.calls[0]["method"] == "execute_workflow_with_dynamic_input"

    result = await engine.resume_workflow_with_input(
        dynamic.execution.execution_id, dynamic.inputs_required[0].webhook_url, {}
    )
    assert not result.finished
    assert len(engine.resume_calls) == 1


@pytest.mark.asyncio
async def test_non_json_reply_is_an_engine_error():
    client = _client(lambda request: httpx.Response(200, text="OK"))
    with pytest.raises(EngineError) as exc_info:
        await client.execute_workflow("42", {})
    assert str(exc_info.value).startswith("Engine returned an invalid response")
    await client.aclose()


@pytest.mark.asyncio
async def test_wrongly_shaped_reply_is_an_engine_error():
    client = _client(lambda request: httpx.Response(200, json={"finished": True, "data": [1, 2]}))
    with pytest.raises(EngineError):
        await client.execute_workflow_with_credentials("42", {}, {})
    await client.aclose()

    client = _client(lambda request: httpx.Response(200, json=["not", "an", "execution"]))
    with pytest.raises(EngineError):
        await client.execute_workflow_with_dynamic_input("42", {})
    await client.aclose()


@pytest.mark.asyncio
async def test_resume_with_non_json_execution_is_an_engine_error():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            return httpx.Response(200, json={"message": "Workflow was started"})
        return httpx.Response(200, text="<html>proxy error</html>")

    client = _client(handler)
    with pytest.raises(EngineError):
        await client.resume_workflow_with_input("9", "http://n8n.test/webhook/x", {})
    await client.aclose()

    client = _client(lambda request: httpx.Response(200, text="Workflow was started"))
    with pytest.raises(EngineError):
        await client.resume_workflow_with_input(None, "http://n8n.test/webhook/x", {})
    await client.aclose()
