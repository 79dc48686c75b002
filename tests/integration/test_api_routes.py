"""HTTP API tests using an in-process ASGI transport."""

import httpx
import jwt
import pytest
import pytest_asyncio

from flowgate.api import create_app

REVIEW_NODES = [
    {
        "name": "Wait for answer",
        "type": "n8n-nodes-base.wait",
        "parameters": {"inputSchema": {"answer": {"type": "string", "required": True}}},
    }
]


@pytest_asyncio.fixture
async def client(runtime):
    transport = httpx.ASGITransport(app=create_app(runtime))
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        yield http


@pytest.fixture
def auth_headers(runtime):
    def _headers(user_id="user-1", workspace_id="ws-1", permissions=None):
        claims = {"sub": user_id, "workspace_id": workspace_id}
        if permissions:
            claims["permissions"] = permissions
        token = jwt.encode(claims, runtime.config.auth.jwt_secret, algorithm="HS256")
        return {"Authorization": f"Bearer {token}"}

    return _headers


async def _start_review(client, runtime, seed_workflow, headers):
    await seed_workflow("review", nodes=REVIEW_NODES)
    runtime.engine.script(
        "engine-review",
        suspends=True,
        input_schema=REVIEW_NODES[0]["parameters"]["inputSchema"],
    )
    response = await client.post(
        "/engines/execute", json={"workflowId": "review", "inputData": {}}, headers=headers
    )
    assert response.status_code == 200
    return response.json()["data"]


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_requests_without_token_are_rejected(client):
    response = await client.get("/engines/executions")
    assert response.status_code == 401
    assert response.json()["success"] is False

    response = await client.get(
        "/engines/executions", headers={"Authorization": "Bearer not-a-jwt"}
    )
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_execute_and_fetch(client, runtime, seed_workflow, auth_headers):
    await seed_workflow("summarize")
    runtime.engine.script("engine-summarize", result_data={"runData": {}})

    response = await client.post(
        "/engines/execute",
        json={"workflowId": "summarize", "inputData": {"text": "hi"}},
        headers=auth_headers(),
    )
    body = response.json()
    assert response.status_code == 200
    assert body["success"] is True
    assert body["data"]["status"] == "completed"
    assert body["data"]["apiKeyUsed"]["type"] == "platform"
    execution_id = body["data"]["id"]

    response = await client.get(f"/engines/executions/{execution_id}", headers=auth_headers())
    assert response.json()["data"]["inputData"] == {"text": "hi"}

    response = await client.get(
        f"/engines/executions/{execution_id}", headers=auth_headers(user_id="user-2")
    )
    assert response.status_code == 404

    response = await client.get("/engines/executions?status=completed", headers=auth_headers())
    assert [item["id"] for item in response.json()["data"]] == [execution_id]


@pytest.mark.asyncio
async def test_execute_request_is_validated(client, auth_headers):
    response = await client.post("/engines/execute", json={"inputData": {}}, headers=auth_headers())
    assert response.status_code == 400
    assert response.json()["details"][0]["field"] == "workflowId"

    response = await client.post(
        "/engines/execute", json={"workflowId": "missing"}, headers=auth_headers()
    )
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_invalid_status_filter(client, auth_headers):
    response = await client.get("/engines/executions?status=sleeping", headers=auth_headers())
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_webhook_lifecycle(client, runtime, seed_workflow, auth_headers, webhook_id):
    execution = await _start_review(client, runtime, seed_workflow, auth_headers())
    assert execution["status"] == "waiting_for_input"
    hook = webhook_id(execution["dynamicInput"]["webhookUrl"])

    response = await client.get("/engines/input/pending", headers=auth_headers())
    pending = response.json()
    assert pending["success"] is True
    assert pending["pagination"]["total"] == 1
    assert pending["inputs"][0]["execution"]["workflowName"] == "Review"

    response = await client.get(f"/engines/input/webhook/{hook}")
    status = response.json()["data"]
    assert status["execution"]["status"] == "waiting_for_input"
    assert status["inputRequirement"]["isExpired"] is False
    assert status["pendingInput"]["timeRemaining"] == 3_600_000

    response = await client.post(f"/engines/input/webhook/{hook}", json={})
    assert response.status_code == 400
    assert response.json()["details"] == [
        {"field": "answer", "message": "Field 'answer' is required"}
    ]

    response = await client.post(f"/engines/input/webhook/{hook}", json={"answer": "yes"})
    assert response.status_code == 200
    assert response.json()["status"] == "completed"

    response = await client.post(f"/engines/input/webhook/{hook}", json={"answer": "again"})
    assert response.status_code == 409

    response = await client.post("/engines/input/webhook/unknown-hook", json={"answer": "x"})
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_expired_webhook_is_gone(
    client, runtime, seed_workflow, auth_headers, webhook_id, clock
):
    execution = await _start_review(client, runtime, seed_workflow, auth_headers())
    hook = webhook_id(execution["dynamicInput"]["webhookUrl"])

    clock.advance(minutes=60)
    response = await client.post(f"/engines/input/webhook/{hook}", json={"answer": "late"})

    assert response.status_code == 410
    response = await client.get(
        f"/engines/executions/{execution['id']}", headers=auth_headers()
    )
    assert response.json()["data"]["status"] == "timeout"


@pytest.mark.asyncio
async def test_execution_input_route(client, runtime, seed_workflow, auth_headers):
    execution = await _start_review(client, runtime, seed_workflow, auth_headers())
    url = f"/engines/executions/{execution['id']}/input"

    response = await client.get(url, headers=auth_headers())
    data = response.json()["data"]
    assert data["isWaitingForInput"] is True
    assert data["inputRequirement"]["step"] == 1

    response = await client.post(
        url, json={"inputData": {"answer": "  ok  "}, "validateOnly": True}, headers=auth_headers()
    )
    assert response.json() == {
        "success": True,
        "valid": True,
        "errors": [],
        "sanitizedData": {"answer": "ok"},
    }

    response = await client.post(url, json={"inputData": {"answer": "ok"}}, headers=auth_headers())
    assert response.json()["status"] == "completed"

    response = await client.post(url, json={"inputData": {"answer": "ok"}}, headers=auth_headers())
    assert response.status_code == 409

    response = await client.get(url, headers=auth_headers())
    assert response.json()["data"]["inputHistory"][0]["inputData"] == {"answer": "ok"}


@pytest.mark.asyncio
async def test_cleanup_requires_admin(client, auth_headers):
    response = await client.get("/engines/jobs/cleanup", headers=auth_headers())
    assert response.status_code == 403

    admin = auth_headers(permissions=["admin:*"])
    response = await client.get("/engines/jobs/cleanup", headers=admin)
    assert response.json() == {
        "success": True,
        "status": "idle",
        "isRunning": False,
        "lastRun": None,
        "nextRun": None,
        "lastStats": None,
    }

    response = await client.post("/engines/jobs/cleanup", json={"action": "stop"}, headers=admin)
    assert response.status_code == 400

    response = await client.post("/engines/jobs/cleanup", json={"action": "run"}, headers=admin)
    body = response.json()
    assert body["success"] is True
    assert body["stats"]["triggeredBy"] == "admin:user-1"

    response = await client.get("/engines/jobs/cleanup", headers=admin)
    assert response.json()["lastStats"]["triggeredBy"] == "admin:user-1"
