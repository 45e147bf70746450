"""HTTP routes, exercised through httpx.ASGITransport with container overrides."""

import httpx
import pytest_asyncio

from crm_automation.core.container import container
from crm_automation.main import app
from crm_automation.models.database import ExecutionStatus
from crm_automation.services.dry_run import DryRunExecutor
from tests.conftest import ORG_ID, edge, make_workflow, node

ASK_NAME = {
    "nodes": [
        node("t", "trigger"),
        node("wait", "wait_input", inputType="text", storeAs="name"),
        node("hi", "send_message", message="Hola {{name}}"),
    ],
    "edges": [edge("t", "wait"), edge("wait", "hi")],
}

MESSAGE = {
    "organizationId": ORG_ID,
    "conversationId": "conv-1",
    "channel": "whatsapp",
    "leadId": "lead-1",
    "sender": "+5215550001",
    "content": "hola",
}


@pytest_asyncio.fixture
async def client(settings, database, runner, dispatcher):
    with container.database.override(database), \
            container.runner.override(runner), \
            container.dispatcher.override(dispatcher), \
            container.dry_run.override(DryRunExecutor(settings)):
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
            yield http


async def test_message_starts_then_resumes(client, database, runner, outbound):
    await database.save_workflow(make_workflow(ASK_NAME))

    started = await client.post("/api/automation/events/message", json=MESSAGE)
    await runner.drain()

    assert started.status_code == 200
    body = started.json()
    assert len(body["started"]) == 1 and body["resumed"] == []
    execution_id = body["started"][0]["execution_id"]

    status = await client.get(f"/api/automation/executions/{execution_id}")
    assert status.json()["status"] == ExecutionStatus.WAITING.value

    resumed = await client.post("/api/automation/events/message", json={**MESSAGE, "content": "Ana"})

    assert resumed.json()["resumed"] == [{"execution_id": execution_id, "node_id": "wait"}]
    assert outbound.texts == ["Hola Ana"]


async def test_unknown_execution_is_404(client):
    assert (await client.get("/api/automation/executions/nope")).status_code == 404
    response = await client.post("/api/automation/executions/nope/resume", json={"nodeId": "n1"})
    assert response.status_code == 404


async def test_resume_endpoint_merges_context(client, database, runner):
    await database.save_workflow(make_workflow(ASK_NAME))
    started = await client.post("/api/automation/events/message", json=MESSAGE)
    await runner.drain()
    execution_id = started.json()["started"][0]["execution_id"]

    response = await client.post(f"/api/automation/executions/{execution_id}/resume", json={
        "nodeId": "wait",
        "context": {"source": "agent"},
        "response": {"user_input": "Bea"},
    })

    assert response.status_code == 200
    assert response.json()["status"] == "completed"
    assert response.json()["context"]["source"] == "agent"

    again = await client.post(f"/api/automation/executions/{execution_id}/resume", json={"nodeId": "wait"})
    assert again.status_code == 409


async def test_sweeps(client):
    timeouts = await client.post("/api/automation/sweeps/timeouts")
    delays = await client.post("/api/automation/sweeps/delays")

    assert timeouts.json() == {"processed": 0, "resumed": 0, "failed": 0, "cancelled": 0}
    assert delays.status_code == 200


async def test_dry_run_endpoints(client, database):
    definition = {"nodes": [node("t", "trigger"), node("c", "condition")], "edges": [edge("t", "c")]}

    response = await client.post("/api/automation/dry-run", json={"definition": definition,
                                                                  "testData": {"lead": {"score": 1}}})
    assert response.status_code == 200
    assert [n["nodeId"] for n in response.json()["nodes"]] == ["t", "c"]

    missing = await client.post("/api/automation/dry-run", json={})
    assert missing.status_code == 422

    workflow = await database.save_workflow(make_workflow(definition))
    stored = await client.post(f"/api/automation/workflows/{workflow.id}/dry-run", json={})
    assert stored.json()["success"] is True

    unknown = await client.post("/api/automation/workflows/nope/dry-run", json={})
    assert unknown.status_code == 404
