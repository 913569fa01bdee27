"""HTTP API tests against the FastAPI app with an in-memory repository."""

import httpx
import pytest
from dependency_injector import providers

from conftest import linear_workflow
from core.container import container
from main import app
from services.execution.models import JobStatus, NodeRun, NodeRunState


@pytest.fixture
def repo(repository):
    container.reset_singletons()
    with container.database.override(providers.Object(repository)):
        yield repository
    container.reset_singletons()


@pytest.fixture
async def client(repo):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


async def save(client, workflow_id="wf-1", owner="user-1"):
    wf = linear_workflow()
    response = await client.put(f"/api/workflows/{workflow_id}", json={
        "name": "Linear", "ownerId": owner, **wf,
    })
    assert response.status_code == 200
    return response.json()["workflow"]


class TestWorkflowRoutes:

    @pytest.mark.asyncio
    async def test_save_and_list(self, client):
        saved = await save(client)
        assert saved["workflow_id"] == "wf-1"

        response = await client.get("/api/workflows")
        assert [w["workflow_id"] for w in response.json()["workflows"]] == ["wf-1"]

    @pytest.mark.asyncio
    async def test_execute_returns_job_id(self, client, repo):
        await save(client)

        response = await client.post("/api/workflows/wf-1/execute",
                                     json={"userId": "user-1", "data": {"a": 1}})

        assert response.status_code == 202
        body = response.json()
        assert body["status"] == "queued"
        job = await repo.get_job(body["job_id"])
        assert job.status == JobStatus.QUEUED
        assert job.trigger_payload["data"] == {"a": 1}

    @pytest.mark.asyncio
    async def test_execute_with_scheduled_at(self, client, repo):
        await save(client)

        response = await client.post("/api/workflows/wf-1/execute",
                                     json={"scheduledAt": "2099-01-01T00:00:00Z"})

        assert response.status_code == 202
        job_id = response.json()["job_id"]
        assert await repo.claim_next_job() is None
        body = (await client.get(f"/api/jobs/{job_id}")).json()
        assert body["status"] == "queued"
        assert body["scheduled_at"] == 4070908800.0

    @pytest.mark.asyncio
    async def test_execute_unknown_workflow(self, client, repo):
        response = await client.post("/api/workflows/ghost/execute", json={})
        assert response.status_code == 404
        assert response.json()["type"] == "WorkflowNotFound"
        assert await repo.list_jobs() == []

    @pytest.mark.asyncio
    async def test_execute_by_non_owner(self, client):
        await save(client)
        response = await client.post("/api/workflows/wf-1/execute", json={"userId": "mallory"})
        assert response.status_code == 403


class TestWebhookRoute:

    @pytest.mark.asyncio
    async def test_webhook_enqueues_job(self, client, repo):
        await save(client)

        response = await client.post("/webhook/wf-1?source=ci", json={"ref": "main"})

        assert response.status_code == 202
        job = await repo.get_job(response.json()["job_id"])
        assert job.trigger_payload["kind"] == "webhook"
        assert job.trigger_payload["method"] == "POST"
        assert job.trigger_payload["body"] == {"ref": "main"}
        assert job.trigger_payload["query"] == {"source": "ci"}

    @pytest.mark.asyncio
    async def test_webhook_for_unknown_workflow(self, client):
        response = await client.get("/webhook/ghost")
        assert response.status_code == 404


class TestJobRoutes:

    @pytest.mark.asyncio
    async def test_get_and_list_jobs(self, client):
        await save(client)
        job_id = (await client.post("/api/workflows/wf-1/execute", json={})).json()["job_id"]

        response = await client.get(f"/api/jobs/{job_id}")
        assert response.status_code == 200
        assert response.json()["status"] == "queued"

        response = await client.get("/api/workflows/wf-1/jobs", params={"status": "queued"})
        assert [j["job_id"] for j in response.json()] == [job_id]

    @pytest.mark.asyncio
    async def test_unknown_job(self, client):
        assert (await client.get("/api/jobs/nope")).status_code == 404
        assert (await client.get("/api/jobs/nope/nodes")).status_code == 404

    @pytest.mark.asyncio
    async def test_job_nodes(self, client, repo):
        await save(client)
        job_id = (await client.post("/api/workflows/wf-1/execute", json={})).json()["job_id"]
        await repo.record_node_run(NodeRun(
            job_id=job_id, node_id="B", node_type="httpRequest",
            state=NodeRunState.FAILED, error="HTTP 500",
        ))
        await repo.record_node_run(NodeRun(
            job_id=job_id, node_id="A", node_type="setVariable",
            state=NodeRunState.SUCCEEDED, output={"variables": {"x": 1}},
        ))

        response = await client.get(f"/api/jobs/{job_id}/nodes")
        assert response.status_code == 200
        assert response.json() == [
            {"node_id": "B", "node_type": "httpRequest", "state": "failed",
             "error": "HTTP 500", "started_at": None, "completed_at": None, "output": None},
            {"node_id": "A", "node_type": "setVariable", "state": "succeeded",
             "error": None, "started_at": None, "completed_at": None,
             "output": {"variables": {"x": 1}}},
        ]

    @pytest.mark.asyncio
    async def test_cancel_twice_conflicts(self, client):
        await save(client)
        job_id = (await client.post("/api/workflows/wf-1/execute", json={})).json()["job_id"]

        first = await client.post(f"/api/jobs/{job_id}/cancel")
        assert first.status_code == 200
        assert first.json()["status"] == "canceled"

        second = await client.post(f"/api/jobs/{job_id}/cancel")
        assert second.status_code == 409


class TestHealth:

    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["worker"]["running"] is False

    @pytest.mark.asyncio
    async def test_schedules_empty_before_start(self, client):
        response = await client.get("/api/schedules")
        assert response.status_code == 200
        body = response.json()
        assert body["running"] is False
        assert body["schedules"] == []
