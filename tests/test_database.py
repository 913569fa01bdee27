"""Tests for the SQLModel-backed execution repository."""

import time

import pytest

from conftest import linear_workflow
from core.database import Database
from services.execution.exceptions import JobStateError, WorkflowNotFound
from services.execution.executor import RunOrchestrator
from services.execution.models import (
    ExecutionJob,
    JobStatus,
    NodeRun,
    NodeRunState,
    TriggerType,
)
from services.execution.queue import ExecutionQueue
from services.execution.steps import RepositoryStepLog, StepRunnerFactory


@pytest.fixture
async def database(settings):
    db = Database(settings)
    await db.startup()
    yield db
    await db.shutdown()


@pytest.fixture
async def saved(database):
    wf = linear_workflow()
    await database.save_workflow("wf-1", wf["nodes"], wf["connections"],
                                 name="Linear", owner_id="user-1")
    return database


class TestWorkflows:

    @pytest.mark.asyncio
    async def test_graph_round_trip_keeps_order(self, saved):
        graph = await saved.load_graph("wf-1")
        assert [n.id for n in graph.nodes] == ["T", "A", "B"]
        assert [(c.source, c.target) for c in graph.connections] == [("T", "A"), ("A", "B")]

    @pytest.mark.asyncio
    async def test_save_replaces_graph(self, saved):
        await saved.save_workflow("wf-1", [{"id": "only", "type": "action"}], [])
        graph = await saved.load_graph("wf-1")
        assert [n.id for n in graph.nodes] == ["only"]
        assert graph.connections == ()
        record = await saved.get_workflow("wf-1")
        assert record.owner_id is None

    @pytest.mark.asyncio
    async def test_missing_workflow(self, database):
        assert await database.get_workflow("nope") is None
        with pytest.raises(WorkflowNotFound):
            await database.load_graph("nope")
        with pytest.raises(WorkflowNotFound):
            await database.set_workflow_active("nope", False)

    @pytest.mark.asyncio
    async def test_deactivate(self, saved):
        record = await saved.set_workflow_active("wf-1", False)
        assert record.active is False
        assert [w.workflow_id for w in await saved.list_workflows()] == ["wf-1"]


class TestJobs:

    @pytest.mark.asyncio
    async def test_create_and_get(self, saved):
        job = ExecutionJob.create("wf-1", TriggerType.MANUAL, {"kind": "manual", "data": {}})
        await saved.create_job(job)

        loaded = await saved.get_job(job.job_id)
        assert loaded.status == JobStatus.QUEUED
        assert loaded.trigger_payload == {"kind": "manual", "data": {}}

    @pytest.mark.asyncio
    async def test_claim_is_exclusive(self, saved):
        job = ExecutionJob.create("wf-1", TriggerType.MANUAL, {})
        await saved.create_job(job)

        claimed = await saved.claim_next_job()
        assert claimed.job_id == job.job_id
        assert claimed.status == JobStatus.RUNNING
        assert claimed.attempts == 1
        assert await saved.claim_next_job() is None

    @pytest.mark.asyncio
    async def test_claim_skips_jobs_not_yet_due(self, saved):
        now = time.time()
        waiting = ExecutionJob.create("wf-1", TriggerType.MANUAL, {}, scheduled_at=now + 3600)
        overdue = ExecutionJob.create("wf-1", TriggerType.MANUAL, {}, scheduled_at=now - 60)
        await saved.create_job(waiting)
        await saved.create_job(overdue)

        claimed = await saved.claim_next_job()
        assert claimed.job_id == overdue.job_id
        assert claimed.scheduled_at == pytest.approx(now - 60)
        assert await saved.claim_next_job() is None
        assert (await saved.get_job(waiting.job_id)).status == JobStatus.QUEUED

    @pytest.mark.asyncio
    async def test_status_compare_and_set(self, saved):
        job = ExecutionJob.create("wf-1", TriggerType.MANUAL, {})
        await saved.create_job(job)
        await saved.claim_next_job()

        with pytest.raises(JobStateError):
            await saved.update_job_status(job.job_id, JobStatus.CANCELED,
                                          expected=JobStatus.QUEUED)
        done = await saved.update_job_status(job.job_id, JobStatus.SUCCEEDED)
        assert done.completed_at is not None
        with pytest.raises(JobStateError):
            await saved.update_job_status(job.job_id, JobStatus.RUNNING)

    @pytest.mark.asyncio
    async def test_request_cancel(self, saved):
        job = ExecutionJob.create("wf-1", TriggerType.MANUAL, {})
        await saved.create_job(job)
        flagged = await saved.request_cancel(job.job_id)
        assert flagged.cancel_requested is True

    @pytest.mark.asyncio
    async def test_list_jobs_filters(self, saved):
        for _ in range(3):
            await saved.create_job(ExecutionJob.create("wf-1", TriggerType.MANUAL, {}))
        await saved.claim_next_job()

        assert len(await saved.list_jobs(workflow_id="wf-1")) == 3
        assert len(await saved.list_jobs(status=JobStatus.QUEUED)) == 2
        assert len(await saved.list_jobs(limit=1)) == 1


class TestStepLog:

    @pytest.mark.asyncio
    async def test_first_write_wins(self, database):
        assert await database.record_step_result("job-1", "n1:http-request", {"status": 200})
        assert not await database.record_step_result("job-1", "n1:http-request", {"status": 500})

        record = await database.lookup_step_result("job-1", "n1:http-request")
        assert record.result == {"status": 200}

    @pytest.mark.asyncio
    async def test_null_result_is_a_hit(self, database):
        await database.record_step_result("job-1", "s", None)
        record = await database.lookup_step_result("job-1", "s")
        assert record is not None
        assert record.result is None

    @pytest.mark.asyncio
    async def test_lookup_miss(self, database):
        assert await database.lookup_step_result("job-1", "never") is None


class TestNodeRuns:

    @pytest.mark.asyncio
    async def test_record_is_upserted(self, database):
        run = NodeRun(job_id="job-1", node_id="A", node_type="action",
                      state=NodeRunState.FAILED, error="first", started_at=1.0, completed_at=2.0)
        await database.record_node_run(run)
        run.state = NodeRunState.SUCCEEDED
        run.error = None
        await database.record_node_run(run)

        runs = await database.list_node_runs("job-1")
        assert len(runs) == 1
        assert runs[0].state == NodeRunState.SUCCEEDED

    @pytest.mark.asyncio
    async def test_output_round_trips(self, database):
        output = {"status": 200, "data": {"items": [1, 2]}, "variables": {"count": 2}}
        await database.record_node_run(NodeRun(
            job_id="job-1", node_id="H", node_type="httpRequest",
            state=NodeRunState.SUCCEEDED, started_at=1.0, completed_at=2.0, output=output,
        ))

        runs = await database.list_node_runs("job-1")
        assert runs[0].output == output


class TestEndToEnd:

    @pytest.mark.asyncio
    async def test_run_against_database(self, saved, registry, channel, execution_cache, call_log):
        queue = ExecutionQueue(saved)
        orchestrator = RunOrchestrator(saved, registry, StepRunnerFactory(RepositoryStepLog(saved)),
                                       channel, execution_cache)
        job_id = await queue.enqueue_job("wf-1", "user-1", "manual", {"x": 1})

        result = await orchestrator.run_job(job_id)

        assert result.succeeded
        assert call_log.calls == ["A", "B"]
        assert (await saved.get_job(job_id)).status == JobStatus.SUCCEEDED
        runs = await saved.list_node_runs(job_id)
        assert {r.node_id for r in runs} == {"T", "A", "B"}
        outputs = {r.node_id: r.output for r in runs}
        assert outputs["A"] == {"node": "A"}
        assert outputs["B"] == {"node": "B"}
        trigger_step = await saved.lookup_step_result(job_id, "T:trigger")
        assert trigger_step.result["data"] == {"x": 1}
