"""Tests for the background worker and the recovery sweeper."""

import asyncio

import pytest

from conftest import linear_workflow
from services.execution.models import JobStatus
from services.execution.recovery import RecoverySweeper
from services.execution.worker import ExecutionWorker


@pytest.fixture
async def workflow(repository):
    wf = linear_workflow()
    await repository.save_workflow("wf-1", wf["nodes"], wf["connections"])


@pytest.fixture
def sweeper(repository, execution_cache):
    return RecoverySweeper(repository, execution_cache, stale_after=30.0, sweep_interval=0.05)


async def wait_for_status(repository, job_id, status, timeout=2.0):
    async def poll():
        while (await repository.get_job(job_id)).status != status:
            await asyncio.sleep(0.01)
    await asyncio.wait_for(poll(), timeout)


class TestExecutionWorker:

    @pytest.mark.asyncio
    async def test_process_next_runs_oldest_job(self, queue, orchestrator, repository, workflow):
        first = await queue.enqueue_job("wf-1", None, "manual")
        await queue.enqueue_job("wf-1", None, "manual")
        worker = ExecutionWorker(queue, orchestrator)

        result = await worker.process_next()

        assert result.job_id == first
        assert result.succeeded
        assert len(await repository.list_jobs(status=JobStatus.QUEUED)) == 1

    @pytest.mark.asyncio
    async def test_process_next_on_empty_queue(self, queue, orchestrator):
        assert await ExecutionWorker(queue, orchestrator).process_next() is None

    @pytest.mark.asyncio
    async def test_poll_loop_drains_queue(self, queue, orchestrator, repository, workflow):
        job_ids = [await queue.enqueue_job("wf-1", None, "manual") for _ in range(3)]
        worker = ExecutionWorker(queue, orchestrator, concurrency=2, poll_interval=0.01)

        await worker.start()
        try:
            for job_id in job_ids:
                await wait_for_status(repository, job_id, JobStatus.SUCCEEDED)
        finally:
            await worker.stop()
        assert not worker.is_running

    @pytest.mark.asyncio
    async def test_failed_job_does_not_stop_worker(self, queue, orchestrator, repository):
        await repository.save_workflow("loop", [{"id": "x", "type": "action"},
                                                {"id": "y", "type": "action"}],
                                       [["x", "y"], ["y", "x"]])
        await repository.save_workflow("ok", linear_workflow()["nodes"],
                                       linear_workflow()["connections"])
        bad = await queue.enqueue_job("loop", None, "manual")
        good = await queue.enqueue_job("ok", None, "manual")
        worker = ExecutionWorker(queue, orchestrator, concurrency=1, poll_interval=0.01)

        await worker.start()
        try:
            await wait_for_status(repository, good, JobStatus.SUCCEEDED)
        finally:
            await worker.stop()
        assert (await repository.get_job(bad)).status == JobStatus.FAILED

    def test_concurrency_must_be_positive(self, queue, orchestrator):
        with pytest.raises(ValueError):
            ExecutionWorker(queue, orchestrator, concurrency=0)


class TestRecovery:

    @pytest.mark.asyncio
    async def test_unlocked_running_job_is_abandoned(self, queue, sweeper, workflow):
        job_id = await queue.enqueue_job("wf-1", None, "manual")
        await queue.claim_next()

        assert await sweeper.find_abandoned(stale_after=0) == [job_id]
        # Recently updated jobs get a grace period
        assert await sweeper.find_abandoned() == []

    @pytest.mark.asyncio
    async def test_locked_job_is_not_abandoned(self, queue, sweeper, execution_cache, workflow):
        job_id = await queue.enqueue_job("wf-1", None, "manual")
        await queue.claim_next()

        async with execution_cache.run_lock(job_id):
            assert await sweeper.find_abandoned(stale_after=0) == []

    @pytest.mark.asyncio
    async def test_sweep_hands_jobs_to_callback(self, queue, sweeper, workflow):
        job_id = await queue.enqueue_job("wf-1", None, "manual")
        await queue.claim_next()
        recovered = []

        async def on_recovery(jid):
            recovered.append(jid)

        sweeper.set_recovery_callback(on_recovery)
        assert await sweeper.scan_on_startup() == [job_id]
        assert recovered == [job_id]

    @pytest.mark.asyncio
    async def test_worker_resumes_interrupted_job_on_start(self, queue, orchestrator, repository,
                                                           sweeper, call_log, workflow):
        job_id = await queue.enqueue_job("wf-1", None, "manual")
        await queue.claim_next()
        worker = ExecutionWorker(queue, orchestrator, sweeper=sweeper, poll_interval=0.01)

        await worker.start()
        try:
            await wait_for_status(repository, job_id, JobStatus.SUCCEEDED)
        finally:
            await worker.stop()
        assert call_log.calls == ["A", "B"]
