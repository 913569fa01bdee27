"""Tests for the cron scheduler."""

import pytest
from apscheduler.triggers.cron import CronTrigger

from services.execution.models import JobStatus, TriggerType
from services.scheduler import CronScheduler, build_cron_trigger, schedule_id


def schedule_workflow(cron="*/5 * * * *", enabled=True):
    return {
        "nodes": [
            {"id": "cron1", "type": "scheduleTrigger", "data": {"cron": cron, "enabled": enabled}},
            {"id": "A", "type": "action", "data": {}},
        ],
        "connections": [["cron1", "A"]],
    }


@pytest.fixture
async def scheduler(queue, repository):
    scheduler = CronScheduler(queue, repository)
    await scheduler.start()
    yield scheduler
    scheduler.shutdown()


class TestBuildCronTrigger:

    def test_five_fields(self):
        trigger = build_cron_trigger("*/5 * * * *")
        assert isinstance(trigger, CronTrigger)
        assert str(trigger.fields[0]) == "0"

    def test_six_fields(self):
        trigger = build_cron_trigger("30 0 12 * * mon-fri")
        assert str(trigger.fields[0]) == "30"

    def test_too_few_fields(self):
        with pytest.raises(ValueError):
            build_cron_trigger("* *")

    def test_invalid_value(self):
        with pytest.raises(ValueError):
            build_cron_trigger("99 * * * *")


class TestCronScheduler:

    @pytest.mark.asyncio
    async def test_sync_registers_enabled_triggers(self, scheduler, repository):
        wf = schedule_workflow()
        await repository.save_workflow("wf-1", wf["nodes"], wf["connections"])

        assert await scheduler.sync_workflow("wf-1") == 1
        info = scheduler.get_job_info(schedule_id("wf-1", "cron1"))
        assert info["next_run_time"] is not None

    @pytest.mark.asyncio
    async def test_disabled_trigger_is_not_registered(self, scheduler, repository):
        wf = schedule_workflow(enabled=False)
        await repository.save_workflow("wf-1", wf["nodes"], wf["connections"])
        assert await scheduler.sync_workflow("wf-1") == 0
        assert scheduler.get_all_jobs() == []

    @pytest.mark.asyncio
    async def test_invalid_cron_is_skipped(self, scheduler, repository):
        wf = schedule_workflow(cron="not a cron")
        await repository.save_workflow("wf-1", wf["nodes"], wf["connections"])
        assert await scheduler.sync_workflow("wf-1") == 0

    @pytest.mark.asyncio
    async def test_deactivated_workflow_loses_schedule(self, scheduler, repository):
        wf = schedule_workflow()
        await repository.save_workflow("wf-1", wf["nodes"], wf["connections"])
        await scheduler.sync_workflow("wf-1")

        await repository.set_workflow_active("wf-1", False)
        await scheduler.sync_workflow("wf-1")

        assert scheduler.get_job_info(schedule_id("wf-1", "cron1")) is None

    @pytest.mark.asyncio
    async def test_fire_enqueues_scheduled_job(self, scheduler, repository):
        wf = schedule_workflow()
        await repository.save_workflow("wf-1", wf["nodes"], wf["connections"])

        job_id = await scheduler.fire("wf-1", "*/5 * * * *")

        job = await repository.get_job(job_id)
        assert job.status == JobStatus.QUEUED
        assert job.trigger_type == TriggerType.SCHEDULED
        assert job.trigger_payload["cron"] == "*/5 * * * *"

    @pytest.mark.asyncio
    async def test_fire_for_deleted_workflow_is_logged(self, scheduler, repository):
        assert await scheduler.fire("gone", "* * * * *") is None
        assert await repository.list_jobs() == []

    @pytest.mark.asyncio
    async def test_remove_unknown_schedule(self, scheduler):
        assert scheduler.remove("nope:node") is False
