"""Tests for the status channel and per-node publisher."""

import asyncio

import pytest

from conftest import drain, event_pairs
from constants import job_topic, workflow_topic
from services.execution.models import NodeStatus, StatusEvent
from services.status_broadcaster import NodeStatusPublisher, StatusChannel


def event(node_id="n1", status=NodeStatus.LOADING, job_id="job-1", workflow_id="wf-1"):
    return StatusEvent(node_id=node_id, status=status, job_id=job_id, workflow_id=workflow_id)


class TestStatusChannel:

    @pytest.mark.asyncio
    async def test_publish_without_subscribers_is_a_noop(self, channel):
        assert channel.publish("workflow:none", event()) == 0

    @pytest.mark.asyncio
    async def test_subscriber_receives_in_publish_order(self, channel):
        async with channel.subscribe("t") as sub:
            for status in (NodeStatus.LOADING, NodeStatus.SUCCESS):
                channel.publish("t", event(status=status))
            events = await drain(sub)
        assert [e.status for e in events] == [NodeStatus.LOADING, NodeStatus.SUCCESS]

    @pytest.mark.asyncio
    async def test_no_replay_for_late_subscribers(self, channel):
        channel.publish("t", event())
        async with channel.subscribe("t") as sub:
            assert sub.pending() == 0

    @pytest.mark.asyncio
    async def test_topics_are_isolated(self, channel):
        async with channel.subscribe("a") as sub_a, channel.subscribe("b") as sub_b:
            channel.publish("a", event())
            assert sub_a.pending() == 1
            assert sub_b.pending() == 0

    @pytest.mark.asyncio
    async def test_publish_event_reaches_workflow_and_job_topics(self, channel):
        async with channel.subscribe(workflow_topic("wf-1")) as wf_sub, \
                channel.subscribe(job_topic("job-1")) as job_sub:
            channel.publish_event(event())
            assert wf_sub.pending() == 1
            assert job_sub.pending() == 1

    @pytest.mark.asyncio
    async def test_slow_subscriber_drops_oldest(self):
        channel = StatusChannel(buffer_size=2)
        async with channel.subscribe("t") as sub:
            for node_id in ("a", "b", "c"):
                channel.publish("t", event(node_id=node_id))
            events = await drain(sub)
            assert [e.node_id for e in events] == ["b", "c"]
            assert sub.dropped == 1

    @pytest.mark.asyncio
    async def test_waiting_subscriber_wakes_on_publish(self, channel):
        async with channel.subscribe("t") as sub:
            waiter = asyncio.create_task(sub.get())
            await asyncio.sleep(0)
            channel.publish("t", event(node_id="late"))
            received = await asyncio.wait_for(waiter, timeout=1)
        assert received.node_id == "late"

    @pytest.mark.asyncio
    async def test_unsubscribe_on_exit(self, channel):
        async with channel.subscribe("t"):
            assert channel.subscriber_count("t") == 1
        assert channel.subscriber_count("t") == 0

    @pytest.mark.asyncio
    async def test_closed_subscription_ends_iteration(self, channel):
        sub = channel.open("t")
        channel.publish("t", event())
        channel.close(sub)
        received = [e async for e in sub]
        assert len(received) == 1


class TestNodeStatusPublisher:

    @pytest.mark.asyncio
    async def test_consecutive_duplicates_are_suppressed(self, channel):
        publish = NodeStatusPublisher(channel, "job-1", "wf-1", "n1")
        async with channel.subscribe(job_topic("job-1")) as sub:
            assert publish(NodeStatus.LOADING) is True
            assert publish(NodeStatus.LOADING) is False
            assert publish(NodeStatus.ERROR, "bad") is True
            events = await drain(sub)
        assert event_pairs(events) == ["n1:loading", "n1:error"]
        assert events[-1].error == "bad"

    def test_event_serializes_with_type_tag(self):
        data = event().to_dict()
        assert data["type"] == "node_status"
        assert data["status"] == "loading"
