"""Tests for the live status websocket."""

import time

import orjson
import pytest
from fastapi.testclient import TestClient

from constants import job_topic
from core.container import container
from main import app
from services.execution.models import NodeStatus, StatusEvent
from services.status_broadcaster import StatusChannel


@pytest.fixture
def status_channel():
    container.reset_singletons()
    yield container.status_channel()
    container.reset_singletons()


def wait_for_subscriber(channel: StatusChannel, topic: str, timeout: float = 2.0) -> None:
    deadline = time.monotonic() + timeout
    while channel.subscriber_count(topic) == 0:
        if time.monotonic() > deadline:
            raise AssertionError(f"no subscriber on {topic}")
        time.sleep(0.01)


def event(node_id, status, job_id="job-1"):
    return StatusEvent(node_id=node_id, status=status, job_id=job_id, workflow_id="wf-1")


class TestStatusWebsocket:

    def test_streams_events_in_publish_order(self, status_channel):
        topic = job_topic("job-1")
        client = TestClient(app)

        with client.websocket_connect(f"/ws/status/{topic}") as ws:
            wait_for_subscriber(status_channel, topic)
            for node_id, status in (("T", NodeStatus.LOADING), ("T", NodeStatus.SUCCESS),
                                    ("A", NodeStatus.LOADING)):
                ws.portal.call(status_channel.publish_event, event(node_id, status))
            # Another job's events stay on their own topic
            ws.portal.call(status_channel.publish_event, event("X", NodeStatus.ERROR, "job-2"))
            ws.portal.call(status_channel.publish_event, event("A", NodeStatus.SUCCESS))

            frames = [orjson.loads(ws.receive_text()) for _ in range(4)]

        assert [(f["node_id"], f["status"]) for f in frames] == [
            ("T", "loading"), ("T", "success"), ("A", "loading"), ("A", "success"),
        ]
        assert all(f["type"] == "node_status" and f["job_id"] == "job-1" for f in frames)

    def test_subscription_removed_on_disconnect(self, status_channel):
        topic = job_topic("job-1")
        client = TestClient(app)

        with client.websocket_connect(f"/ws/status/{topic}"):
            wait_for_subscriber(status_channel, topic)
            assert status_channel.subscriber_count(topic) == 1

        assert status_channel.subscriber_count(topic) == 0


class BrokenWebSocket:
    """Websocket whose receive side fails with something other than a disconnect."""

    def __init__(self):
        self.sent = []

    async def receive_text(self):
        raise RuntimeError("Cannot call receive once a disconnect message has been received")

    async def send_text(self, text):
        self.sent.append(text)


class TestStreamReceiverFailure:

    @pytest.mark.asyncio
    async def test_receiver_error_ends_stream_cleanly(self, channel):
        topic = job_topic("job-1")

        await channel.stream_to_websocket(BrokenWebSocket(), topic)

        assert channel.subscriber_count(topic) == 0
