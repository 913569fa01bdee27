"""Status channel: topic-based pub/sub for live node status.

Publishers never wait on subscribers. Each subscriber owns a bounded buffer;
when it fills up the oldest buffered events are dropped for that subscriber
only. Events are delivered per subscriber in publish order and there is no
replay: a subscriber sees only what was published after it subscribed.
"""

import asyncio
from collections import deque
from contextlib import asynccontextmanager
from typing import AsyncIterator, Deque, Dict, Optional, Set

import orjson
from fastapi import WebSocket
from starlette.websockets import WebSocketDisconnect

from constants import job_topic, workflow_topic
from core.logging import get_logger
from services.execution.models import NodeStatus, StatusEvent

logger = get_logger(__name__)


class Subscription:
    """One subscriber's bounded view of a topic."""

    def __init__(self, topic: str, buffer_size: int):
        self.topic = topic
        self._buffer: Deque[StatusEvent] = deque(maxlen=buffer_size)
        self._ready = asyncio.Event()
        self._closed = False
        self.dropped = 0

    def push(self, event: StatusEvent) -> None:
        if self._closed:
            return
        if len(self._buffer) == self._buffer.maxlen:
            self.dropped += 1
        self._buffer.append(event)
        self._ready.set()

    def close(self) -> None:
        self._closed = True
        self._ready.set()

    @property
    def closed(self) -> bool:
        return self._closed

    def pending(self) -> int:
        return len(self._buffer)

    async def get(self) -> Optional[StatusEvent]:
        """Next event, or None once the subscription is closed and drained."""
        while not self._buffer:
            if self._closed:
                return None
            self._ready.clear()
            await self._ready.wait()
        return self._buffer.popleft()

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> StatusEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event


class StatusChannel:
    """Fan-out of StatusEvents to per-topic subscribers."""

    def __init__(self, buffer_size: int = 256):
        self.buffer_size = buffer_size
        self._topics: Dict[str, Set[Subscription]] = {}

    def publish(self, topic: str, event: StatusEvent) -> int:
        """Deliver ``event`` to current subscribers of ``topic``. Never blocks.

        Returns:
            Number of subscribers the event was buffered for
        """
        subscribers = self._topics.get(topic)
        if not subscribers:
            return 0
        for sub in list(subscribers):
            sub.push(event)
        return len(subscribers)

    def publish_event(self, event: StatusEvent) -> None:
        """Publish to both the workflow topic and the job topic."""
        self.publish(workflow_topic(event.workflow_id), event)
        self.publish(job_topic(event.job_id), event)

    def open(self, topic: str) -> Subscription:
        sub = Subscription(topic, self.buffer_size)
        self._topics.setdefault(topic, set()).add(sub)
        logger.debug("Subscriber added", topic=topic, total=len(self._topics[topic]))
        return sub

    def close(self, sub: Subscription) -> None:
        sub.close()
        subscribers = self._topics.get(sub.topic)
        if subscribers is not None:
            subscribers.discard(sub)
            if not subscribers:
                del self._topics[sub.topic]
        if sub.dropped:
            logger.warning("Subscriber dropped events", topic=sub.topic, dropped=sub.dropped)

    @asynccontextmanager
    async def subscribe(self, topic: str) -> AsyncIterator[Subscription]:
        """Subscribe to ``topic`` for the lifetime of the context."""
        sub = self.open(topic)
        try:
            yield sub
        finally:
            self.close(sub)

    def subscriber_count(self, topic: Optional[str] = None) -> int:
        if topic is not None:
            return len(self._topics.get(topic, ()))
        return sum(len(subs) for subs in self._topics.values())

    async def stream_to_websocket(self, websocket: WebSocket, topic: str) -> None:
        """Forward a topic to a connected websocket until the client leaves."""
        async with self.subscribe(topic) as sub:
            receiver = asyncio.create_task(self._drain_client(websocket), name=f"ws_recv_{topic}")
            try:
                while not receiver.done():
                    getter = asyncio.ensure_future(sub.get())
                    done, _ = await asyncio.wait(
                        {getter, receiver}, return_when=asyncio.FIRST_COMPLETED
                    )
                    if getter not in done:
                        getter.cancel()
                        break
                    event = getter.result()
                    if event is None:
                        break
                    await websocket.send_text(orjson.dumps(event.to_dict()).decode())
            finally:
                receiver.cancel()
                outcome, = await asyncio.gather(receiver, return_exceptions=True)
                if isinstance(outcome, Exception):
                    logger.warning("Status websocket receiver failed", topic=topic,
                                   error_type=type(outcome).__name__, error=str(outcome))

    @staticmethod
    async def _drain_client(websocket: WebSocket) -> None:
        # Returns when the client disconnects; inbound messages are ignored
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            return


class NodeStatusPublisher:
    """Publishes one node's statuses, suppressing consecutive duplicates.

    Both the executor and the orchestrator may report the same status for a
    node; subscribers see it once.
    """

    def __init__(self, channel: StatusChannel, job_id: str, workflow_id: str, node_id: str):
        self.channel = channel
        self.job_id = job_id
        self.workflow_id = workflow_id
        self.node_id = node_id
        self.last_status: Optional[NodeStatus] = None

    def __call__(self, status: NodeStatus, error: Optional[str] = None) -> bool:
        status = NodeStatus(status)
        if status == self.last_status:
            return False
        self.last_status = status
        self.channel.publish_event(StatusEvent(
            node_id=self.node_id,
            status=status,
            job_id=self.job_id,
            workflow_id=self.workflow_id,
            error=error,
        ))
        return True
