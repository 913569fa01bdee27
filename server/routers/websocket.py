"""WebSocket router for real-time node status.

Clients subscribe to a topic, ``workflow:{workflow_id}`` for every run of a
workflow or ``job:{job_id}`` for a single run, and receive StatusEvents as
JSON text frames.
"""

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from core.container import container
from core.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["websocket"])


@router.websocket("/ws/status/{topic}")
async def status_websocket(websocket: WebSocket, topic: str):
    """Forward status events of ``topic`` until the client disconnects."""
    await websocket.accept()
    channel = container.status_channel()
    logger.info("[WebSocket] Status client connected", topic=topic)
    try:
        await channel.stream_to_websocket(websocket, topic)
    except WebSocketDisconnect:
        pass
    finally:
        logger.info("[WebSocket] Status client disconnected", topic=topic)
