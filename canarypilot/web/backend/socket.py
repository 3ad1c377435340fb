import asyncio
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

router = APIRouter()

logger = logging.getLogger(__name__)


@router.websocket("/ws/session")
async def session_events(websocket: WebSocket):
    """
    Stream session events to the dashboard.

    The first frame is a full snapshot; after that one frame per log entry,
    assistant message or phase change. Incoming text frames are posted as
    operator chat messages.
    """
    hub = websocket.app.state.hub
    await websocket.accept()
    queue = hub.subscribe()
    logger.info("Dashboard connected (%d subscribers)", hub.subscriber_count)

    await websocket.send_json({"type": "snapshot", "data": hub.session.snapshot()})

    # Task to pump events from the session -> WebSocket
    async def sender_task():
        while True:
            event = await queue.get()
            await websocket.send_json(event)

    # Task to pump chat from WebSocket -> session
    async def receiver_task():
        try:
            while True:
                text = await websocket.receive_text()
                if text.strip():
                    hub.session.submit_chat(text)
        except WebSocketDisconnect:
            logger.info("Dashboard disconnected")

    sender = asyncio.create_task(sender_task())
    receiver = asyncio.create_task(receiver_task())
    try:
        await asyncio.wait([sender, receiver], return_when=asyncio.FIRST_COMPLETED)
    finally:
        sender.cancel()
        receiver.cancel()
        hub.unsubscribe(queue)
