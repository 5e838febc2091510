"""
WebSocket Router - live caption feed

Sends the session snapshot on connect, then every caption, state, status and
incoming-call event as one JSON object per message. The feed is read-only;
anything the client sends is ignored.
"""
import asyncio
import logging

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from caption_call.api.deps import get_ws_runtime
from caption_call.services.session import CallSessionRuntime

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/ws/captions")
async def captions_feed(
    websocket: WebSocket,
    runtime: CallSessionRuntime = Depends(get_ws_runtime),
):
    """
    Message Types (JSON):
        - snapshot: full session view, sent once on connect
        - caption: {direction: "mine" | "remote", text}
        - state: {state, local_id, remote_id}
        - status: {status} (null when it clears)
        - incoming / incoming_withdrawn: {peer}
        - language / captions: settings changes
    """
    await websocket.accept()
    queue = runtime.subscribe()
    logger.info("📺 Caption feed client connected")

    receiver = asyncio.create_task(_drain_client(websocket))
    try:
        await websocket.send_json({"type": "snapshot", **runtime.snapshot().model_dump()})
        while not receiver.done():
            getter = asyncio.create_task(queue.get())
            done, _ = await asyncio.wait({getter, receiver}, return_when=asyncio.FIRST_COMPLETED)
            if getter not in done:
                getter.cancel()
                break
            await websocket.send_json(getter.result())
    except WebSocketDisconnect:
        pass
    finally:
        runtime.unsubscribe(queue)
        receiver.cancel()
        logger.info("Caption feed client disconnected")


async def _drain_client(websocket: WebSocket):
    """Read until the client goes away."""
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return
