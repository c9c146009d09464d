"""
Realtime router: scoped subscription tokens and the websocket event stream
"""
import asyncio
import logging

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool

from ...core.security import create_realtime_token, decode_realtime_token, get_session_user
from ...core.services import Services, get_services
from ...models.user import UserRecord
from ...realtime.notifier import ChangeEvent

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/token")
def get_realtime_token(
    current_user: UserRecord = Depends(get_session_user),
    services: Services = Depends(get_services)
):
    """Short-lived token that can only subscribe to the update topic"""
    return {
        "token": create_realtime_token(current_user.username, services.topic),
        "topic": services.topic,
    }


@router.websocket("/ws")
async def event_stream(websocket: WebSocket, token: str = Query(...)):
    """
    Forward change events to the client. Events are hints only, so a client
    that misses some just refreshes on the next one or on its poll timer.
    """
    services: Services = websocket.app.state.services
    username = decode_realtime_token(token, services.topic)
    if not username or await run_in_threadpool(services.users.get_user, username) is None:
        await websocket.close(code=4401)
        return

    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()

    def on_event(event: ChangeEvent):
        # called from the notifier's thread
        loop.call_soon_threadsafe(queue.put_nowait, event.to_dict())

    async def forward():
        while True:
            await websocket.send_json(await queue.get())

    async def drain():
        # anything the client sends is ignored; receiving detects the disconnect
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass

    # subscribe before accepting so no event after the handshake is missed
    unsubscribe = services.notifier.subscribe(services.topic, on_event)
    tasks = []
    try:
        await websocket.accept()
        logger.info(f"Realtime subscriber connected: {username}")
        tasks = [asyncio.create_task(forward()), asyncio.create_task(drain())]
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                logger.warning(f"Realtime stream for {username} stopped: {task.exception()}")
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        unsubscribe()
        logger.info(f"Realtime subscriber disconnected: {username}")
