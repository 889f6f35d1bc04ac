import asyncio
import logging
from typing import Annotated

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import models
from app.core.database import get_db
from app.core.notifications import NotificationHub, get_notifier
from app.core.security import decode_user_id

router = APIRouter(tags=["Notifications"])

db_dep = Annotated[AsyncSession, Depends(get_db)]


@router.websocket("/ws/notifications")
async def notifications_feed(
    websocket: WebSocket,
    token: str,
    db: db_dep,
    notifier: Annotated[NotificationHub, Depends(get_notifier)],
):
    """Push {request_id, status, user_id} events for the token's user."""
    user_id = decode_user_id(token)
    user = await db.get(models.User, user_id) if user_id is not None else None
    if user is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    queue = notifier.subscribe(user.id)
    logging.info(f"User {user.id} subscribed to notifications")
    disconnected = asyncio.create_task(_wait_for_disconnect(websocket))
    next_event = None
    try:
        while True:
            next_event = asyncio.create_task(queue.get())
            done, _ = await asyncio.wait(
                {next_event, disconnected}, return_when=asyncio.FIRST_COMPLETED
            )
            if disconnected in done:
                # Surfaces a failed receive instead of leaving it unretrieved
                disconnected.result()
                break
            await websocket.send_json(next_event.result().to_dict())
    except WebSocketDisconnect:
        pass
    finally:
        for task in (next_event, disconnected):
            if task is not None and not task.done():
                task.cancel()
        notifier.unsubscribe(user.id, queue)
        logging.info(f"User {user.id} unsubscribed from notifications")


async def _wait_for_disconnect(websocket: WebSocket):
    # The feed is one-way, so anything the client sends is ignored
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return
