"""
Wallet event stream
Pushes transaction status changes to the browser via WebSocket.
"""

from fastapi import APIRouter, HTTPException, WebSocket, WebSocketDisconnect
import json
import logging

from copytrade.core.config import settings
from copytrade.core.dependencies import user_from_token
from copytrade.core.redis import get_redis_client

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/ws/wallet")
async def wallet_stream(websocket: WebSocket, token: str):
    """
    WebSocket endpoint for wallet events of the authenticated user.
    Admins receive every user's events.
    Usage: ws://localhost:8000/events/ws/wallet?token=<jwt>
    """
    try:
        user = await user_from_token(token, websocket.app.state.record_store)
    except HTTPException:
        await websocket.close(code=1008, reason="Unauthorized")
        return

    redis = get_redis_client()
    if not redis:
        await websocket.close(code=1011, reason="Event feed unavailable")
        return

    await websocket.accept()

    channel = settings.WALLET_EVENTS_CHANNEL
    pubsub = redis.pubsub()
    await pubsub.subscribe(channel)

    try:
        async for message in pubsub.listen():
            if message["type"] != "message":
                continue
            data = message["data"]
            if isinstance(data, bytes):
                data = data.decode("utf-8")
            event = json.loads(data)
            if user.is_admin or event.get("user_id") == user.id:
                await websocket.send_text(data)
    except WebSocketDisconnect:
        logger.debug(f"Wallet stream closed for {user.id}")
    finally:
        await pubsub.unsubscribe(channel)
        await pubsub.close()
