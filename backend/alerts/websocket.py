"""
WebSocket endpoint for real-time console notifications.

Streams whatever RedisNotifier publishes for the caller's accounts.
"""

import asyncio

import redis.asyncio as aioredis
from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from alerts.notifier import RedisNotifier
from core.config import get_settings
from core.security import account_scope, decode_access_token

settings = get_settings()
router = APIRouter()

DEV_ACCOUNT_ID = "00000000-0000-0000-0000-000000000001"
HEARTBEAT_SECONDS = 30


async def authenticate_ws(token: str) -> dict | None:
    """Validate JWT token from WebSocket query param."""
    if settings.debug:
        return {"sub": "dev-user", "account_ids": [DEV_ACCOUNT_ID]}
    return decode_access_token(token)


@router.websocket("/ws/notifications")
async def websocket_notifications(websocket: WebSocket, token: str = Query(...)):
    """
    Connect: ws://host/ws/notifications?token=<jwt>

    Messages sent to client:
        {"type": "notification", "payload": {...}}
        {"type": "heartbeat", "payload": {}}
    """
    user = await authenticate_ws(token)
    if user is None:
        await websocket.close(code=4001, reason="Unauthorized")
        return

    publisher = RedisNotifier(settings.redis_url, settings.notification_channel_prefix)
    channels = [publisher.channel_for(account_id) for account_id in account_scope(user)]
    if not channels:
        await websocket.close(code=4003, reason="No account scope")
        return

    await websocket.accept()

    redis = aioredis.from_url(settings.redis_url)
    pubsub = redis.pubsub()
    await pubsub.subscribe(*channels)

    try:

        async def listen_redis():
            async for message in pubsub.listen():
                if message["type"] == "message":
                    try:
                        await websocket.send_text(message["data"].decode())
                    except Exception:  # noqa: BLE001
                        break

        async def send_heartbeat():
            while True:
                await asyncio.sleep(HEARTBEAT_SECONDS)
                try:
                    await websocket.send_json({"type": "heartbeat", "payload": {}})
                except Exception:  # noqa: BLE001
                    break

        await asyncio.gather(listen_redis(), send_heartbeat())

    except WebSocketDisconnect:
        pass
    finally:
        await pubsub.unsubscribe(*channels)
        await pubsub.aclose()
        await redis.aclose()
