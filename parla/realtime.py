"""
Per-chat real-time feed on Redis pub/sub.

Writers publish row change events after they commit; the WebSocket route
relays a chat's channel to its subscribers. Clients de-duplicate by row id.
"""

import asyncio
import json
from typing import Any, Dict, Optional

import redis.asyncio as redis
from fastapi import WebSocket, WebSocketDisconnect

from .log import get_logger

logger = get_logger(__name__)

INSERT = "INSERT"
UPDATE = "UPDATE"


def channel_for(chat_id: str) -> str:
    return f"chat:{chat_id}"


class RealtimeFeed:

    def __init__(self, redis_client=None):
        self.redis = redis_client

    @property
    def enabled(self) -> bool:
        return self.redis is not None

    async def publish(self, chat_id: str, event_type: str, table: str, record: Dict[str, Any]) -> None:
        if not self.redis:
            return
        payload = json.dumps({"type": event_type, "table": table, "record": record}, default=str)
        try:
            await self.redis.publish(channel_for(chat_id), payload)
        except Exception as e:
            logger.warning("Realtime publish failed", chat_id=chat_id, table=table, error=str(e))

    async def relay(self, websocket: WebSocket, chat_id: str) -> None:
        """Forward a chat's events to ``websocket`` until the client goes away."""
        pubsub = self.redis.pubsub()
        await pubsub.subscribe(channel_for(chat_id))

        async def forward():
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                data = message["data"]
                if isinstance(data, bytes):
                    data = data.decode("utf-8")
                await websocket.send_text(data)

        async def drain():
            # client frames are ignored; this only notices the disconnect
            try:
                while True:
                    await websocket.receive_text()
            except WebSocketDisconnect:
                pass

        tasks = [asyncio.create_task(forward()), asyncio.create_task(drain())]
        try:
            await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in tasks:
                task.cancel()
            await pubsub.unsubscribe(channel_for(chat_id))
            await pubsub.aclose()
            logger.info("Realtime subscriber left", chat_id=chat_id)


def connect_redis(url: str) -> Optional[Any]:
    try:
        return redis.from_url(url, decode_responses=True)
    except Exception as e:
        logger.warning(f"Failed to connect to Redis at {url}", error=str(e))
        return None
