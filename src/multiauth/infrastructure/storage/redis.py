"""Redis-backed storage primitives.

Lets several processes share one session record and exchange sync
messages, the server-side counterpart of tabs sharing an origin.

Key Schema:
- {prefix}{storage_key} -> SessionData JSON (expires with the session)
- pub/sub channel {channel_name} -> SyncMessage JSON
"""

import asyncio
import logging
from typing import Optional

from pydantic import ValidationError
from redis.asyncio import Redis

from multiauth.domain.models import SyncMessage

from .base import BroadcastChannel, KeyValueStore, Subscriber, Unsubscribe

logger = logging.getLogger(__name__)


class RedisKeyValueStore(KeyValueStore):
    """KeyValueStore over a Redis connection"""

    def __init__(self, redis_client: Redis, prefix: str = "multiauth:"):
        """Initialize store

        Args:
            redis_client: Redis connection
            prefix: Namespace prepended to every key
        """
        self.redis = redis_client
        self.prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    async def get(self, key: str) -> Optional[str]:
        value = await self.redis.get(self._key(key))
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        if ttl_seconds:
            await self.redis.setex(self._key(key), ttl_seconds, value)
        else:
            await self.redis.set(self._key(key), value)

    async def delete(self, key: str) -> None:
        await self.redis.delete(self._key(key))


class RedisBroadcastChannel(BroadcastChannel):
    """BroadcastChannel over Redis pub/sub.

    Redis echoes messages back to the publisher; receivers drop their own
    messages by origin.
    """

    def __init__(self, redis_client: Redis, name: str):
        self.redis = redis_client
        self.name = name
        self._subscribers: list[Subscriber] = []
        self._listener: Optional[asyncio.Task] = None

    async def publish(self, message: SyncMessage) -> None:
        await self.redis.publish(self.name, message.model_dump_json())

    def subscribe(self, callback: Subscriber) -> Unsubscribe:
        self._subscribers.append(callback)
        if self._listener is None:
            self._listener = asyncio.ensure_future(self._listen())

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    async def _listen(self) -> None:
        pubsub = self.redis.pubsub()
        await pubsub.subscribe(self.name)
        logger.info(f"Subscribed to Redis channel {self.name}")
        try:
            async for item in pubsub.listen():
                if item.get("type") != "message":
                    continue
                try:
                    message = SyncMessage.model_validate_json(item["data"])
                except ValidationError as e:
                    logger.warning(f"Dropping malformed sync message on {self.name}: {e}")
                    continue
                for callback in list(self._subscribers):
                    await callback(message)
        finally:
            await pubsub.unsubscribe(self.name)
            await pubsub.aclose()

    async def close(self) -> None:
        self._subscribers.clear()
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
