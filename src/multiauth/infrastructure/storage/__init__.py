"""Session storage primitives: key-value store, cookie jar, broadcast channel."""

from .base import BroadcastChannel, KeyValueStore
from .memory import (
    Cookie,
    CookieJar,
    MemoryBroadcastChannel,
    MemoryBroadcastHub,
    MemoryKeyValueStore,
)
from .redis import RedisBroadcastChannel, RedisKeyValueStore

__all__ = [
    "BroadcastChannel",
    "Cookie",
    "CookieJar",
    "KeyValueStore",
    "MemoryBroadcastChannel",
    "MemoryBroadcastHub",
    "MemoryKeyValueStore",
    "RedisBroadcastChannel",
    "RedisKeyValueStore",
]
