"""Storage primitives used by the session store.

Key Components:
- KeyValueStore: Durable string store shared by every instance of an origin
- BroadcastChannel: Pub/sub channel carrying SyncMessages between instances
"""

from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional

from multiauth.domain.models import SyncMessage

Subscriber = Callable[[SyncMessage], Awaitable[None]]
Unsubscribe = Callable[[], None]


class KeyValueStore(ABC):
    """Async string key-value store"""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        pass


class BroadcastChannel(ABC):
    """Named pub/sub channel. Delivery is asynchronous and unordered."""

    @abstractmethod
    async def publish(self, message: SyncMessage) -> None:
        pass

    @abstractmethod
    def subscribe(self, callback: Subscriber) -> Unsubscribe:
        """Register a callback. Returns a function removing it."""
        pass

    @abstractmethod
    async def close(self) -> None:
        pass
