"""In-memory storage primitives.

A MemoryKeyValueStore or CookieJar may be shared by several session
providers to model tabs of one origin; MemoryBroadcastHub hands each of
them its own channel endpoint.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from email.utils import format_datetime
from http.cookies import SimpleCookie
from typing import Callable, Dict, Optional, Set

from multiauth.domain.models import SyncMessage, utc_now

from .base import BroadcastChannel, KeyValueStore, Subscriber, Unsubscribe

logger = logging.getLogger(__name__)


class MemoryKeyValueStore(KeyValueStore):
    """Dictionary-backed store with optional per-key TTL"""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or utc_now
        self._data: Dict[str, tuple[str, Optional[datetime]]] = {}

    async def get(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return value

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        expires_at = self._clock() + timedelta(seconds=ttl_seconds) if ttl_seconds else None
        self._data[key] = (value, expires_at)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)


@dataclass
class Cookie:
    """Cookie with its security attributes"""
    name: str
    value: str
    expires: Optional[datetime] = None
    path: str = "/"
    domain: Optional[str] = None
    secure: bool = True
    http_only: bool = True
    same_site: str = "strict"

    def to_header(self) -> str:
        """Render as a Set-Cookie header value"""
        jar = SimpleCookie()
        jar[self.name] = self.value
        morsel = jar[self.name]
        morsel["path"] = self.path
        if self.expires is not None:
            morsel["expires"] = format_datetime(self.expires, usegmt=True)
        if self.domain:
            morsel["domain"] = self.domain
        if self.secure:
            morsel["secure"] = True
        if self.http_only:
            morsel["httponly"] = True
        morsel["samesite"] = self.same_site.capitalize()
        return morsel.OutputString()


class CookieJar:
    """Cookie jar honoring expiry"""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or utc_now
        self._cookies: Dict[str, Cookie] = {}

    def set_cookie(self, cookie: Cookie) -> None:
        self._cookies[cookie.name] = cookie

    def get(self, name: str) -> Optional[str]:
        cookie = self._cookies.get(name)
        if cookie is None:
            return None
        if cookie.expires is not None and cookie.expires <= self._clock():
            del self._cookies[name]
            return None
        return cookie.value

    def get_cookie(self, name: str) -> Optional[Cookie]:
        return self._cookies.get(name) if self.get(name) is not None else None

    def delete_cookie(self, name: str) -> None:
        self._cookies.pop(name, None)

    def header(self, name: str) -> Optional[str]:
        """Set-Cookie value for a live cookie, None if absent or expired"""
        cookie = self.get_cookie(name)
        return cookie.to_header() if cookie is not None else None


class MemoryBroadcastHub:
    """Process-local broadcast fabric.

    Messages are delivered to every other endpoint of the same channel
    name on a later event loop iteration, never to the sender.
    """

    def __init__(self):
        self._endpoints: Dict[str, Set["MemoryBroadcastChannel"]] = {}
        self._deliveries: Set[asyncio.Task] = set()

    def channel(self, name: str) -> "MemoryBroadcastChannel":
        endpoint = MemoryBroadcastChannel(self, name)
        self._endpoints.setdefault(name, set()).add(endpoint)
        return endpoint

    def _detach(self, endpoint: "MemoryBroadcastChannel") -> None:
        self._endpoints.get(endpoint.name, set()).discard(endpoint)

    def _dispatch(self, sender: "MemoryBroadcastChannel", message: SyncMessage) -> None:
        for endpoint in list(self._endpoints.get(sender.name, ())):
            if endpoint is sender:
                continue
            for callback in list(endpoint.subscribers):
                task = asyncio.ensure_future(callback(message))
                self._deliveries.add(task)
                task.add_done_callback(self._delivered)

    def _delivered(self, task: asyncio.Task) -> None:
        self._deliveries.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Broadcast subscriber failed: {task.exception()}")

    async def drain(self) -> None:
        """Wait until every dispatched message has been handled"""
        while self._deliveries:
            await asyncio.gather(*list(self._deliveries), return_exceptions=True)


class MemoryBroadcastChannel(BroadcastChannel):
    """One endpoint of a MemoryBroadcastHub channel"""

    def __init__(self, hub: MemoryBroadcastHub, name: str):
        self.hub = hub
        self.name = name
        self.subscribers: list[Subscriber] = []
        self.closed = False

    async def publish(self, message: SyncMessage) -> None:
        if self.closed:
            raise RuntimeError(f"Broadcast channel {self.name} is closed")
        self.hub._dispatch(self, message)

    def subscribe(self, callback: Subscriber) -> Unsubscribe:
        self.subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self.subscribers:
                self.subscribers.remove(callback)

        return unsubscribe

    async def close(self) -> None:
        self.subscribers.clear()
        self.closed = True
        self.hub._detach(self)
