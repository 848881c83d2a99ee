"""In-flight request store for redirect-based flows.

OAuth and SAML requests are recorded at initiation and consumed exactly
once when the callback arrives. Entries abandoned by the user expire
after a TTL and the store never grows past max_entries.
"""

import logging
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Callable, Optional

from multiauth.domain.models import PendingRequest, utc_now

logger = logging.getLogger(__name__)


class PendingRequestStore:
    """TTL-bounded, size-bounded map of pending requests keyed by id.

    Expired entries are swept on every put/pop. When the store is full
    the oldest entry is evicted.
    """

    def __init__(
        self,
        ttl_seconds: float = 600,
        max_entries: int = 1000,
        clock: Optional[Callable[[], datetime]] = None
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.ttl = timedelta(seconds=ttl_seconds)
        self.max_entries = max_entries
        self._clock = clock or utc_now
        self._entries: "OrderedDict[str, PendingRequest]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, request_id: str) -> bool:
        request = self._entries.get(request_id)
        return request is not None and request.expires_at > self._clock()

    def expiry_for(self, issued_at: datetime) -> datetime:
        return issued_at + self.ttl

    def put(self, request: PendingRequest) -> None:
        """Record a pending request, evicting the oldest if full"""
        self.sweep()
        self._entries.pop(request.id, None)
        while len(self._entries) >= self.max_entries:
            evicted_id, _ = self._entries.popitem(last=False)
            logger.warning(f"Pending request store full, evicted {evicted_id[:8]}...")
        self._entries[request.id] = request

    def pop(self, request_id: str) -> Optional[PendingRequest]:
        """Consume a pending request. Returns None if unknown or expired."""
        self.sweep()
        return self._entries.pop(request_id, None)

    def pop_matching(self, predicate: Callable[[PendingRequest], bool]) -> Optional[PendingRequest]:
        """Consume the first live request satisfying predicate"""
        self.sweep()
        for request_id, request in self._entries.items():
            if predicate(request):
                del self._entries[request_id]
                return request
        return None

    def sweep(self) -> int:
        """Drop expired entries

        Returns:
            Number of entries removed
        """
        now = self._clock()
        expired = [key for key, request in self._entries.items() if request.expires_at <= now]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug(f"Swept {len(expired)} expired pending requests")
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()
