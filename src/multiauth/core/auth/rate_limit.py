"""Login rate limiting.

Failed logins are counted per client IP and per account name inside a
window opened by the first failure. Once a key reaches max_failures it is
blocked for block_seconds, whichever provider the attempts went to.
"""

import asyncio
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Union

from multiauth.domain.models import AuthCredentials, utc_now

logger = logging.getLogger(__name__)


@dataclass
class FailureWindow:
    failures: int = 0
    window_started: Optional[datetime] = None
    blocked_until: Optional[datetime] = None


@dataclass
class RateLimitDecision:
    allowed: bool
    retry_after_seconds: int = 0


class LoginRateLimiter:
    """Windowed failure counter with temporary blocking.

    Example:
        keys = limiter.keys_for(credentials)
        decision = await limiter.check(keys)
        if not decision.allowed:
            ...
        await limiter.record_failure(keys)
    """

    def __init__(
        self,
        max_failures: int = 5,
        window_seconds: float = 900,
        block_seconds: float = 900,
        max_entries: int = 10000,
        enabled: bool = True,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.max_failures = max(1, max_failures)
        self.window = timedelta(seconds=window_seconds)
        self.block = timedelta(seconds=block_seconds)
        self.max_entries = max(1, max_entries)
        self.enabled = enabled
        self._clock = clock or utc_now
        self._windows: Dict[str, FailureWindow] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def keys_for(credentials: Union[AuthCredentials, Mapping[str, Any], None]) -> list[str]:
        """Limiter keys for a login attempt: client IP and account name"""
        if isinstance(credentials, AuthCredentials):
            ip_address = credentials.ip_address
            account = credentials.username or credentials.email
        else:
            values = dict(credentials or {})
            ip_address = values.get("ipAddress") or values.get("ip_address")
            account = values.get("username") or values.get("email")

        keys = []
        if isinstance(ip_address, str) and ip_address:
            keys.append(f"ip:{ip_address}")
        if isinstance(account, str) and account.strip():
            keys.append(f"account:{account.strip().lower()}")
        return keys

    async def check(self, keys: Iterable[str]) -> RateLimitDecision:
        """Whether an attempt under these keys may proceed"""
        if not self.enabled:
            return RateLimitDecision(allowed=True)

        now = self._clock()
        retry_after = 0
        async with self._lock:
            for key in keys:
                entry = self._current(key, now)
                if entry is not None and entry.blocked_until is not None:
                    remaining = (entry.blocked_until - now).total_seconds()
                    retry_after = max(retry_after, math.ceil(remaining))
        if retry_after:
            return RateLimitDecision(allowed=False, retry_after_seconds=retry_after)
        return RateLimitDecision(allowed=True)

    async def record_failure(self, keys: Iterable[str]) -> None:
        if not self.enabled:
            return

        now = self._clock()
        async with self._lock:
            for key in keys:
                entry = self._current(key, now)
                if entry is None:
                    entry = self._windows[key] = FailureWindow(window_started=now)
                entry.failures += 1
                if entry.failures >= self.max_failures and entry.blocked_until is None:
                    entry.blocked_until = now + self.block
                    logger.warning(f"Login blocked for {key} until {entry.blocked_until.isoformat()}")
            self._prune(now)

    async def record_success(self, keys: Iterable[str]) -> None:
        """Forget failures for the given keys"""
        async with self._lock:
            for key in keys:
                self._windows.pop(key, None)

    def _current(self, key: str, now: datetime) -> Optional[FailureWindow]:
        entry = self._windows.get(key)
        if entry is None:
            return None
        if entry.blocked_until is not None:
            if entry.blocked_until > now:
                return entry
        elif now - entry.window_started < self.window:
            return entry
        del self._windows[key]
        return None

    def _prune(self, now: datetime) -> None:
        for key in list(self._windows):
            self._current(key, now)
        while len(self._windows) > self.max_entries:
            oldest = min(self._windows, key=lambda k: self._windows[k].window_started)
            del self._windows[oldest]
