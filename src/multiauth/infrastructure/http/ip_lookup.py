"""Client IP lookup.

Resolves the address recorded in session metadata. A caller-supplied
address always wins; otherwise an ipify-style JSON endpoint is queried
when configured. Lookup failures never fail a login.
"""

import logging
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

UNKNOWN_IP = "unknown"


class ClientIpLookup:
    """Resolve the client IP for session metadata"""

    def __init__(
        self,
        url: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 2.0
    ):
        """Initialize lookup.

        Args:
            url: JSON endpoint answering {"ip": "..."} (e.g. https://api.ipify.org?format=json)
            http_client: Shared client; a short-lived one is opened per call when absent
            timeout: Request timeout in seconds
        """
        self.url = url
        self.http_client = http_client
        self.timeout = timeout

    async def resolve(self, hint: Optional[str] = None) -> str:
        """Return hint if given, the looked-up address, or "unknown"."""
        if hint:
            return hint
        if not self.url:
            return UNKNOWN_IP

        try:
            if self.http_client is not None:
                response = await self.http_client.get(self.url, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.get(self.url)
            response.raise_for_status()
            return response.json().get("ip") or UNKNOWN_IP
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Client IP lookup failed: {e}")
            return UNKNOWN_IP
