"""HTTP collaborators (client IP lookup)."""

from .ip_lookup import ClientIpLookup

__all__ = ["ClientIpLookup"]
