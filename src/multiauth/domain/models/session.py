"""Session Store Models

Purpose: Records owned by the session store and its sync channel

Key Components:
- SessionData: The store's own record, persisted under a key derived from its id
- SyncEventType: Cross-instance broadcast event kinds
- SyncMessage: Broadcast message ordered by per-origin sequence
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from .auth import AuthSession, AuthToken, AuthUser, ProviderType


class SessionData(BaseModel):
    """Durable session record.

    Distinct from AuthSession: this is what the store persists, and it
    is only materialized into an AuthSession at the boundary.
    """
    session_id: str = Field(repr=False)
    user_id: str
    email: str = ""
    username: Optional[str] = None
    roles: list[str] = Field(default_factory=list)
    permissions: list[str] = Field(default_factory=list)
    profile: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    expires_at: datetime
    last_accessed: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    is_active: bool = True

    # Token material of the provider that produced the session
    provider: ProviderType = ProviderType.SESSION
    access_token: str = Field(default="", repr=False)
    refresh_token: str = Field(default="", repr=False)
    token_type: str = "Session"
    scope: list[str] = Field(default_factory=lambda: ["session"])
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_auth_session(self) -> AuthSession:
        """Materialize the record as an AuthSession"""
        return AuthSession(
            user=AuthUser(
                id=self.user_id,
                email=self.email,
                username=self.username,
                roles=list(self.roles),
                permissions=list(self.permissions),
                profile=dict(self.profile),
            ),
            token=AuthToken(
                access_token=self.access_token or self.session_id,
                refresh_token=self.refresh_token,
                expires_at=self.expires_at,
                token_type=self.token_type,
                scope=list(self.scope),
            ),
            provider=self.provider,
            created_at=self.created_at,
            expires_at=self.expires_at,
            is_active=self.is_active,
            metadata={
                **self.metadata,
                "sessionId": self.session_id,
                "ipAddress": self.ip_address or "unknown",
                "userAgent": self.user_agent or "unknown",
                "lastAccessed": self.last_accessed.isoformat(),
            },
        )


class SyncEventType(str, Enum):
    """Broadcast event kinds"""
    CREATE = "create"
    REFRESH = "refresh"
    SIGNOUT = "signout"


class SyncMessage(BaseModel):
    """Cross-instance session event.

    Sequences are per origin: receivers drop a message whose sequence is
    not above the last one applied from the same origin. issued_at is
    informational and never used for ordering, since origins do not share
    a clock.
    """
    type: SyncEventType
    origin: str
    sequence: int
    issued_at: datetime
    session_id: Optional[str] = Field(default=None, repr=False)
