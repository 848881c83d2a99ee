"""Authentication Data Models

Purpose: Define the provider-neutral structures exchanged across the
authentication core.

Every provider speaks a different protocol, but all of them accept
AuthCredentials and answer with an AuthResult envelope. Nothing below
this module raises across the public contract: failures travel as
AuthError values inside a failed AuthResult.

Key Components:
- ProviderType: Registry key for the five provider families
- AuthErrorType: Failure taxonomy carried by AuthError
- AuthCredentials: Union of optional credential fields
- AuthToken / AuthUser / AuthSession: Normalized session materialization
- AuthResult: Tagged success/error envelope returned by every operation
- HealthStatus: Provider health check result
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Generic, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

T = TypeVar("T")


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime"""
    return datetime.now(timezone.utc)


class ProviderType(str, Enum):
    """Authentication provider families known to the registry"""
    JWT = "jwt"
    OAUTH = "oauth"
    SAML = "saml"
    LDAP = "ldap"
    SESSION = "session"


class AuthErrorType(str, Enum):
    """Failure taxonomy

    SERVER_ERROR is transient and may be retried by the caller.
    VALIDATION_ERROR and UNKNOWN_ERROR are permanent for the call shape
    that produced them.
    """
    VALIDATION_ERROR = "VALIDATION_ERROR"
    CREDENTIALS_INVALID = "CREDENTIALS_INVALID"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    TOKEN_INVALID = "TOKEN_INVALID"
    SERVER_ERROR = "SERVER_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class CamelModel(BaseModel):
    """Base model accepting both snake_case and camelCase keys"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AuthCredentials(CamelModel):
    """Credentials presented to a provider.

    Only the subset relevant to the selected provider is read; unused
    fields are ignored rather than rejected.
    """
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore"
    )

    email: Optional[str] = None
    password: Optional[str] = Field(default=None, repr=False)
    username: Optional[str] = None
    token: Optional[str] = Field(default=None, repr=False)
    access_token: Optional[str] = Field(default=None, repr=False)
    provider: Optional[str] = None
    authorization_code: Optional[str] = Field(default=None, repr=False)
    code_verifier: Optional[str] = Field(default=None, repr=False)
    state: Optional[str] = None
    saml_response: Optional[str] = Field(default=None, repr=False)
    relay_state: Optional[str] = None
    session_id: Optional[str] = Field(default=None, repr=False)
    use_cookie: bool = False

    # Request context recorded in session metadata
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @property
    def principal(self) -> Optional[str]:
        """Identifier suitable for logging (never the secret)"""
        return self.email or self.username


class AuthToken(CamelModel):
    """Token material attached to a session"""
    access_token: str = Field(repr=False)
    refresh_token: str = Field(default="", repr=False)
    expires_at: datetime
    token_type: str = "Bearer"
    scope: list[str] = Field(default_factory=list)


class AuthUser(CamelModel):
    """Normalized user identity with roles mapped to permissions"""
    id: str
    email: str = ""
    username: Optional[str] = None
    roles: list[str] = Field(default_factory=list)
    permissions: list[str] = Field(default_factory=list)
    profile: Dict[str, Any] = Field(default_factory=dict)


class AuthSession(CamelModel):
    """Session materialized at the orchestrator boundary.

    A pending session (is_active=False) is a placeholder for a redirect
    based flow; its metadata carries the URL the caller must visit.
    """
    user: AuthUser
    token: AuthToken
    provider: ProviderType
    created_at: datetime
    expires_at: datetime
    is_active: bool = True
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utc_now()) >= self.expires_at


class AuthError(BaseModel):
    """Structured failure carried by a failed AuthResult"""
    type: AuthErrorType
    message: str
    code: str

    @property
    def retryable(self) -> bool:
        return self.type is AuthErrorType.SERVER_ERROR


class AuthResult(BaseModel, Generic[T]):
    """Tagged success/error envelope.

    Attributes:
        success: True when data is populated, False when error is
        data: Operation payload on success
        error: Structured failure on error
        metadata: Call-level details (request id, duration)
    """
    success: bool
    data: Optional[T] = None
    error: Optional[AuthError] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def ok(cls, data: Any = None, **metadata: Any) -> "AuthResult":
        return cls(success=True, data=data, metadata=metadata)

    @classmethod
    def fail(
        cls,
        error_type: AuthErrorType,
        message: str,
        code: str,
        **metadata: Any
    ) -> "AuthResult":
        return cls(
            success=False,
            error=AuthError(type=error_type, message=message, code=code),
            metadata=metadata,
        )


class HealthStatus(BaseModel):
    """Provider health check result"""
    healthy: bool
    timestamp: datetime = Field(default_factory=utc_now)
    response_time_ms: float = 0.0
    message: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)
