"""Domain models for the authentication core"""

from multiauth.domain.models.auth import (
    AuthCredentials,
    AuthError,
    AuthErrorType,
    AuthResult,
    AuthSession,
    AuthToken,
    AuthUser,
    HealthStatus,
    ProviderType,
    utc_now,
)
from multiauth.domain.models.providers import (
    ConfigRecord,
    LdapProviderConfig,
    OAuthProviderConfig,
    PendingRequest,
    SamlProviderConfig,
    SessionConfig,
)
from multiauth.domain.models.session import SessionData, SyncEventType, SyncMessage

__all__ = [
    # Auth models
    "AuthCredentials",
    "AuthError",
    "AuthErrorType",
    "AuthResult",
    "AuthSession",
    "AuthToken",
    "AuthUser",
    "HealthStatus",
    "ProviderType",
    "utc_now",
    # Provider configuration
    "ConfigRecord",
    "LdapProviderConfig",
    "OAuthProviderConfig",
    "PendingRequest",
    "SamlProviderConfig",
    "SessionConfig",
    # Session store
    "SessionData",
    "SyncEventType",
    "SyncMessage",
]
