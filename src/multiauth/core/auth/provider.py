"""Abstract authentication provider interface.

This module defines the contract that all authentication providers must implement.
Callers select a provider through the registry and feature-detect with
get_capabilities(); they never branch on the concrete class.
"""

import copy
import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, Mapping, Optional, Union

from pydantic import ValidationError

from multiauth.domain.models import (
    AuthCredentials,
    AuthErrorType,
    AuthResult,
    AuthSession,
    HealthStatus,
    ProviderType,
    utc_now,
)
from multiauth.infrastructure.http.ip_lookup import ClientIpLookup

from .errors import AuthenticationError

logger = logging.getLogger(__name__)

Credentials = Union[AuthCredentials, Mapping[str, Any]]
Clock = Callable[[], datetime]


class AuthProvider(ABC):
    """Abstract interface for authentication providers.

    Every provider implements the same nine-method surface. No public
    coroutine raises: failures are returned as a failed AuthResult.

    Example:
        provider = registry.get(ProviderType.LDAP)
        await provider.initialize()
        if "registration" in provider.get_capabilities():
            ...
        result = await provider.authenticate(
            {"username": "jdoe", "password": "...", "provider": "active_directory"}
        )
    """

    provider_type: ProviderType

    def __init__(
        self,
        clock: Optional[Clock] = None,
        ip_lookup: Optional[ClientIpLookup] = None
    ):
        """Initialize shared provider state.

        Args:
            clock: Returns the current UTC time (default: datetime.now(timezone.utc))
            ip_lookup: Resolves the client IP recorded in session metadata
        """
        self._clock = clock or utc_now
        self._ip_lookup = ip_lookup or ClientIpLookup()
        self._initialized = False
        self._initialized_at: Optional[datetime] = None
        self.current_session: Optional[AuthSession] = None

    def now(self) -> datetime:
        return self._clock()

    @abstractmethod
    async def authenticate(self, credentials: Credentials) -> AuthResult:
        """Authenticate and return an AuthResult carrying an AuthSession.

        Redirect-based providers return a pending session (is_active=False)
        whose metadata holds the URL the caller must visit.

        Args:
            credentials: AuthCredentials or an equivalent mapping

        Returns:
            AuthResult[AuthSession]
        """
        pass

    @abstractmethod
    async def register(self, credentials: Credentials) -> AuthResult:
        """Create an identity and return an AuthResult[AuthSession]"""
        pass

    @abstractmethod
    async def activate(self, code: str) -> AuthResult:
        """Activate a registered identity with an activation code"""
        pass

    @abstractmethod
    async def signout(self) -> AuthResult:
        """Tear down the current session"""
        pass

    @abstractmethod
    async def refresh_token(self) -> AuthResult:
        """Extend the current session and return the refreshed AuthSession"""
        pass

    @abstractmethod
    async def validate_session(self) -> AuthResult:
        """Report whether the current session is usable (AuthResult[bool])"""
        pass

    @abstractmethod
    def configure(self, config: Mapping[str, Any]) -> None:
        """Merge a partial configuration into the provider defaults.

        Raises:
            ValueError: If the configuration is malformed
        """
        pass

    @abstractmethod
    def get_capabilities(self) -> list[str]:
        """Static feature list used by callers to feature-detect"""
        pass

    def resume(self, session: AuthSession) -> None:
        """Rebind to a session this provider issued and the store kept"""
        self.current_session = session

    def fork(self) -> "AuthProvider":
        """Caller-scoped copy: shares configuration, pools and pending
        stores, starts with no current session"""
        clone = copy.copy(self)
        clone.reset_caller_state()
        return clone

    def reset_caller_state(self) -> None:
        self.current_session = None

    async def initialize(self) -> None:
        """Idempotent setup. Safe to call more than once."""
        if self._initialized:
            return
        await self._setup()
        self._initialized = True
        self._initialized_at = self.now()
        logger.info(f"{type(self).__name__} initialized")

    async def _setup(self) -> None:
        """Provider-specific setup hook run once by initialize()"""

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def uptime_seconds(self) -> float:
        if self._initialized_at is None:
            return 0.0
        return (self.now() - self._initialized_at).total_seconds()

    async def health_check(self) -> HealthStatus:
        """Check provider health. Never raises."""
        started = time.perf_counter()
        try:
            healthy, message, metadata = await self._check_health()
        except Exception as e:
            logger.error(f"{type(self).__name__} health check failed: {e}")
            healthy, message, metadata = False, f"Health check failed: {e}", {}

        return HealthStatus(
            healthy=healthy,
            timestamp=self.now(),
            response_time_ms=(time.perf_counter() - started) * 1000,
            message=message,
            metadata={
                "provider": self.provider_type.value,
                "initialized": self._initialized,
                "uptimeSeconds": self.uptime_seconds,
                **metadata,
            },
        )

    async def _check_health(self) -> tuple[bool, str, dict]:
        if not self._initialized:
            return False, "Provider not initialized", {}
        return True, "Provider operational", {}

    async def shutdown(self) -> None:
        """Release resources and drop in-memory session state"""
        self.current_session = None
        self._initialized = False
        self._initialized_at = None

    def unsupported(self, operation: str, code: str) -> AuthResult:
        """Result for an operation outside this provider's capabilities"""
        return AuthResult.fail(
            AuthErrorType.UNKNOWN_ERROR,
            f"{operation} is not supported by the {self.provider_type.value} provider",
            code,
        )

    @staticmethod
    def coerce_credentials(credentials: Credentials) -> AuthCredentials:
        """Accept AuthCredentials or a plain mapping

        Raises:
            AuthenticationError: VALIDATION_ERROR if the mapping is malformed
        """
        if isinstance(credentials, AuthCredentials):
            return credentials
        try:
            return AuthCredentials.model_validate(dict(credentials or {}))
        except (ValidationError, TypeError, ValueError) as e:
            raise AuthenticationError(
                AuthErrorType.VALIDATION_ERROR,
                f"Malformed credentials: {e}",
                "INVALID_CREDENTIALS_FORMAT",
            )

    async def client_ip(self, credentials: AuthCredentials) -> str:
        return await self._ip_lookup.resolve(credentials.ip_address)

    def validation_result(self) -> AuthResult:
        """validate_session() for providers holding a single in-memory session"""
        session = self.current_session
        if session is None or not session.is_active:
            return AuthResult.ok(False)
        if session.is_expired(self.now()):
            self.current_session = None
            return AuthResult.ok(False)
        return AuthResult.ok(True)
