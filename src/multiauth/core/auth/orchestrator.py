"""Authentication orchestrator.

Routes credentials to the provider selected by type, hands active
sessions to the session store, and records per-call request ids, timings
and counters.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from multiauth.domain.models import (
    AuthErrorType,
    AuthResult,
    AuthSession,
    HealthStatus,
    ProviderType,
)

from .factory import ProviderRegistry
from .provider import AuthProvider, Credentials
from .rate_limit import LoginRateLimiter
from .session import SessionProvider

logger = logging.getLogger(__name__)

ORCHESTRATOR_CAPABILITIES = ["authentication", "validation", "logging", "metrics"]


@dataclass
class OperationStats:
    attempts: int = 0
    successes: int = 0
    failures: int = 0
    total_duration_ms: float = 0.0
    failures_by_type: Dict[str, int] = field(default_factory=dict)

    @property
    def average_duration_ms(self) -> float:
        return self.total_duration_ms / self.attempts if self.attempts else 0.0


class AuthMetrics:
    """In-process counters per operation (login, logout, refresh, ...)"""

    def __init__(self):
        self._operations: Dict[str, OperationStats] = {}

    def _stats(self, operation: str) -> OperationStats:
        return self._operations.setdefault(operation, OperationStats())

    def record_success(self, operation: str, duration_ms: float) -> None:
        stats = self._stats(operation)
        stats.attempts += 1
        stats.successes += 1
        stats.total_duration_ms += duration_ms

    def record_failure(self, operation: str, error_type: str, duration_ms: float) -> None:
        stats = self._stats(operation)
        stats.attempts += 1
        stats.failures += 1
        stats.total_duration_ms += duration_ms
        stats.failures_by_type[error_type] = stats.failures_by_type.get(error_type, 0) + 1

    def get(self, operation: str) -> OperationStats:
        return self._stats(operation)

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        return {
            operation: {
                "attempts": stats.attempts,
                "successes": stats.successes,
                "failures": stats.failures,
                "failuresByType": dict(stats.failures_by_type),
                "averageDurationMs": round(stats.average_duration_ms, 3),
            }
            for operation, stats in self._operations.items()
        }


class AuthOrchestrator:
    """Entry point above the provider registry.

    Active sessions from the JWT, OAuth, SAML and LDAP providers are
    adopted by the session store; pending sessions (redirect placeholders)
    are returned untouched. A new active session supersedes the previous
    one, and the provider that owned it is signed out.

    One orchestrator holds one caller's session. A server builds a
    long-lived instance at startup and serves each request through
    for_caller(), which forks the providers around the request's cookie.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        session_manager: Optional[SessionProvider] = None,
        metrics: Optional[AuthMetrics] = None,
        rate_limiter: Optional[LoginRateLimiter] = None
    ):
        self.registry = registry
        self.session_manager = session_manager or registry.get(ProviderType.SESSION)
        self.metrics = metrics or AuthMetrics()
        self.rate_limiter = rate_limiter or LoginRateLimiter(clock=self.session_manager.now)
        self.active_provider: Optional[ProviderType] = None

    def for_caller(self, session_id: Optional[str]) -> "AuthOrchestrator":
        """Orchestrator scoped to the caller presenting this session cookie.

        Providers are forked so no in-memory session leaks between callers.
        Configuration, connection pools, pending requests, metrics and the
        rate limiter stay shared.
        """
        session_manager = self.session_manager.fork()
        session_manager.bind(session_id)
        return AuthOrchestrator(
            self.registry.fork(session_manager),
            session_manager,
            metrics=self.metrics,
            rate_limiter=self.rate_limiter,
        )

    async def initialize(self) -> None:
        for provider in self.registry:
            await provider.initialize()
        logger.info(f"Initialized {len(self.registry)} authentication providers")

    async def shutdown(self) -> None:
        for provider in self.registry:
            await provider.shutdown()
        self.active_provider = None
        logger.info("Authentication providers shut down")

    def _provider(self, provider_type: Union[ProviderType, str]) -> Optional[AuthProvider]:
        try:
            return self.registry.get(provider_type)
        except (KeyError, ValueError):
            return None

    async def _timed(
        self,
        operation: str,
        provider_name: str,
        call: Callable[[], Awaitable[AuthResult]]
    ) -> AuthResult:
        request_id = uuid.uuid4().hex
        started = time.perf_counter()
        logger.info(f"{operation} attempt via {provider_name} (request {request_id})")

        result = await call()

        duration_ms = (time.perf_counter() - started) * 1000
        if result.success:
            self.metrics.record_success(operation, duration_ms)
            logger.info(f"{operation} succeeded via {provider_name} in {duration_ms:.1f}ms")
        else:
            self.metrics.record_failure(operation, result.error.type.value, duration_ms)
            logger.warning(f"{operation} failed via {provider_name}: {result.error.code}")

        result.metadata.update(
            {"requestId": request_id, "durationMs": duration_ms, "provider": provider_name}
        )
        return result

    async def authenticate(
        self, provider_type: Union[ProviderType, str], credentials: Credentials
    ) -> AuthResult:
        """Authenticate with the selected provider and persist the session.

        Attempts from a client IP or for an account that recently failed
        too often are refused before the provider is consulted.
        """
        provider = self._provider(provider_type)
        if provider is None:
            return await self._timed(
                "login", str(provider_type), lambda: self._not_found(provider_type)
            )
        return await self._timed(
            "login",
            provider.provider_type.value,
            lambda: self._rate_limited(provider, credentials),
        )

    async def _rate_limited(self, provider: AuthProvider, credentials: Credentials) -> AuthResult:
        keys = self.rate_limiter.keys_for(credentials)
        decision = await self.rate_limiter.check(keys)
        if not decision.allowed:
            logger.warning(f"Login refused for {', '.join(keys)}: too many failures")
            return AuthResult.fail(
                AuthErrorType.CREDENTIALS_INVALID,
                "Too many failed login attempts, try again later",
                "AUTH_RATE_LIMITED",
                retryAfterSeconds=decision.retry_after_seconds,
            )

        result = await self._hand_off(provider, provider.authenticate(credentials))
        if not result.success and result.error.type == AuthErrorType.CREDENTIALS_INVALID:
            await self.rate_limiter.record_failure(keys)
        elif result.success and isinstance(result.data, AuthSession) and result.data.is_active:
            await self.rate_limiter.record_success([key for key in keys if key.startswith("account:")])
        return result

    async def register(
        self, provider_type: Union[ProviderType, str], credentials: Credentials
    ) -> AuthResult:
        provider = self._provider(provider_type)
        if provider is None:
            return await self._timed(
                "register", str(provider_type), lambda: self._not_found(provider_type)
            )
        return await self._timed(
            "register",
            provider.provider_type.value,
            lambda: self._hand_off(provider, provider.register(credentials)),
        )

    async def activate(self, provider_type: Union[ProviderType, str], code: str) -> AuthResult:
        provider = self._provider(provider_type)
        if provider is None:
            return await self._timed(
                "activate", str(provider_type), lambda: self._not_found(provider_type)
            )
        return await self._timed("activate", provider.provider_type.value, lambda: provider.activate(code))

    async def _not_found(self, provider_type: Union[ProviderType, str]) -> AuthResult:
        return AuthResult.fail(
            AuthErrorType.VALIDATION_ERROR,
            f"Authentication provider not found: {provider_type}",
            "PROVIDER_NOT_FOUND",
        )

    async def _hand_off(self, provider: AuthProvider, pending: Awaitable[AuthResult]) -> AuthResult:
        if self.active_provider is None and self.session_manager.current_session is None:
            await self.session_manager.validate_session()
        previous = self._recall_owner()

        result = await pending
        if not result.success or not isinstance(result.data, AuthSession) or not result.data.is_active:
            return result

        if provider is not self.session_manager:
            adopted = await self.session_manager.adopt(result.data)
            if not adopted.success:
                return adopted
            result = AuthResult.ok(adopted.data, **result.metadata)

        if previous is not None and previous is not provider:
            logger.info(f"Signing out superseded {previous.provider_type.value} session")
            await previous.signout()
        self.active_provider = provider.provider_type
        return result

    def _recall_owner(self) -> Optional[AuthProvider]:
        """Provider that issued the stored session, rebound to it if needed.

        A caller-scoped orchestrator only has the session store's record;
        the issuing provider is found from its provider field.
        """
        session = self.session_manager.current_session
        if self.active_provider is None and session is not None:
            self.active_provider = session.provider
        if self.active_provider is None:
            return None
        owner = self._provider(self.active_provider)
        if owner is None or owner is self.session_manager:
            return None
        if owner.current_session is None and session is not None:
            owner.resume(session)
        return owner

    async def get_current_session(self) -> Optional[AuthSession]:
        """Current session after re-validation, or None.

        An invalid session is cleared with the provider that owns it.
        """
        result = await self.session_manager.validate_session()
        if not result.success or not result.data:
            if self.active_provider is not None:
                await self.global_signout()
            return None

        owner = self._recall_owner()
        if owner is not None:
            owner_result = await owner.validate_session()
            if not owner_result.success or not owner_result.data:
                await self.global_signout()
                return None
        return self.session_manager.current_session

    async def refresh_session(self) -> AuthResult:
        """Extend the stored session by one session timeout"""
        return await self._timed(
            "refresh", ProviderType.SESSION.value, self._refresh
        )

    async def _refresh(self) -> AuthResult:
        if self.session_manager.session_data is None:
            await self.session_manager.validate_session()
        return await self.session_manager.refresh_token()

    async def global_signout(self) -> AuthResult:
        """Sign out of the owning provider and clear the session store"""
        return await self._timed(
            "logout", (self.active_provider or ProviderType.SESSION).value, self._signout_all
        )

    async def _signout_all(self) -> AuthResult:
        metadata: Dict[str, Any] = {}
        if self.session_manager.current_session is None:
            await self.session_manager.validate_session()
        owner = self._recall_owner()
        if owner is not None:
            owner_result = await owner.signout()
            if owner_result.success:
                metadata.update(owner_result.metadata)
            else:
                logger.warning(f"{owner.provider_type.value} signout failed: {owner_result.error.code}")

        result = await self.session_manager.signout()
        self.active_provider = None
        if not result.success:
            return result
        return AuthResult.ok(**metadata)

    def get_capabilities(self, provider_type: Union[ProviderType, str, None] = None) -> list[str]:
        """Capabilities of one provider, or the deduplicated union of all

        Raises:
            ValueError: If provider_type is not a known type
            KeyError: If no provider is registered for it
        """
        if provider_type is not None:
            return self.registry.get(provider_type).get_capabilities()

        capabilities = list(ORCHESTRATOR_CAPABILITIES)
        for provider in self.registry:
            capabilities.extend(c for c in provider.get_capabilities() if c not in capabilities)
        return capabilities

    async def health_check(self) -> Dict[str, HealthStatus]:
        return {
            provider.provider_type.value: await provider.health_check()
            for provider in self.registry
        }

    def get_metrics(self) -> Dict[str, Dict[str, Any]]:
        return self.metrics.snapshot()
