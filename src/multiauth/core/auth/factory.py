"""Authentication provider registry.

Holds one provider instance per ProviderType and builds the default set
from Settings. Callers select providers by type and feature-detect with
get_capabilities(); nothing here branches on concrete classes.
"""

import logging
from typing import Dict, Iterator, Optional, Union

import httpx

from multiauth.config.settings import Settings, get_settings, load_provider_overrides
from multiauth.domain.models import ProviderType, SessionConfig
from multiauth.infrastructure.auth import UserDirectory
from multiauth.infrastructure.http import ClientIpLookup
from multiauth.infrastructure.ldap import ConnectionFactory, MemoryDirectory
from multiauth.infrastructure.storage import BroadcastChannel, CookieJar, KeyValueStore

from .jwt import JwtProvider
from .ldap import LdapProvider
from .oauth import OAuth2Provider
from .provider import AuthProvider, Clock
from .rate_limit import LoginRateLimiter
from .saml import SamlProvider
from .session import SessionProvider

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Provider instances keyed by ProviderType"""

    def __init__(self):
        self._providers: Dict[ProviderType, AuthProvider] = {}

    def __contains__(self, provider_type: object) -> bool:
        try:
            return self._coerce(provider_type) in self._providers
        except ValueError:
            return False

    def __iter__(self) -> Iterator[AuthProvider]:
        return iter(list(self._providers.values()))

    def __len__(self) -> int:
        return len(self._providers)

    @staticmethod
    def _coerce(provider_type: Union[ProviderType, str]) -> ProviderType:
        """Accept a ProviderType or its value

        Raises:
            ValueError: If the value names no provider type
        """
        if isinstance(provider_type, ProviderType):
            return provider_type
        try:
            return ProviderType(str(provider_type).lower())
        except ValueError:
            valid = ", ".join(t.value for t in ProviderType)
            raise ValueError(f"Unknown provider type: {provider_type}. Valid options: {valid}")

    def register(self, provider: AuthProvider, replace: bool = False) -> None:
        """Register a provider under its provider_type

        Raises:
            ValueError: If the type is already registered and replace is False
        """
        existing = self._providers.get(provider.provider_type)
        if existing is not None and not replace:
            raise ValueError(f"Provider already registered for {provider.provider_type.value}")
        self._providers[provider.provider_type] = provider
        logger.info(f"Registered {type(provider).__name__} for {provider.provider_type.value}")

    def get(self, provider_type: Union[ProviderType, str]) -> AuthProvider:
        """Look up the provider for a type

        Raises:
            ValueError: If provider_type is not a known type
            KeyError: If no provider is registered for it
        """
        key = self._coerce(provider_type)
        try:
            return self._providers[key]
        except KeyError:
            raise KeyError(f"No provider registered for {key.value}")

    def types(self) -> list[ProviderType]:
        return list(self._providers)

    def fork(self, session_manager: Optional[SessionProvider] = None) -> "ProviderRegistry":
        """Registry of caller-scoped provider copies.

        session_manager, if given, stands in for the forked session store.
        """
        forked = ProviderRegistry()
        for provider_type, provider in self._providers.items():
            if provider_type == ProviderType.SESSION and session_manager is not None:
                forked._providers[provider_type] = session_manager
            else:
                forked._providers[provider_type] = provider.fork()
        return forked


def session_config_from_settings(settings: Settings) -> SessionConfig:
    return SessionConfig(
        session_timeout=settings.session_timeout_seconds,
        refresh_interval=settings.session_refresh_interval_seconds,
        cookie_name=settings.session_cookie_name,
        cookie_path=settings.session_cookie_path,
        secure=settings.session_cookie_secure,
        http_only=settings.session_cookie_http_only,
        same_site=settings.session_cookie_same_site,
        enable_cross_tab_sync=settings.session_cross_tab_sync,
        enable_auto_refresh=settings.session_auto_refresh,
        storage_key=settings.session_storage_key,
        channel_name=settings.session_channel_name,
    )


def create_default_registry(
    settings: Optional[Settings] = None,
    storage: Optional[KeyValueStore] = None,
    cookie_jar: Optional[CookieJar] = None,
    channel: Optional[BroadcastChannel] = None,
    user_directory: Optional[UserDirectory] = None,
    ldap_connection_factory: Optional[ConnectionFactory] = None,
    ldap_directory: Optional[MemoryDirectory] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    clock: Optional[Clock] = None
) -> ProviderRegistry:
    """Build a registry with all five providers configured from settings.

    Provider tables are then overlaid with the YAML file named by
    PROVIDERS_CONFIG_PATH, if any, through each provider's configure().

    Raises:
        ValueError: If the overrides file is malformed
    """
    settings = settings or get_settings()
    ip_lookup = ClientIpLookup(url=settings.ip_lookup_url, http_client=http_client)
    shared = {"clock": clock, "ip_lookup": ip_lookup}

    registry = ProviderRegistry()
    registry.register(
        JwtProvider(
            secret_key=settings.jwt_secret_key,
            algorithm=settings.jwt_algorithm,
            session_minutes=settings.jwt_session_minutes,
            refresh_days=settings.jwt_refresh_days,
            user_directory=user_directory,
            **shared,
        )
    )
    registry.register(
        OAuth2Provider(
            http_client=http_client,
            pending_ttl_seconds=settings.pending_request_ttl_seconds,
            max_pending_requests=settings.pending_request_max_entries,
            **shared,
        )
    )
    registry.register(
        SamlProvider(
            sp_entity_id=settings.saml_sp_entity_id,
            acs_url=settings.saml_acs_url,
            pending_ttl_seconds=settings.pending_request_ttl_seconds,
            max_pending_requests=settings.pending_request_max_entries,
            **shared,
        )
    )
    registry.register(
        LdapProvider(
            connection_factory=ldap_connection_factory,
            directory=ldap_directory,
            **shared,
        )
    )
    registry.register(
        SessionProvider(
            config=session_config_from_settings(settings),
            storage=storage,
            cookie_jar=cookie_jar,
            channel=channel,
            user_directory=user_directory,
            **shared,
        )
    )

    overrides = load_provider_overrides(settings.providers_config_path)
    for family, section in overrides.items():
        provider = registry.get(family)
        if family == "session" or family == "jwt":
            provider.configure(section)
        else:
            provider.configure({"providers": section})
        logger.info(f"Applied {family} overrides from {settings.providers_config_path}")

    return registry


def create_rate_limiter(
    settings: Optional[Settings] = None, clock: Optional[Clock] = None
) -> LoginRateLimiter:
    settings = settings or get_settings()
    return LoginRateLimiter(
        max_failures=settings.rate_limit_max_failures,
        window_seconds=settings.rate_limit_window_seconds,
        block_seconds=settings.rate_limit_block_seconds,
        max_entries=settings.rate_limit_max_entries,
        enabled=settings.rate_limit_enabled,
        clock=clock,
    )
