"""LDAP directory-bind provider.

Supports Active Directory, OpenLDAP, FreeIPA and Apache DS. The user's
entry is located with a service-account search, then the user's own DN is
bound with the supplied password. Only that bind proves identity.
"""

import hashlib
import logging
import secrets
from datetime import timedelta
from typing import Any, Dict, Mapping, Optional

from multiauth.config.settings import Settings, get_settings
from multiauth.domain.models import (
    AuthCredentials,
    AuthErrorType,
    AuthResult,
    AuthSession,
    AuthToken,
    AuthUser,
    LdapProviderConfig,
    ProviderType,
)
from multiauth.infrastructure.ldap import (
    ConnectionFactory,
    DirectoryConnection,
    DirectoryConnectionPool,
    DirectoryError,
    MemoryDirectory,
    MemoryDirectoryConnection,
)

from .errors import AuthenticationError, auth_boundary
from .permissions import LDAP_TIERS, group_common_name, map_groups_to_permissions
from .provider import AuthProvider, Credentials
from .single_flight import SingleFlight

logger = logging.getLogger(__name__)

SESSION_LIFETIME = timedelta(hours=8)


def escape_filter_value(value: str) -> str:
    """Escape a value for use inside an LDAP filter (RFC 4515)"""
    escaped = []
    for char in value:
        if char in "\\*()\x00":
            escaped.append(f"\\{ord(char):02x}")
        else:
            escaped.append(char)
    return "".join(escaped)


def default_ldap_providers(settings: Settings) -> Dict[str, LdapProviderConfig]:
    """Active Directory, OpenLDAP, FreeIPA and Apache DS records"""
    return {
        "active_directory": LdapProviderConfig(
            url=settings.ad_url,
            port=settings.ad_port,
            base_dn=settings.ad_base_dn,
            bind_dn=settings.ad_bind_dn,
            bind_password=settings.ad_bind_password,
            user_search_base=settings.ad_base_dn,
            user_search_filter="(sAMAccountName={username})",
            group_search_base=settings.ad_base_dn,
            group_search_filter="(member={userDN})",
            attribute_mapping={
                "username": "sAMAccountName",
                "email": "mail",
                "firstName": "givenName",
                "lastName": "sn",
                "groups": "memberOf",
            },
            use_tls=settings.ldap_use_tls,
        ),
        "open_ldap": LdapProviderConfig(
            url=settings.openldap_url,
            port=settings.openldap_port,
            base_dn="dc=company,dc=com",
            bind_dn="cn=admin,dc=company,dc=com",
            bind_password=settings.openldap_bind_password,
            user_search_base="ou=people,dc=company,dc=com",
            user_search_filter="(uid={username})",
            group_search_base="ou=groups,dc=company,dc=com",
            group_search_filter="(memberUid={username})",
            attribute_mapping={
                "username": "uid",
                "email": "mail",
                "firstName": "cn",
                "lastName": "sn",
                "groups": "memberOf",
            },
            use_tls=settings.ldap_use_tls,
        ),
        "free_ipa": LdapProviderConfig(
            url=settings.freeipa_url,
            base_dn="dc=company,dc=com",
            bind_dn="uid=admin,cn=users,cn=accounts,dc=company,dc=com",
            user_search_base="cn=users,cn=accounts,dc=company,dc=com",
            user_search_filter="(uid={username})",
            group_search_base="cn=groups,cn=accounts,dc=company,dc=com",
            group_search_filter="(member={userDN})",
            attribute_mapping={
                "username": "uid",
                "email": "mail",
                "firstName": "givenName",
                "lastName": "sn",
                "groups": "memberOf",
            },
            use_tls=settings.ldap_use_tls,
        ),
        "apache_ds": LdapProviderConfig(
            url=settings.apache_ds_url,
            port=10389,
            base_dn="dc=company,dc=com",
            bind_dn="uid=admin,ou=system",
            user_search_base="ou=users,dc=company,dc=com",
            user_search_filter="(uid={username})",
            group_search_base="ou=groups,dc=company,dc=com",
            group_search_filter="(uniqueMember={userDN})",
            attribute_mapping={
                "username": "uid",
                "email": "mail",
                "firstName": "cn",
                "lastName": "sn",
                "groups": "memberOf",
            },
            use_tls=settings.ldap_use_tls,
        ),
    }


class LdapProvider(AuthProvider):
    """Directory bind authentication with group-based permissions.

    Connections are pooled per host:port. Registration and activation are
    not offered: the directory is consulted, never written.
    """

    provider_type = ProviderType.LDAP

    def __init__(
        self,
        providers: Optional[Mapping[str, LdapProviderConfig]] = None,
        connection_factory: Optional[ConnectionFactory] = None,
        directory: Optional[MemoryDirectory] = None,
        **kwargs: Any
    ):
        """Initialize LDAP provider.

        Args:
            providers: Named directory configs (default: AD, OpenLDAP, FreeIPA, Apache DS)
            connection_factory: Opens a DirectoryConnection for a config
            directory: In-process directory used when no factory is given
        """
        super().__init__(**kwargs)
        self.providers: Dict[str, LdapProviderConfig] = (
            dict(providers) if providers is not None else default_ldap_providers(get_settings())
        )
        if connection_factory is None:
            directory = directory if directory is not None else MemoryDirectory()
            connection_factory = lambda config: MemoryDirectoryConnection(directory, config)
        self.pool = DirectoryConnectionPool(connection_factory)
        self._flights = SingleFlight()
        self.current_provider: Optional[str] = None

    @auth_boundary("LDAP_AUTH_ERROR")
    async def authenticate(self, credentials: Credentials) -> AuthResult:
        creds = self.coerce_credentials(credentials)
        if not creds.provider:
            raise AuthenticationError(
                AuthErrorType.VALIDATION_ERROR,
                "LDAP directory must be specified",
                "LDAP_MISSING_PROVIDER",
            )
        username = creds.username or creds.email
        if not username or not creds.password:
            raise AuthenticationError(
                AuthErrorType.VALIDATION_ERROR,
                "Username and password are required",
                "LDAP_MISSING_CREDENTIALS",
            )
        config = self.providers.get(creds.provider)
        if config is None:
            raise AuthenticationError(
                AuthErrorType.VALIDATION_ERROR,
                f"Unsupported LDAP directory: {creds.provider}",
                "LDAP_UNSUPPORTED_PROVIDER",
            )

        password_digest = hashlib.sha256(creds.password.encode("utf-8")).hexdigest()
        session = await self._flights.run(
            (creds.provider, username, password_digest),
            lambda: self._bind_user(creds, config, username),
        )
        self.current_session = session
        self.current_provider = creds.provider
        logger.info(f"LDAP login via {creds.provider} for {session.user.username}")
        return AuthResult.ok(session)

    async def _bind_user(
        self, creds: AuthCredentials, config: LdapProviderConfig, username: str
    ) -> AuthSession:
        try:
            connection = await self.pool.acquire(config)
        except DirectoryError as e:
            raise AuthenticationError(
                AuthErrorType.SERVER_ERROR, f"Directory unavailable: {e}", "LDAP_CONNECTION_FAILED"
            )

        try:
            await self._service_bind(connection, config)

            user_filter = config.user_search_filter.format(username=escape_filter_value(username))
            entries = await connection.search(config.user_search_base, user_filter)
            if not entries:
                raise AuthenticationError(
                    AuthErrorType.CREDENTIALS_INVALID, "Invalid username or password", "LDAP_USER_NOT_FOUND"
                )
            user_dn, attributes = entries[0]

            if not await connection.bind(user_dn, creds.password):
                raise AuthenticationError(
                    AuthErrorType.CREDENTIALS_INVALID, "Invalid username or password", "LDAP_AUTH_FAILED"
                )

            # Group search runs with service credentials again
            await self._service_bind(connection, config)
            groups = await self._collect_groups(connection, config, username, user_dn, attributes)
        except DirectoryError as e:
            await connection.close()
            raise AuthenticationError(
                AuthErrorType.SERVER_ERROR, f"Directory error: {e}", "LDAP_DIRECTORY_ERROR"
            )
        finally:
            await self.pool.release(config, connection)

        return await self._build_session(creds, config, username, user_dn, attributes, groups)

    async def _service_bind(self, connection: DirectoryConnection, config: LdapProviderConfig) -> None:
        if not config.bind_dn:
            return
        if not await connection.bind(config.bind_dn, config.bind_password):
            raise AuthenticationError(
                AuthErrorType.SERVER_ERROR,
                "Directory rejected the service account",
                "LDAP_SERVICE_BIND_FAILED",
            )

    async def _collect_groups(
        self,
        connection: DirectoryConnection,
        config: LdapProviderConfig,
        username: str,
        user_dn: str,
        attributes: Mapping[str, list[str]]
    ) -> list[str]:
        groups: list[str] = []
        group_attribute = config.attribute_mapping.get("groups", "memberOf")
        for name, values in attributes.items():
            if name.lower() == group_attribute.lower():
                groups.extend(group_common_name(value) for value in values)

        if config.group_search_filter:
            group_filter = config.group_search_filter.format(
                username=escape_filter_value(username),
                userDN=escape_filter_value(user_dn),
            )
            for group_dn, _ in await connection.search(config.group_search_base, group_filter, ["cn"]):
                name = group_common_name(group_dn)
                if name not in groups:
                    groups.append(name)
        return groups

    async def _build_session(
        self,
        creds: AuthCredentials,
        config: LdapProviderConfig,
        username: str,
        user_dn: str,
        attributes: Mapping[str, list[str]],
        groups: list[str]
    ) -> AuthSession:
        def attribute(key: str) -> str:
            name = config.attribute_mapping.get(key, key)
            for attr_name, values in attributes.items():
                if attr_name.lower() == name.lower() and values:
                    return values[0]
            return ""

        now = self.now()
        expires_at = now + SESSION_LIFETIME
        return AuthSession(
            user=AuthUser(
                id=user_dn,
                email=attribute("email"),
                username=attribute("username") or username,
                roles=groups,
                permissions=map_groups_to_permissions(groups, LDAP_TIERS),
                profile={
                    "firstName": attribute("firstName"),
                    "lastName": attribute("lastName"),
                    "dn": user_dn,
                },
            ),
            token=AuthToken(
                access_token=secrets.token_urlsafe(32),
                expires_at=expires_at,
                token_type="LDAP",
                scope=["ldap"],
            ),
            provider=self.provider_type,
            created_at=now,
            expires_at=expires_at,
            metadata={
                "provider": creds.provider,
                "userDN": user_dn,
                "groups": groups,
                "ipAddress": await self.client_ip(creds),
                "userAgent": creds.user_agent or "unknown",
            },
        )

    def resume(self, session: AuthSession) -> None:
        super().resume(session)
        self.current_provider = session.metadata.get("provider")

    def reset_caller_state(self) -> None:
        super().reset_caller_state()
        self.current_provider = None

    async def register(self, credentials: Credentials) -> AuthResult:
        return self.unsupported("Registration", "LDAP_REGISTER_NOT_SUPPORTED")

    async def activate(self, code: str) -> AuthResult:
        return self.unsupported("Activation", "LDAP_ACTIVATE_NOT_SUPPORTED")

    @auth_boundary("LDAP_SIGNOUT_ERROR")
    async def signout(self) -> AuthResult:
        if self.current_session is not None:
            logger.info(f"LDAP signout for {self.current_session.user.username}")
        self.current_session = None
        self.current_provider = None
        return AuthResult.ok()

    async def refresh_token(self) -> AuthResult:
        return self.unsupported("Token refresh", "LDAP_REFRESH_NOT_SUPPORTED")

    async def validate_session(self) -> AuthResult:
        if not self.current_provider:
            return AuthResult.ok(False)
        result = self.validation_result()
        if not result.data:
            self.current_provider = None
        return result

    def configure(self, config: Mapping[str, Any]) -> None:
        """Merge directory records (providers: {name: partial config})"""
        for key, value in config.items():
            if key != "providers":
                raise ValueError(f"Unknown LDAP option: {key}")
            for name, partial in value.items():
                existing = self.providers.get(name)
                self.providers[name] = (
                    existing.merged(partial) if existing is not None
                    else LdapProviderConfig.model_validate(partial)
                )

    def get_capabilities(self) -> list[str]:
        return [
            "ldap_authentication",
            "active_directory_integration",
            "group_based_authorization",
            "user_attribute_mapping",
            "connection_pooling",
            "tls_support",
            "multi_directory_support",
        ]

    async def _check_health(self) -> tuple[bool, str, dict]:
        metadata = {
            "providers": sorted(self.providers),
            "connectionsOpened": self.pool.created,
        }
        if not self.providers:
            return False, "No LDAP directories configured", metadata
        return True, "LDAP provider operational", metadata

    async def shutdown(self) -> None:
        await self.pool.close_all()
        self.current_provider = None
        await super().shutdown()
