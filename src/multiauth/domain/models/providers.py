"""Provider Configuration Models

Purpose: Named, swappable configuration records for each provider family

Each record validates on construction and on merge, so a malformed
configure() call fails at setup time instead of midway through a login.

Key Components:
- ConfigRecord: Base with partial-merge support
- OAuthProviderConfig: Endpoint/scope table for one OAuth2 provider
- SamlProviderConfig: IdP record for SAML 2.0 Web SSO
- LdapProviderConfig: Directory record for bind-based authentication
- SessionConfig: Cookie/storage/refresh policy for the session store
- PendingRequest: In-flight OAuth/SAML request state
"""

from datetime import datetime
from typing import Any, Dict, Literal, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ConfigRecord(BaseModel):
    """Configuration record accepting snake_case or camelCase keys"""
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="forbid"
    )

    @classmethod
    def field_name(cls, key: str) -> str:
        """Resolve a snake_case name or alias to the model field name

        Raises:
            ValueError: If key names no field of this record
        """
        for name, info in cls.model_fields.items():
            if key == name or key == info.alias:
                return name
        raise ValueError(f"Unknown {cls.__name__} option: {key}")

    def merged(self, updates: Mapping[str, Any]) -> "ConfigRecord":
        """Return a copy with updates merged over the current values.

        Mapping-valued fields are merged key by key rather than replaced.

        Raises:
            ValueError: If an update names an unknown field
            pydantic.ValidationError: If the merged record is invalid
        """
        data = self.model_dump()
        for key, value in updates.items():
            name = self.field_name(key)
            if isinstance(data.get(name), dict) and isinstance(value, Mapping):
                data[name] = {**data[name], **value}
            else:
                data[name] = value
        return self.model_validate(data)


class OAuthProviderConfig(ConfigRecord):
    """OAuth2 authorization-code provider (Google, GitHub, Microsoft)"""
    client_id: str
    client_secret: Optional[str] = Field(default=None, repr=False)
    redirect_uri: str
    scope: list[str] = Field(default_factory=list)
    authorization_endpoint: str
    token_endpoint: str
    user_info_endpoint: str
    pkce: bool = True


class SamlProviderConfig(ConfigRecord):
    """SAML 2.0 identity provider (Okta, Azure AD, ADFS, Ping)"""
    entity_id: str
    sso_url: str
    slo_url: Optional[str] = None
    certificate: str = Field(default="", repr=False)
    name_id_format: str = "urn:oasis:names:tc:SAML:2.0:nameid-format:emailAddress"
    attribute_mapping: Dict[str, str] = Field(default_factory=dict)
    signing_enabled: bool = True
    encryption_enabled: bool = False
    allowed_clock_skew: int = 300  # seconds
    allow_unsolicited: bool = True


class LdapProviderConfig(ConfigRecord):
    """Directory server (Active Directory, OpenLDAP, FreeIPA, Apache DS)"""
    url: str
    port: int = 389
    base_dn: str = Field(alias="baseDN")
    bind_dn: str = Field(alias="bindDN")
    bind_password: str = Field(default="", repr=False)
    user_search_base: str
    user_search_filter: str
    group_search_base: str
    group_search_filter: str
    attribute_mapping: Dict[str, str] = Field(default_factory=dict)
    use_tls: bool = Field(default=False, alias="useTLS")
    verify_certificates: bool = True
    timeout: int = 30  # seconds
    max_connections: int = 10

    @property
    def pool_key(self) -> str:
        """Connection pool key (host:port)"""
        host = self.url.split("://", 1)[-1].split("/", 1)[0].split(":", 1)[0]
        return f"{host}:{self.port}"


class SessionConfig(ConfigRecord):
    """Session store policy. Durations are in seconds."""
    session_timeout: float = 30 * 60
    refresh_interval: float = 5 * 60
    cookie_name: str = "auth_session"
    cookie_path: str = "/"
    cookie_domain: Optional[str] = None
    secure: bool = True
    http_only: bool = True
    same_site: Literal["strict", "lax", "none"] = "strict"
    enable_cross_tab_sync: bool = True
    enable_auto_refresh: bool = True
    max_retries: int = 3
    storage_key: str = "auth_session_data"
    channel_name: str = "auth_session_sync"


class PendingRequest(BaseModel):
    """In-flight OAuth/SAML request, consumed exactly once.

    Attributes:
        id: OAuth state or SAML AuthnRequest ID
        provider_name: Named config the request was issued against
        issuer: Our entity id / client id
        destination: Endpoint the request was sent to
        issued_at: Creation time
        expires_at: Time after which the request is discarded
        code_verifier: PKCE verifier bound to this request (OAuth only)
    """
    id: str
    provider_name: str
    issuer: str
    destination: str
    issued_at: datetime
    expires_at: datetime
    code_verifier: Optional[str] = Field(default=None, repr=False)
    relay_state: Optional[str] = None
