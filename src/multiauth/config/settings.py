"""Configuration Settings for multiauth

Manages environment variables and application configuration.
Provider tables (OAuth, SAML, LDAP) are built from these values by the
default_*_providers() functions in each provider module.
"""

from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings"""

    # Service info
    service_name: str = "multiauth"
    service_version: str = "1.0.0"
    environment: str = "development"

    # Server configuration
    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False

    # CORS
    cors_origins: list[str] = ["http://localhost:3000"]
    cors_allow_credentials: bool = True
    cors_allow_methods: list[str] = ["*"]
    cors_allow_headers: list[str] = ["*"]

    # Logging
    log_level: str = "INFO"
    log_format: str = "text"  # text or json

    # Redis configuration (session_backend=redis)
    session_backend: str = "memory"  # memory or redis
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: int = 0
    redis_password: Optional[str] = None

    @property
    def redis_url(self) -> str:
        """Construct Redis URL from components"""
        if self.redis_password:
            return f"redis://:{self.redis_password}@{self.redis_host}:{self.redis_port}/{self.redis_db}"
        return f"redis://{self.redis_host}:{self.redis_port}/{self.redis_db}"

    # JWT provider
    jwt_secret_key: str = "dev-secret-change-in-production"
    jwt_algorithm: str = "HS256"
    jwt_session_minutes: int = 60
    jwt_refresh_days: int = 7

    # OAuth2 providers
    oauth_redirect_base_url: str = "http://localhost:8000"
    google_client_id: str = "test-google-client-id"
    google_client_secret: Optional[str] = None
    github_client_id: str = "test-github-client-id"
    github_client_secret: Optional[str] = None
    microsoft_client_id: str = "test-microsoft-client-id"
    microsoft_client_secret: Optional[str] = None

    # SAML service provider and identity providers
    saml_sp_entity_id: str = "multiauth"
    saml_acs_url: str = "http://localhost:8000/auth/saml/acs"
    okta_entity_id: str = "test-okta-entity-id"
    okta_sso_url: str = "https://dev-123456.okta.com/app/sso/saml"
    okta_slo_url: Optional[str] = "https://dev-123456.okta.com/app/slo/saml"
    okta_certificate: str = ""
    azure_entity_id: str = "test-azure-entity-id"
    azure_sso_url: str = "https://login.microsoftonline.com/test-tenant-id/saml2"
    azure_slo_url: Optional[str] = "https://login.microsoftonline.com/test-tenant-id/saml2"
    azure_certificate: str = ""
    adfs_entity_id: str = "test-adfs-entity-id"
    adfs_sso_url: str = "https://adfs.company.com/adfs/ls"
    adfs_slo_url: Optional[str] = "https://adfs.company.com/adfs/ls"
    adfs_certificate: str = ""
    ping_entity_id: str = "test-ping-entity-id"
    ping_sso_url: str = "https://auth.pingone.com/test-idp/saml2"
    ping_slo_url: Optional[str] = "https://auth.pingone.com/test-idp/saml2"
    ping_certificate: str = ""

    # LDAP directories
    ad_url: str = "ldap://ad.company.com"
    ad_port: int = 389
    ad_base_dn: str = "DC=company,DC=com"
    ad_bind_dn: str = "CN=ldap_bind,OU=Service Accounts,DC=company,DC=com"
    ad_bind_password: str = "bind-password"
    openldap_url: str = "ldap://ldap.company.com"
    openldap_port: int = 389
    openldap_bind_password: str = "admin-password"
    freeipa_url: str = "ldap://ipa.company.com"
    apache_ds_url: str = "ldap://apacheds.company.com"
    ldap_use_tls: bool = False

    # Session store
    session_timeout_seconds: int = 1800  # 30 minutes
    session_refresh_interval_seconds: int = 300  # 5 minutes
    session_cookie_name: str = "auth_session"
    session_cookie_path: str = "/"
    session_cookie_secure: bool = True
    session_cookie_http_only: bool = True
    session_cookie_same_site: str = "strict"
    session_cross_tab_sync: bool = True
    session_auto_refresh: bool = True
    session_storage_key: str = "auth_session_data"
    session_channel_name: str = "auth_session_sync"

    # In-flight OAuth/SAML requests
    pending_request_ttl_seconds: int = 600
    pending_request_max_entries: int = 1000

    # Login rate limiting
    rate_limit_enabled: bool = True
    rate_limit_max_failures: int = 5
    rate_limit_window_seconds: int = 900  # 15 minutes
    rate_limit_block_seconds: int = 900
    rate_limit_max_entries: int = 10000

    # Client IP lookup (unset: ip recorded as "unknown")
    ip_lookup_url: Optional[str] = None

    # Optional YAML overrides for provider tables
    providers_config_path: Optional[str] = None

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


def load_provider_overrides(path: Optional[str]) -> Dict[str, Any]:
    """Load provider table overrides from a YAML file.

    Expected layout::

        oauth:
          google: {clientId: ..., scope: [openid, email]}
        saml:
          okta: {allowedClockSkew: 120}
        ldap:
          active_directory: {url: ldaps://dc1.corp.example}

    Args:
        path: YAML file path, or None

    Returns:
        Mapping of provider family to {name: partial config}; empty when
        path is None

    Raises:
        FileNotFoundError: If path does not exist
        ValueError: If the document is not a mapping
    """
    if not path:
        return {}

    with Path(path).open("r", encoding="utf-8") as f:
        document = yaml.safe_load(f) or {}

    if not isinstance(document, dict):
        raise ValueError(f"Provider config {path} must be a mapping")
    return document


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance

    Returns:
        Settings instance
    """
    return Settings()
