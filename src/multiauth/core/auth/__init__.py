"""Authentication provider abstraction layer.

Five providers behind one contract, selected by ProviderType:
- jwt: Bearer token or email/password with locally minted JWTs
- oauth: OAuth2 authorization code with PKCE (Google, GitHub, Microsoft)
- saml: SAML 2.0 Web SSO (Okta, Azure AD, ADFS, Ping)
- ldap: Directory bind (Active Directory, OpenLDAP, FreeIPA, Apache DS)
- session: Cookie-backed session store with auto-refresh and sync
"""

from .errors import AuthenticationError, auth_boundary
from .factory import ProviderRegistry, create_default_registry, create_rate_limiter
from .jwt import JwtProvider
from .ldap import LdapProvider
from .oauth import OAuth2Provider
from .orchestrator import AuthMetrics, AuthOrchestrator
from .provider import AuthProvider
from .rate_limit import LoginRateLimiter
from .saml import SamlProvider
from .session import SessionProvider

__all__ = [
    "AuthenticationError",
    "AuthMetrics",
    "AuthOrchestrator",
    "AuthProvider",
    "JwtProvider",
    "LdapProvider",
    "LoginRateLimiter",
    "OAuth2Provider",
    "ProviderRegistry",
    "SamlProvider",
    "SessionProvider",
    "auth_boundary",
    "create_default_registry",
    "create_rate_limiter",
]
