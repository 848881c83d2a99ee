"""OAuth2 authorization-code provider with PKCE.

Supports preconfigured providers:
- Google
- GitHub
- Microsoft (Entra ID common endpoint)

Flow:
    1. authenticate({"provider": "google"}) returns a pending session whose
       metadata carries authorizationUrl, state and (with PKCE) codeVerifier.
       Nothing is redirected here; the caller navigates.
    2. authenticate({"provider": "google", "authorizationCode": ...,
       "state": ..., "codeVerifier": ...}) exchanges the code, fetches the
       user profile and returns an active session.

A direct access-token flow ({"provider": ..., "accessToken": ...}) skips
the code exchange and only calls the userinfo endpoint.
"""

import logging
import secrets
from datetime import timedelta
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlencode

import httpx

from multiauth.config.settings import Settings, get_settings
from multiauth.domain.models import (
    AuthCredentials,
    AuthErrorType,
    AuthResult,
    AuthSession,
    AuthToken,
    AuthUser,
    OAuthProviderConfig,
    PendingRequest,
    ProviderType,
)

from .errors import AuthenticationError, auth_boundary
from .pending import PendingRequestStore
from .permissions import map_groups_to_permissions
from .pkce import CODE_CHALLENGE_METHOD, code_challenge, generate_code_verifier, generate_state
from .provider import AuthProvider, Credentials
from .single_flight import SingleFlight

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_LIFETIME_SECONDS = 3600


def default_oauth_providers(settings: Settings) -> Dict[str, OAuthProviderConfig]:
    """Google, GitHub and Microsoft endpoint tables"""
    base = settings.oauth_redirect_base_url.rstrip("/")
    return {
        "google": OAuthProviderConfig(
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            redirect_uri=f"{base}/auth/oauth/callback",
            scope=["openid", "email", "profile"],
            authorization_endpoint="https://accounts.google.com/o/oauth2/v2/auth",
            token_endpoint="https://oauth2.googleapis.com/token",
            user_info_endpoint="https://www.googleapis.com/oauth2/v2/userinfo",
            pkce=True,
        ),
        "github": OAuthProviderConfig(
            client_id=settings.github_client_id,
            client_secret=settings.github_client_secret,
            redirect_uri=f"{base}/auth/oauth/callback",
            scope=["user:email"],
            authorization_endpoint="https://github.com/login/oauth/authorize",
            token_endpoint="https://github.com/login/oauth/access_token",
            user_info_endpoint="https://api.github.com/user",
            pkce=True,
        ),
        "microsoft": OAuthProviderConfig(
            client_id=settings.microsoft_client_id,
            client_secret=settings.microsoft_client_secret,
            redirect_uri=f"{base}/auth/oauth/callback",
            scope=["openid", "email", "profile"],
            authorization_endpoint="https://login.microsoftonline.com/common/oauth2/v2.0/authorize",
            token_endpoint="https://login.microsoftonline.com/common/oauth2/v2.0/token",
            user_info_endpoint="https://graph.microsoft.com/v1.0/me",
            pkce=True,
        ),
    }


class OAuth2Provider(AuthProvider):
    """OAuth 2.0 authorization-code provider.

    Each PKCE verifier is bound to exactly one pending request, keyed by
    the CSRF state, and consumed when the callback arrives. Token refresh
    is not offered: refresh-token persistence across calls is left to the
    session store, so get_capabilities() omits it.
    """

    provider_type = ProviderType.OAUTH

    def __init__(
        self,
        providers: Optional[Mapping[str, OAuthProviderConfig]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        pending_ttl_seconds: float = 600,
        max_pending_requests: int = 1000,
        **kwargs: Any
    ):
        """Initialize OAuth provider.

        Args:
            providers: Named provider configs (default: Google, GitHub, Microsoft)
            http_client: Shared HTTP client; one is opened per call when absent
            pending_ttl_seconds: Lifetime of an unanswered authorization request
            max_pending_requests: Bound on outstanding authorization requests
        """
        super().__init__(**kwargs)
        self.providers: Dict[str, OAuthProviderConfig] = (
            dict(providers) if providers is not None else default_oauth_providers(get_settings())
        )
        self.http_client = http_client
        self.pending = PendingRequestStore(
            ttl_seconds=pending_ttl_seconds,
            max_entries=max_pending_requests,
            clock=self._clock,
        )
        self._flights = SingleFlight()
        self.current_provider: Optional[str] = None

    def _resolve(self, creds: AuthCredentials) -> OAuthProviderConfig:
        if not creds.provider:
            raise AuthenticationError(
                AuthErrorType.VALIDATION_ERROR,
                "OAuth provider must be specified",
                "OAUTH_MISSING_PROVIDER",
            )
        config = self.providers.get(creds.provider)
        if config is None:
            raise AuthenticationError(
                AuthErrorType.VALIDATION_ERROR,
                f"Unsupported OAuth provider: {creds.provider}",
                "OAUTH_UNSUPPORTED_PROVIDER",
            )
        return config

    @auth_boundary("OAUTH_AUTH_ERROR")
    async def authenticate(self, credentials: Credentials) -> AuthResult:
        creds = self.coerce_credentials(credentials)
        config = self._resolve(creds)

        if creds.authorization_code:
            session = await self._flights.run(
                ("callback", creds.provider, creds.authorization_code),
                lambda: self._complete_authorization(creds, config),
            )
        elif creds.access_token:
            session = await self._session_from_access_token(creds, config)
        else:
            return AuthResult.ok(self._begin_authorization(creds.provider, config))

        self.current_session = session
        self.current_provider = creds.provider
        logger.info(f"OAuth login via {creds.provider} for {session.user.id}")
        return AuthResult.ok(session)

    def _begin_authorization(self, name: str, config: OAuthProviderConfig) -> AuthSession:
        """INIT: build the authorization URL and record the pending request"""
        now = self.now()
        state = generate_state()
        verifier = generate_code_verifier() if config.pkce else None

        params = {
            "client_id": config.client_id,
            "redirect_uri": config.redirect_uri,
            "response_type": "code",
            "scope": " ".join(config.scope),
            "state": state,
        }
        if verifier:
            params["code_challenge"] = code_challenge(verifier)
            params["code_challenge_method"] = CODE_CHALLENGE_METHOD

        authorization_url = f"{config.authorization_endpoint}?{urlencode(params)}"
        expires_at = self.pending.expiry_for(now)
        self.pending.put(
            PendingRequest(
                id=state,
                provider_name=name,
                issuer=config.client_id,
                destination=config.authorization_endpoint,
                issued_at=now,
                expires_at=expires_at,
                code_verifier=verifier,
            )
        )
        logger.info(f"OAuth authorization started for {name} (pkce={config.pkce})")

        metadata: Dict[str, Any] = {
            "provider": name,
            "authorizationUrl": authorization_url,
            "state": state,
        }
        if verifier:
            metadata["codeVerifier"] = verifier

        return AuthSession(
            user=AuthUser(id=""),
            token=AuthToken(access_token="", expires_at=expires_at, scope=list(config.scope)),
            provider=self.provider_type,
            created_at=now,
            expires_at=expires_at,
            is_active=False,
            metadata=metadata,
        )

    async def _complete_authorization(
        self, creds: AuthCredentials, config: OAuthProviderConfig
    ) -> AuthSession:
        """CALLBACK: exchange the code, fetch the profile, build the session"""
        verifier = creds.code_verifier
        if creds.state:
            pending = self.pending.pop(creds.state)
            if pending is None or pending.provider_name != creds.provider:
                raise AuthenticationError(
                    AuthErrorType.VALIDATION_ERROR,
                    "Unknown or expired OAuth state",
                    "OAUTH_INVALID_STATE",
                )
            if pending.code_verifier:
                if verifier and not secrets.compare_digest(verifier, pending.code_verifier):
                    raise AuthenticationError(
                        AuthErrorType.VALIDATION_ERROR,
                        "Code verifier does not match the authorization request",
                        "OAUTH_VERIFIER_MISMATCH",
                    )
                verifier = pending.code_verifier
        elif config.pkce and not verifier:
            raise AuthenticationError(
                AuthErrorType.VALIDATION_ERROR,
                "PKCE code verifier is required",
                "OAUTH_MISSING_VERIFIER",
            )
        else:
            # Without state the verifier identifies the request, once
            pending = self.pending.pop_matching(
                lambda request: request.provider_name == creds.provider
                and bool(request.code_verifier)
                and bool(verifier)
                and secrets.compare_digest(request.code_verifier, verifier)
            )
            if pending is None:
                raise AuthenticationError(
                    AuthErrorType.VALIDATION_ERROR,
                    "No outstanding authorization request for this callback",
                    "OAUTH_INVALID_STATE",
                )

        tokens = await self._exchange_code(config, creds.authorization_code, verifier)
        profile = await self._fetch_user_info(config, tokens["access_token"])
        return await self._build_session(creds, config, tokens, profile)

    async def _session_from_access_token(
        self, creds: AuthCredentials, config: OAuthProviderConfig
    ) -> AuthSession:
        tokens = {"access_token": creds.access_token, "token_type": "Bearer"}
        profile = await self._fetch_user_info(config, creds.access_token)
        return await self._build_session(creds, config, tokens, profile)

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        if self.http_client is not None:
            return await self.http_client.request(method, url, **kwargs)
        async with httpx.AsyncClient() as client:
            return await client.request(method, url, **kwargs)

    async def _exchange_code(
        self,
        config: OAuthProviderConfig,
        code: str,
        code_verifier: Optional[str]
    ) -> Dict[str, Any]:
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": config.redirect_uri,
            "client_id": config.client_id,
        }
        if config.client_secret:
            data["client_secret"] = config.client_secret
        if code_verifier:
            data["code_verifier"] = code_verifier

        response = await self._send(
            "POST",
            config.token_endpoint,
            data=data,
            headers={
                "Accept": "application/json",
                "Content-Type": "application/x-www-form-urlencoded",
            },
        )

        if response.status_code in (400, 401):
            logger.warning(f"OAuth token exchange rejected: {response.status_code}")
            raise AuthenticationError(
                AuthErrorType.CREDENTIALS_INVALID,
                f"Authorization code rejected: {response.status_code}",
                "OAUTH_CODE_REJECTED",
            )
        response.raise_for_status()

        tokens = response.json()
        # GitHub reports grant errors with a 200 status
        if "error" in tokens or not tokens.get("access_token"):
            raise AuthenticationError(
                AuthErrorType.CREDENTIALS_INVALID,
                f"Token exchange failed: {tokens.get('error', 'no access_token')}",
                "OAUTH_CODE_REJECTED",
            )
        return tokens

    async def _fetch_user_info(self, config: OAuthProviderConfig, access_token: str) -> Dict[str, Any]:
        response = await self._send(
            "GET",
            config.user_info_endpoint,
            headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
        )
        if response.status_code in (401, 403):
            raise AuthenticationError(
                AuthErrorType.TOKEN_INVALID,
                "Access token rejected by userinfo endpoint",
                "OAUTH_USERINFO_REJECTED",
            )
        response.raise_for_status()
        return response.json()

    async def _build_session(
        self,
        creds: AuthCredentials,
        config: OAuthProviderConfig,
        tokens: Mapping[str, Any],
        profile: Mapping[str, Any]
    ) -> AuthSession:
        user_id = profile.get("sub") or profile.get("id")
        if not user_id:
            raise AuthenticationError(
                AuthErrorType.TOKEN_INVALID,
                "User profile has no identifier",
                "OAUTH_USERINFO_INVALID",
            )

        now = self.now()
        expires_in = int(tokens.get("expires_in") or DEFAULT_TOKEN_LIFETIME_SECONDS)
        expires_at = now + timedelta(seconds=expires_in)
        granted = tokens.get("scope")
        scope = granted.replace(",", " ").split() if isinstance(granted, str) else list(config.scope)

        email = profile.get("email") or profile.get("mail") or profile.get("userPrincipalName") or ""
        return AuthSession(
            user=AuthUser(
                id=str(user_id),
                email=email,
                username=profile.get("login") or profile.get("preferred_username") or email or None,
                roles=[],
                permissions=map_groups_to_permissions([], ()),
                profile={
                    "name": profile.get("name") or profile.get("displayName"),
                    "avatarUrl": profile.get("picture") or profile.get("avatar_url"),
                    "provider": creds.provider,
                },
            ),
            token=AuthToken(
                access_token=tokens["access_token"],
                refresh_token=tokens.get("refresh_token") or "",
                expires_at=expires_at,
                token_type=tokens.get("token_type") or "Bearer",
                scope=scope,
            ),
            provider=self.provider_type,
            created_at=now,
            expires_at=expires_at,
            metadata={
                "provider": creds.provider,
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
        return self.unsupported("Registration", "OAUTH_REGISTER_NOT_SUPPORTED")

    async def activate(self, code: str) -> AuthResult:
        return self.unsupported("Activation", "OAUTH_ACTIVATE_NOT_SUPPORTED")

    @auth_boundary("OAUTH_SIGNOUT_ERROR")
    async def signout(self) -> AuthResult:
        if self.current_provider:
            logger.info(f"OAuth signout from {self.current_provider}")
        self.current_session = None
        self.current_provider = None
        return AuthResult.ok()

    async def refresh_token(self) -> AuthResult:
        if not self.current_provider:
            return AuthResult.fail(
                AuthErrorType.VALIDATION_ERROR,
                "No active OAuth provider for token refresh",
                "OAUTH_NO_ACTIVE_PROVIDER",
            )
        return self.unsupported("Token refresh", "OAUTH_REFRESH_NOT_IMPLEMENTED")

    async def validate_session(self) -> AuthResult:
        result = self.validation_result()
        if not result.data:
            self.current_provider = None
        return result

    def configure(self, config: Mapping[str, Any]) -> None:
        """Merge provider tables and options.

        Example:
            provider.configure({
                "providers": {
                    "google": {"clientId": "real-id"},
                    "gitlab": {...full OAuthProviderConfig...},
                },
                "pending_request_ttl": 300,
            })
        """
        for key, value in config.items():
            if key == "providers":
                for name, partial in value.items():
                    existing = self.providers.get(name)
                    self.providers[name] = (
                        existing.merged(partial) if existing is not None
                        else OAuthProviderConfig.model_validate(partial)
                    )
            elif key == "pending_request_ttl":
                self.pending.ttl = timedelta(seconds=float(value))
            elif key == "max_pending_requests":
                self.pending.max_entries = int(value)
            else:
                raise ValueError(f"Unknown OAuth option: {key}")

    def get_capabilities(self) -> list[str]:
        return [
            "oauth_authentication",
            *(f"{name}_oauth" for name in sorted(self.providers)),
            "pkce_support",
            "csrf_protection",
            "multi_provider",
        ]

    async def _check_health(self) -> tuple[bool, str, dict]:
        self.pending.sweep()
        metadata = {"providers": sorted(self.providers), "pendingRequests": len(self.pending)}
        if not self.providers:
            return False, "No OAuth providers configured", metadata
        return True, "OAuth provider operational", metadata
