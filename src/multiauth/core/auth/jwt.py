"""Stateless bearer-token provider.

Accepts either a bearer JWT or an email/password pair. Bearer tokens are
read without signature verification (that belongs to whoever issued and
checks them); email/password pairs are verified against the user
directory and answered with a locally minted HS256 token pair.
"""

import logging
import uuid
from datetime import timedelta
from typing import Any, Mapping, Optional

from jose import JWTError, jwt

from multiauth.domain.models import (
    AuthCredentials,
    AuthErrorType,
    AuthResult,
    AuthSession,
    AuthToken,
    AuthUser,
    ProviderType,
)
from multiauth.infrastructure.auth import MemoryUserDirectory, UserDirectory

from .errors import AuthenticationError, auth_boundary
from .provider import AuthProvider, Credentials

logger = logging.getLogger(__name__)

DEFAULT_SECRET = "dev-secret-change-in-production"


class JwtProvider(AuthProvider):
    """Bearer-credential verifier.

    Features:
    - Bearer token flow: subject read from the unverified claims
    - Email/password flow: HS256 access/refresh pair signed locally
    - Refresh of locally minted sessions

    Registration and activation are outside its capabilities.

    Configuration:
        JWT_SECRET_KEY=<your-secret-key>
        JWT_ALGORITHM=HS256 (default)
        JWT_SESSION_MINUTES=60 (default)
    """

    provider_type = ProviderType.JWT

    def __init__(
        self,
        secret_key: str = DEFAULT_SECRET,
        algorithm: str = "HS256",
        session_minutes: int = 60,
        refresh_days: int = 7,
        user_directory: Optional[UserDirectory] = None,
        **kwargs: Any
    ):
        """Initialize JWT provider.

        Args:
            secret_key: Secret for locally minted tokens
            algorithm: Signing algorithm for locally minted tokens
            session_minutes: Session lifetime in minutes
            refresh_days: Refresh token lifetime in days
            user_directory: Verifies email/password pairs
        """
        super().__init__(**kwargs)
        self.secret_key = secret_key
        self.algorithm = algorithm
        self.session_lifetime = timedelta(minutes=session_minutes)
        self.refresh_lifetime = timedelta(days=refresh_days)
        self.user_directory = user_directory or MemoryUserDirectory()

        if secret_key == DEFAULT_SECRET:
            logger.warning(
                "Using default JWT_SECRET_KEY! "
                "Set JWT_SECRET_KEY environment variable in production!"
            )

    @auth_boundary("JWT_AUTH_ERROR")
    async def authenticate(self, credentials: Credentials) -> AuthResult:
        creds = self.coerce_credentials(credentials)

        if creds.token:
            session = await self._session_from_bearer(creds)
        elif creds.email and creds.password:
            session = await self._session_from_password(creds)
        else:
            raise AuthenticationError(
                AuthErrorType.VALIDATION_ERROR,
                "JWT authentication requires a token or email and password",
                "JWT_MISSING_CREDENTIALS",
            )

        self.current_session = session
        logger.info(f"JWT session established for {session.user.id}")
        return AuthResult.ok(session)

    async def _session_from_bearer(self, creds: AuthCredentials) -> AuthSession:
        try:
            claims = jwt.get_unverified_claims(creds.token)
        except JWTError as e:
            raise AuthenticationError(
                AuthErrorType.TOKEN_INVALID, f"Malformed token: {e}", "JWT_MALFORMED"
            )

        subject = claims.get("sub")
        if not subject:
            raise AuthenticationError(
                AuthErrorType.TOKEN_INVALID, "Token has no subject claim", "JWT_MISSING_SUBJECT"
            )

        now = self.now()
        exp = claims.get("exp")
        if exp is not None and (isinstance(exp, bool) or not isinstance(exp, (int, float))):
            raise AuthenticationError(
                AuthErrorType.TOKEN_INVALID, "Token exp claim is not a number", "JWT_MALFORMED"
            )
        if exp is not None and exp <= now.timestamp():
            raise AuthenticationError(
                AuthErrorType.TOKEN_EXPIRED, "Token has expired", "JWT_EXPIRED"
            )

        expires_at = now + self.session_lifetime
        return AuthSession(
            user=AuthUser(
                id=str(subject),
                email=claims.get("email", ""),
                username=claims.get("preferred_username") or claims.get("username"),
                roles=list(claims.get("roles", [])),
                permissions=list(claims.get("permissions", [])),
            ),
            token=AuthToken(
                access_token=creds.token,
                expires_at=expires_at,
                scope=str(claims.get("scope", "")).split(),
            ),
            provider=self.provider_type,
            created_at=now,
            expires_at=expires_at,
            metadata={
                "ipAddress": await self.client_ip(creds),
                "userAgent": creds.user_agent or "unknown",
                "issuer": claims.get("iss"),
                "minted": False,
            },
        )

    async def _session_from_password(self, creds: AuthCredentials) -> AuthSession:
        user = await self.user_directory.verify(creds.email, creds.password)
        if user is None or not user.is_active:
            raise AuthenticationError(
                AuthErrorType.CREDENTIALS_INVALID, "Invalid email or password", "JWT_INVALID_CREDENTIALS"
            )

        user_payload = {
            "sub": user.user_id,
            "email": user.email,
            "username": user.username,
            "roles": list(user.roles),
        }
        return await self._mint_session(user_payload, creds.ip_address, creds.user_agent)

    async def _mint_session(
        self,
        claims: Mapping[str, Any],
        ip_address: Optional[str],
        user_agent: Optional[str]
    ) -> AuthSession:
        now = self.now()
        expires_at = now + self.session_lifetime
        access_token = self._encode({**claims, "type": "access"}, now, expires_at)
        refresh_token = self._encode(
            {"sub": claims["sub"], "type": "refresh"}, now, now + self.refresh_lifetime
        )

        return AuthSession(
            user=AuthUser(
                id=claims["sub"],
                email=claims.get("email", ""),
                username=claims.get("username"),
                roles=list(claims.get("roles", [])),
            ),
            token=AuthToken(
                access_token=access_token,
                refresh_token=refresh_token,
                expires_at=expires_at,
            ),
            provider=self.provider_type,
            created_at=now,
            expires_at=expires_at,
            metadata={
                "ipAddress": await self._ip_lookup.resolve(ip_address),
                "userAgent": user_agent or "unknown",
                "minted": True,
            },
        )

    def _encode(self, claims: Mapping[str, Any], issued_at, expires_at) -> str:
        payload = {
            **claims,
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
            "jti": str(uuid.uuid4()),
        }
        return jwt.encode(payload, self.secret_key, algorithm=self.algorithm)

    async def register(self, credentials: Credentials) -> AuthResult:
        return self.unsupported("Registration", "JWT_REGISTER_NOT_SUPPORTED")

    async def activate(self, code: str) -> AuthResult:
        return self.unsupported("Activation", "JWT_ACTIVATE_NOT_SUPPORTED")

    @auth_boundary("JWT_SIGNOUT_ERROR")
    async def signout(self) -> AuthResult:
        if self.current_session is not None:
            logger.info(f"JWT signout for {self.current_session.user.id}")
        self.current_session = None
        return AuthResult.ok()

    @auth_boundary("JWT_REFRESH_ERROR")
    async def refresh_token(self) -> AuthResult:
        """Re-mint a locally issued session from its refresh token.

        Sessions built from an externally issued bearer token cannot be
        refreshed here; their issuer owns renewal.
        """
        session = self.current_session
        if session is None:
            raise AuthenticationError(
                AuthErrorType.VALIDATION_ERROR, "No active session", "JWT_NO_ACTIVE_SESSION"
            )
        if not session.metadata.get("minted"):
            return self.unsupported("Refreshing an external bearer token", "JWT_REFRESH_NOT_SUPPORTED")

        # The refresh token's own exp is checked against the injected clock
        try:
            claims = jwt.decode(
                session.token.refresh_token,
                self.secret_key,
                algorithms=[self.algorithm],
                options={"verify_exp": False},
            )
        except JWTError as e:
            raise AuthenticationError(
                AuthErrorType.TOKEN_INVALID, f"Invalid refresh token: {e}", "JWT_REFRESH_INVALID"
            )
        if claims.get("type") != "refresh" or claims.get("sub") != session.user.id:
            raise AuthenticationError(
                AuthErrorType.TOKEN_INVALID, "Not a refresh token for this session", "JWT_REFRESH_INVALID"
            )
        if claims.get("exp", 0) <= self.now().timestamp():
            self.current_session = None
            raise AuthenticationError(
                AuthErrorType.TOKEN_EXPIRED, "Refresh token has expired", "JWT_REFRESH_EXPIRED"
            )

        refreshed = await self._mint_session(
            {
                "sub": session.user.id,
                "email": session.user.email,
                "username": session.user.username,
                "roles": list(session.user.roles),
            },
            session.metadata.get("ipAddress"),
            session.metadata.get("userAgent"),
        )
        self.current_session = refreshed
        return AuthResult.ok(refreshed)

    async def validate_session(self) -> AuthResult:
        return self.validation_result()

    def configure(self, config: Mapping[str, Any]) -> None:
        known = {"secret_key", "algorithm", "session_minutes", "refresh_days"}
        unknown = set(config) - known
        if unknown:
            raise ValueError(f"Unknown JWT options: {sorted(unknown)}")
        if "secret_key" in config:
            self.secret_key = config["secret_key"]
        if "algorithm" in config:
            self.algorithm = config["algorithm"]
        if "session_minutes" in config:
            self.session_lifetime = timedelta(minutes=int(config["session_minutes"]))
        if "refresh_days" in config:
            self.refresh_lifetime = timedelta(days=int(config["refresh_days"]))

    def get_capabilities(self) -> list[str]:
        return [
            "jwt_authentication",
            "bearer_token",
            "password_authentication",
            "token_refresh",
        ]
