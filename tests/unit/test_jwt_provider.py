"""Unit tests for JwtProvider

Bearer tokens are built with python-jose; the provider reads their claims
without verifying signatures.
"""

import pytest
from datetime import timedelta

from jose import jwt

from multiauth.core.auth import JwtProvider
from multiauth.domain.models import AuthErrorType, ProviderType

SECRET = "test-secret"


@pytest.fixture
def provider(clock, user_directory):
    return JwtProvider(secret_key=SECRET, user_directory=user_directory, clock=clock)


def bearer(claims):
    return jwt.encode(claims, "issuer-secret", algorithm="HS256")


@pytest.mark.unit
class TestBearerAuthentication:
    """Test the bearer-token flow"""

    @pytest.mark.asyncio
    async def test_subject_becomes_user_id(self, provider, clock):
        """Happy path: sub claim identifies the user and a 1-hour session is minted"""
        # Arrange
        token = bearer({"sub": "user-42", "email": "a@b.com", "roles": ["admin"]})

        # Act
        result = await provider.authenticate({"token": token})

        # Assert
        assert result.success is True
        session = result.data
        assert session.user.id == "user-42"
        assert session.user.email == "a@b.com"
        assert session.user.roles == ["admin"]
        assert session.provider == ProviderType.JWT
        assert session.expires_at - session.created_at == timedelta(hours=1)
        assert session.token.access_token == token

    @pytest.mark.asyncio
    async def test_missing_credentials(self, provider):
        """Bad input: neither token nor email+password"""
        result = await provider.authenticate({"email": "a@b.com"})

        assert result.success is False
        assert result.error.type == AuthErrorType.VALIDATION_ERROR
        assert result.error.code == "JWT_MISSING_CREDENTIALS"

    @pytest.mark.asyncio
    async def test_malformed_token(self, provider):
        """Bad input: a token that is not a JWT"""
        result = await provider.authenticate({"token": "not-a-jwt"})

        assert result.success is False
        assert result.error.type == AuthErrorType.TOKEN_INVALID

    @pytest.mark.asyncio
    async def test_missing_subject(self, provider):
        result = await provider.authenticate({"token": bearer({"email": "a@b.com"})})

        assert result.success is False
        assert result.error.code == "JWT_MISSING_SUBJECT"

    @pytest.mark.asyncio
    async def test_expired_token(self, provider, clock):
        """Edge case: exp in the past is TOKEN_EXPIRED"""
        token = bearer({"sub": "u", "exp": int((clock() - timedelta(seconds=1)).timestamp())})

        result = await provider.authenticate({"token": token})

        assert result.success is False
        assert result.error.type == AuthErrorType.TOKEN_EXPIRED

    @pytest.mark.asyncio
    @pytest.mark.parametrize("exp", ["2000-01-01", "1", True, [1]])
    async def test_non_numeric_exp_is_rejected(self, provider, exp):
        """Bad input: an exp claim that is not a number never skips the expiry check"""
        result = await provider.authenticate({"token": bearer({"sub": "u", "exp": exp})})

        assert result.success is False
        assert result.error.type == AuthErrorType.TOKEN_INVALID
        assert result.error.code == "JWT_MALFORMED"

    @pytest.mark.asyncio
    async def test_external_token_cannot_be_refreshed(self, provider):
        await provider.authenticate({"token": bearer({"sub": "u"})})

        result = await provider.refresh_token()

        assert result.success is False
        assert result.error.type == AuthErrorType.UNKNOWN_ERROR
        assert result.error.code == "JWT_REFRESH_NOT_SUPPORTED"


@pytest.mark.unit
class TestPasswordAuthentication:
    """Test the email/password flow with locally minted tokens"""

    @pytest.mark.asyncio
    async def test_mints_verifiable_pair(self, provider):
        """Happy path: access and refresh tokens are signed with the secret"""
        result = await provider.authenticate({"email": "a@b.com", "password": "pw"})

        assert result.success is True
        session = result.data
        claims = jwt.decode(
            session.token.access_token, SECRET, algorithms=["HS256"], options={"verify_exp": False}
        )
        assert claims["sub"] == session.user.id
        assert claims["type"] == "access"
        assert session.token.refresh_token
        assert session.metadata["minted"] is True

    @pytest.mark.asyncio
    async def test_wrong_password_for_registered_user(self, provider, user_directory):
        """Bad input: registered users are checked against their hash"""
        await user_directory.register("a@b.com", "right")

        result = await provider.authenticate({"email": "a@b.com", "password": "wrong"})

        assert result.success is False
        assert result.error.type == AuthErrorType.CREDENTIALS_INVALID
        assert result.error.code == "JWT_INVALID_CREDENTIALS"

    @pytest.mark.asyncio
    async def test_refresh_reissues_tokens(self, provider, clock):
        """Happy path: refresh extends from the refresh time"""
        first = (await provider.authenticate({"email": "a@b.com", "password": "pw"})).data
        clock.advance(minutes=30)

        result = await provider.refresh_token()

        assert result.success is True
        assert result.data.expires_at == clock() + timedelta(hours=1)
        assert result.data.expires_at > first.expires_at
        assert result.data.token.access_token != first.token.access_token

    @pytest.mark.asyncio
    async def test_refresh_after_refresh_token_expiry(self, provider, clock):
        """Edge case: an expired refresh token ends the session"""
        await provider.authenticate({"email": "a@b.com", "password": "pw"})
        clock.advance(days=8)

        result = await provider.refresh_token()

        assert result.success is False
        assert result.error.type == AuthErrorType.TOKEN_EXPIRED
        assert (await provider.validate_session()).data is False

    @pytest.mark.asyncio
    async def test_refresh_without_session(self, provider):
        result = await provider.refresh_token()

        assert result.success is False
        assert result.error.code == "JWT_NO_ACTIVE_SESSION"


@pytest.mark.unit
class TestJwtLifecycle:
    """Test validation, signout, capability gaps and configure"""

    @pytest.mark.asyncio
    async def test_validate_and_signout(self, provider, clock):
        await provider.authenticate({"token": bearer({"sub": "u"})})

        assert (await provider.validate_session()).data is True
        assert (await provider.validate_session()).data is True

        await provider.signout()
        assert (await provider.validate_session()).data is False

    @pytest.mark.asyncio
    async def test_validate_clears_expired_session(self, provider, clock):
        await provider.authenticate({"token": bearer({"sub": "u"})})
        clock.advance(hours=1)

        assert (await provider.validate_session()).data is False
        assert provider.current_session is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("operation", ["register", "activate"])
    async def test_lifecycle_operations_unsupported(self, provider, operation):
        """Capability gap: JWT does not create identities"""
        if operation == "register":
            result = await provider.register({"email": "a@b.com", "password": "pw"})
        else:
            result = await provider.activate("code")

        assert result.success is False
        assert result.error.type == AuthErrorType.UNKNOWN_ERROR
        assert "registration" not in provider.get_capabilities()

    def test_configure(self, provider):
        provider.configure({"session_minutes": 15})

        assert provider.session_lifetime == timedelta(minutes=15)
        with pytest.raises(ValueError):
            provider.configure({"unknown": 1})
