"""
Integration tests for the /auth HTTP surface.

The application is driven in-process through httpx.ASGITransport with an
orchestrator wired to the seeded in-memory directory and a fake clock.
"""

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from multiauth.config.settings import Settings
from multiauth.core.auth import AuthOrchestrator, create_default_registry
from multiauth.main import app

LDAP_LOGIN = {"username": "testuser", "password": "testpass", "provider": "active_directory"}


def browser():
    """In-process client with its own cookie jar, over https so Secure cookies are sent back"""
    return AsyncClient(transport=ASGITransport(app=app), base_url="https://test")


@pytest_asyncio.fixture
async def orchestrator(directory, storage, cookie_jar, user_directory, clock, idp_keys):
    registry = create_default_registry(
        settings=Settings(session_auto_refresh=False, okta_certificate=idp_keys[1]),
        storage=storage,
        cookie_jar=cookie_jar,
        user_directory=user_directory,
        ldap_directory=directory,
        clock=clock,
    )
    orchestrator = AuthOrchestrator(registry)
    await orchestrator.initialize()
    yield orchestrator
    await orchestrator.shutdown()


@pytest_asyncio.fixture
async def client(orchestrator):
    """HTTP client against the app with the test orchestrator installed"""
    app.state.orchestrator = orchestrator
    async with browser() as client:
        yield client
    del app.state.orchestrator


@pytest.mark.integration
class TestLoginEndpoint:
    """Test POST /auth/{provider_type}/login"""

    @pytest.mark.asyncio
    async def test_session_login_sets_cookie(self, client):
        """Happy path: envelope with the session and a Set-Cookie header"""
        # Act
        response = await client.post(
            "/auth/session/login",
            json={"email": "user@example.com", "password": "secret-pass"},
            headers={"user-agent": "pytest-browser"},
        )

        # Assert
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["error"] is None
        assert body["data"]["provider"] == "session"
        assert body["data"]["isActive"] is True
        assert body["data"]["user"]["email"] == "user@example.com"
        assert body["data"]["metadata"]["userAgent"] == "pytest-browser"
        assert body["metadata"]["requestId"]
        assert "auth_session=" in response.headers["set-cookie"]

    @pytest.mark.asyncio
    async def test_ldap_login(self, client):
        response = await client.post("/auth/ldap/login", json=LDAP_LOGIN)

        assert response.status_code == 200
        body = response.json()
        assert body["data"]["provider"] == "ldap"
        assert "admin:*" in body["data"]["user"]["permissions"]

    @pytest.mark.asyncio
    async def test_ldap_wrong_password(self, client):
        """Bad input: rejected credentials are a 401 with the taxonomy entry"""
        response = await client.post("/auth/ldap/login", json={**LDAP_LOGIN, "password": "nope"})

        assert response.status_code == 401
        body = response.json()
        assert body["success"] is False
        assert body["error"]["type"] == "CREDENTIALS_INVALID"
        assert body["error"]["code"] == "LDAP_AUTH_FAILED"
        assert "set-cookie" not in response.headers

    @pytest.mark.asyncio
    async def test_unknown_provider(self, client):
        response = await client.post("/auth/kerberos/login", json={})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "PROVIDER_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_missing_body(self, client):
        response = await client.post("/auth/session/login")

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "SESSION_MISSING_CREDENTIALS"

    @pytest.mark.asyncio
    async def test_oauth_login_returns_redirect(self, client):
        """Happy path: OAuth login without a code is a pending session"""
        response = await client.post("/auth/oauth/login", json={"provider": "google"})

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["isActive"] is False
        assert data["metadata"]["authorizationUrl"].startswith("https://accounts.google.com/")

    @pytest.mark.asyncio
    async def test_client_address_comes_from_the_connection(self, client):
        """Edge case: a body cannot claim another client address"""
        response = await client.post(
            "/auth/session/login",
            json={"email": "user@example.com", "password": "pw", "ipAddress": "198.51.100.99"},
        )

        metadata = response.json()["data"]["metadata"]
        assert metadata["ipAddress"] == "127.0.0.1"

    @pytest.mark.asyncio
    async def test_repeated_failures_are_throttled(self, client):
        """Bad input: the sixth attempt after five failures is a 429"""
        for _ in range(5):
            failed = await client.post("/auth/ldap/login", json={**LDAP_LOGIN, "password": "nope"})
            assert failed.status_code == 401

        response = await client.post("/auth/ldap/login", json=LDAP_LOGIN)

        assert response.status_code == 429
        assert response.headers["retry-after"] == "900"
        assert response.json()["error"]["code"] == "AUTH_RATE_LIMITED"
        assert "set-cookie" not in response.headers


@pytest.mark.integration
class TestCallbackEndpoints:
    """Test OAuth callback and SAML ACS"""

    @pytest.mark.asyncio
    async def test_oauth_callback_unknown_state(self, client):
        response = await client.get(
            "/auth/oauth/callback",
            params={"code": "abc", "state": "never-issued", "provider": "google"},
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "OAUTH_INVALID_STATE"

    @pytest.mark.asyncio
    async def test_oauth_callback_requires_code(self, client):
        response = await client.get("/auth/oauth/callback", params={"state": "s", "provider": "google"})

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_saml_acs(self, client, saml_response):
        """Happy path: a posted assertion becomes the stored session"""
        response_xml = saml_response(issuer="test-okta-entity-id")

        response = await client.post(
            "/auth/saml/acs",
            params={"provider": "okta"},
            json={"SAMLResponse": response_xml, "RelayState": "/home"},
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["provider"] == "saml"
        assert data["user"]["id"] == "alice@company.com"
        assert data["metadata"]["relayState"] == "/home"

    @pytest.mark.asyncio
    async def test_saml_acs_expired_assertion(self, client, clock, saml_response):
        response_xml = saml_response(issuer="test-okta-entity-id", not_on_or_after=clock())

        response = await client.post(
            "/auth/saml/acs", params={"provider": "okta"}, json={"SAMLResponse": response_xml}
        )

        assert response.status_code == 401
        assert response.json()["error"]["type"] == "TOKEN_EXPIRED"

    @pytest.mark.asyncio
    async def test_saml_metadata(self, client):
        response = await client.get("/auth/saml/metadata/okta")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/samlmetadata+xml")
        assert 'entityID="multiauth"' in response.text

    @pytest.mark.asyncio
    async def test_saml_metadata_unknown(self, client):
        response = await client.get("/auth/saml/metadata/onelogin")

        assert response.status_code == 404


@pytest.mark.integration
class TestSessionEndpoints:
    """Test session read, refresh and signout"""

    @pytest.mark.asyncio
    async def test_current_session_lifecycle(self, client):
        """Happy path: login, read, sign out, read again"""
        await client.post("/auth/ldap/login", json=LDAP_LOGIN)

        current = await client.get("/auth/session")
        assert current.status_code == 200
        assert current.json()["data"]["provider"] == "ldap"

        signed_out = await client.post("/auth/signout")
        assert signed_out.status_code == 200
        assert "auth_session=" in signed_out.headers["set-cookie"]

        after = await client.get("/auth/session")
        assert after.status_code == 401
        assert after.json()["error"]["code"] == "SESSION_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_refresh(self, client, clock):
        await client.post("/auth/session/login", json={"email": "user@example.com", "password": "pw"})
        clock.advance(minutes=10)

        response = await client.post("/auth/session/refresh")

        assert response.status_code == 200
        assert response.json()["data"]["expiresAt"].startswith("2025-01-15T12:40:00")

    @pytest.mark.asyncio
    async def test_refresh_without_session(self, client):
        response = await client.post("/auth/session/refresh")

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "SESSION_NO_ACTIVE_SESSION"

    @pytest.mark.asyncio
    async def test_session_is_private_to_its_cookie(self, client):
        """Edge case: a client without the cookie cannot read someone else's session"""
        await client.post("/auth/ldap/login", json=LDAP_LOGIN)

        async with browser() as stranger:
            response = await stranger.get("/auth/session")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "SESSION_NOT_FOUND"
        assert (await client.get("/auth/session")).status_code == 200

    @pytest.mark.asyncio
    async def test_signout_ends_only_the_callers_session(self, client):
        await client.post("/auth/session/login", json={"email": "alice@example.com", "password": "pw"})

        async with browser() as other:
            await other.post("/auth/session/login", json={"email": "bob@example.com", "password": "pw"})
            assert (await other.get("/auth/session")).json()["data"]["user"]["email"] == "bob@example.com"
            assert (await other.post("/auth/signout")).status_code == 200
            assert (await other.get("/auth/session")).status_code == 401

        current = await client.get("/auth/session")
        assert current.status_code == 200
        assert current.json()["data"]["user"]["email"] == "alice@example.com"

    @pytest.mark.asyncio
    async def test_signout_without_cookie_leaves_sessions_alone(self, client):
        await client.post("/auth/ldap/login", json=LDAP_LOGIN)

        async with browser() as stranger:
            response = await stranger.post("/auth/signout")

        assert response.status_code == 200
        assert (await client.get("/auth/session")).json()["data"]["provider"] == "ldap"


@pytest.mark.integration
class TestDiscoveryEndpoints:
    """Test capabilities and health"""

    @pytest.mark.asyncio
    async def test_capabilities(self, client):
        response = await client.get("/auth/providers/ldap/capabilities")

        assert response.status_code == 200
        body = response.json()
        assert body["provider"] == "ldap"
        assert "ldap_authentication" in body["capabilities"]

    @pytest.mark.asyncio
    async def test_capabilities_unknown_type(self, client):
        response = await client.get("/auth/providers/kerberos/capabilities")

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert set(body["providers"]) == {"jwt", "oauth", "saml", "ldap", "session"}

    @pytest.mark.asyncio
    async def test_unavailable_before_startup(self):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            response = await client.get("/auth/session")

        assert response.status_code == 503
