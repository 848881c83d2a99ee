"""Unit tests for SamlProvider

Responses come from the saml_response fixture in conftest.py, which emits
SAML 2.0 Response documents signed with the test IdP key. The okta_config
fixture trusts that key's certificate.
"""

import base64
from datetime import timedelta
from urllib.parse import parse_qs, urlparse
from xml.etree import ElementTree as ET

import pytest
from onelogin.saml2.utils import OneLogin_Saml2_Utils

from multiauth.config.settings import Settings
from multiauth.core.auth import SamlProvider
from multiauth.core.auth.saml import default_saml_providers
from multiauth.domain.models import AuthErrorType, ProviderType

SAMLP_NS = "urn:oasis:names:tc:SAML:2.0:protocol"
SAML_NS = "urn:oasis:names:tc:SAML:2.0:assertion"


@pytest.fixture
def provider(okta_config, clock):
    return SamlProvider(
        providers={"okta": okta_config},
        sp_entity_id="multiauth",
        acs_url="http://localhost:8000/auth/saml/acs",
        clock=clock,
    )


def redirect_document(url):
    params = parse_qs(urlparse(url).query)
    return ET.fromstring(OneLogin_Saml2_Utils.decode_base64_and_inflate(params["SAMLRequest"][0]))


def logout_response(in_response_to, status="urn:oasis:names:tc:SAML:2.0:status:Success"):
    xml = (
        f'<samlp:LogoutResponse xmlns:samlp="{SAMLP_NS}" ID="_lr1" Version="2.0" '
        f'IssueInstant="2025-01-15T12:00:00Z" InResponseTo="{in_response_to}">'
        f'<samlp:Status><samlp:StatusCode Value="{status}"/></samlp:Status>'
        f"</samlp:LogoutResponse>"
    )
    return base64.b64encode(xml.encode("utf-8")).decode("ascii")


@pytest.mark.unit
class TestSamlInitiation:
    """Test AuthnRequest construction"""

    @pytest.mark.asyncio
    async def test_redirect_carries_recorded_request(self, provider, okta_config):
        """Happy path: the ssoUrl decodes to an AuthnRequest that is pending"""
        # Act
        result = await provider.authenticate({"provider": "okta", "relayState": "/dashboard"})

        # Assert
        assert result.success is True
        session = result.data
        assert session.is_active is False
        assert session.metadata["ssoUrl"].startswith(okta_config.sso_url)

        request = redirect_document(session.metadata["ssoUrl"])
        assert request.tag == f"{{{SAMLP_NS}}}AuthnRequest"
        assert request.get("ID") == session.metadata["requestId"]
        assert request.get("AssertionConsumerServiceURL") == "http://localhost:8000/auth/saml/acs"
        assert request.findtext(f"{{{SAML_NS}}}Issuer") == "multiauth"
        assert session.metadata["requestId"] in provider.pending
        assert parse_qs(urlparse(session.metadata["ssoUrl"]).query)["RelayState"] == ["/dashboard"]

    @pytest.mark.asyncio
    async def test_missing_provider(self, provider):
        """Bad input: no IdP named"""
        result = await provider.authenticate({"samlResponse": "PHg+"})

        assert result.success is False
        assert result.error.type == AuthErrorType.VALIDATION_ERROR
        assert result.error.code == "SAML_MISSING_PROVIDER"

    @pytest.mark.asyncio
    async def test_unknown_provider(self, provider):
        result = await provider.authenticate({"provider": "onelogin"})

        assert result.error.code == "SAML_UNSUPPORTED_PROVIDER"


@pytest.mark.unit
class TestSamlResponse:
    """Test assertion validation and attribute mapping"""

    @pytest.mark.asyncio
    async def test_valid_unsolicited_response(self, provider, saml_response, clock):
        """Happy path: subject, groups and expiry come from the assertion"""
        # Arrange
        response = saml_response(groups=["Engineering"])

        # Act
        result = await provider.authenticate({"provider": "okta", "samlResponse": response})

        # Assert
        assert result.success is True
        session = result.data
        assert session.provider == ProviderType.SAML
        assert session.user.id == "alice@company.com"
        assert session.user.email == "alice@company.com"
        assert session.user.roles == ["Engineering"]
        assert session.expires_at == clock() + timedelta(minutes=5)
        assert session.token.token_type == "SAML"
        assert session.metadata["assertionId"] == "_assertion1"
        assert session.metadata["sessionIndex"] == "_session1"
        assert provider.current_provider == "okta"

    @pytest.mark.asyncio
    async def test_admin_group_maps_to_admin_permissions(self, provider, saml_response):
        result = await provider.authenticate(
            {"provider": "okta", "samlResponse": saml_response(groups=["Company Admins", "Staff"])}
        )

        assert "admin:*" in result.data.user.permissions
        assert "read:posts" in result.data.user.permissions

    @pytest.mark.asyncio
    async def test_expiry_bound_is_exclusive(self, provider, saml_response, clock):
        """Edge case: notOnOrAfter == now is rejected, clock skew does not widen it"""
        response = saml_response(not_on_or_after=clock())

        result = await provider.authenticate({"provider": "okta", "samlResponse": response})

        assert result.success is False
        assert result.error.type == AuthErrorType.TOKEN_EXPIRED
        assert result.error.code == "SAML_ASSERTION_INVALID_TIME"
        assert provider.current_session is None

    @pytest.mark.asyncio
    async def test_one_second_before_expiry_is_accepted(self, provider, saml_response, clock):
        response = saml_response(not_on_or_after=clock() + timedelta(seconds=1))

        result = await provider.authenticate({"provider": "okta", "samlResponse": response})

        assert result.success is True

    @pytest.mark.asyncio
    @pytest.mark.parametrize("offset_seconds,accepted", [(299, True), (300, True), (301, False)])
    async def test_not_before_allows_clock_skew(
        self, provider, saml_response, clock, offset_seconds, accepted
    ):
        """Edge case: notBefore may lie up to allowedClockSkew in the future"""
        response = saml_response(
            not_before=clock() + timedelta(seconds=offset_seconds),
            not_on_or_after=clock() + timedelta(minutes=30),
        )

        result = await provider.authenticate({"provider": "okta", "samlResponse": response})

        assert result.success is accepted

    @pytest.mark.asyncio
    async def test_issuer_mismatch(self, provider, saml_response):
        """Bad input: assertion from another IdP"""
        response = saml_response(issuer="http://evil.example.com")

        result = await provider.authenticate({"provider": "okta", "samlResponse": response})

        assert result.success is False
        assert result.error.type == AuthErrorType.TOKEN_INVALID
        assert result.error.code == "SAML_ISSUER_MISMATCH"

    @pytest.mark.asyncio
    async def test_audience_mismatch(self, provider, saml_response):
        response = saml_response(audience="another-sp")

        result = await provider.authenticate({"provider": "okta", "samlResponse": response})

        assert result.error.code == "SAML_AUDIENCE_MISMATCH"

    @pytest.mark.asyncio
    async def test_failed_status(self, provider, saml_response):
        response = saml_response(status="urn:oasis:names:tc:SAML:2.0:status:Responder")

        result = await provider.authenticate({"provider": "okta", "samlResponse": response})

        assert result.error.type == AuthErrorType.CREDENTIALS_INVALID
        assert result.error.code == "SAML_STATUS_ERROR"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "payload",
        [
            "not base64!",
            base64.b64encode(b"<not-closed").decode("ascii"),
            base64.b64encode(b'<!DOCTYPE x [<!ENTITY a "b">]><x/>').decode("ascii"),
        ],
    )
    async def test_malformed_response(self, provider, payload):
        """Bad input: undecodable, unparsable or DTD-bearing documents"""
        result = await provider.authenticate({"provider": "okta", "samlResponse": payload})

        assert result.success is False
        assert result.error.type == AuthErrorType.TOKEN_INVALID
        assert result.error.code == "SAML_RESPONSE_MALFORMED"

    @pytest.mark.asyncio
    async def test_solicited_response_consumes_request(self, provider, saml_response):
        """Happy path: InResponseTo matches a pending AuthnRequest exactly once"""
        started = await provider.authenticate({"provider": "okta"})
        request_id = started.data.metadata["requestId"]
        response = saml_response(in_response_to=request_id)

        first = await provider.authenticate({"provider": "okta", "samlResponse": response})
        replay = await provider.authenticate({"provider": "okta", "samlResponse": response})

        assert first.success is True
        assert request_id not in provider.pending
        assert replay.success is False
        assert replay.error.code == "SAML_UNKNOWN_REQUEST"

    @pytest.mark.asyncio
    async def test_unknown_in_response_to(self, provider, saml_response):
        response = saml_response(in_response_to="_never-issued")

        result = await provider.authenticate({"provider": "okta", "samlResponse": response})

        assert result.error.type == AuthErrorType.TOKEN_INVALID
        assert result.error.code == "SAML_UNKNOWN_REQUEST"

    @pytest.mark.asyncio
    async def test_unsolicited_rejected_when_disabled(self, provider, saml_response):
        provider.configure({"providers": {"okta": {"allowUnsolicited": False}}})

        result = await provider.authenticate({"provider": "okta", "samlResponse": saml_response()})

        assert result.error.code == "SAML_UNSOLICITED_RESPONSE"



@pytest.mark.unit
class TestSamlSignature:
    """Test XML signature verification against the IdP certificate"""

    @pytest.mark.asyncio
    async def test_tampered_response_rejected(self, provider, saml_response):
        """Bad input: editing a signed response breaks its digest"""
        # Arrange
        signed = base64.b64decode(saml_response(groups=["Staff"]))
        tampered = signed.replace(b"alice@company.com", b"mallory@company.com")
        payload = base64.b64encode(tampered).decode("ascii")

        # Act
        result = await provider.authenticate({"provider": "okta", "samlResponse": payload})

        # Assert
        assert result.success is False
        assert result.error.type == AuthErrorType.TOKEN_INVALID
        assert result.error.code == "SAML_SIGNATURE_INVALID"
        assert provider.current_session is None

    @pytest.mark.asyncio
    async def test_unsigned_response_rejected(self, provider, unsigned_saml_response):
        result = await provider.authenticate(
            {"provider": "okta", "samlResponse": unsigned_saml_response()}
        )

        assert result.success is False
        assert result.error.type == AuthErrorType.TOKEN_INVALID
        assert result.error.code == "SAML_SIGNATURE_INVALID"

    @pytest.mark.asyncio
    async def test_missing_certificate_fails_closed(self, okta_config, saml_response, clock):
        """Edge case: signing enabled with no certificate accepts nothing, signed or not"""
        provider = SamlProvider(
            providers={"okta": okta_config.merged({"certificate": ""})},
            sp_entity_id="multiauth",
            clock=clock,
        )

        result = await provider.authenticate({"provider": "okta", "samlResponse": saml_response()})

        assert result.success is False
        assert result.error.type == AuthErrorType.TOKEN_INVALID
        assert result.error.code == "SAML_SIGNATURE_UNVERIFIED"

    @pytest.mark.asyncio
    async def test_default_providers_reject_forged_admin(self, unsigned_saml_response, clock):
        """Bad input: a forged assertion claiming an admin group under stock settings"""
        # Arrange
        provider = SamlProvider(
            providers=default_saml_providers(Settings()),
            sp_entity_id="multiauth",
            clock=clock,
        )
        forged = unsigned_saml_response(
            issuer="test-okta-entity-id",
            subject="attacker@evil.com",
            groups=["Domain Admins"],
        )

        # Act
        result = await provider.authenticate({"provider": "okta", "samlResponse": forged})

        # Assert
        assert result.success is False
        assert result.error.code == "SAML_SIGNATURE_UNVERIFIED"
        assert provider.current_session is None
        status = await provider.health_check()
        assert "okta" in status.metadata["missingCertificates"]

    @pytest.mark.asyncio
    async def test_signing_disabled_accepts_unsigned(self, okta_config, unsigned_saml_response, clock):
        provider = SamlProvider(
            providers={"okta": okta_config.merged({"signingEnabled": False, "certificate": ""})},
            sp_entity_id="multiauth",
            clock=clock,
        )

        result = await provider.authenticate(
            {"provider": "okta", "samlResponse": unsigned_saml_response()}
        )

        assert result.success is True
        assert result.data.user.id == "alice@company.com"



@pytest.mark.unit
class TestAttributeMapping:
    """Test IdP attribute mapping"""

    def test_groups_collect_every_value(self):
        mapped = SamlProvider.map_attributes(
            {"g": ["Admins, Staff", "Engineering"], "mail": ["a@b.com", "other@b.com"]},
            {"groups": "g", "email": "mail", "firstName": "given"},
        )

        assert mapped["groups"] == ["Admins", "Staff", "Engineering"]
        assert mapped["email"] == "a@b.com"
        assert "firstName" not in mapped


@pytest.mark.unit
class TestSamlLogout:
    """Test single logout and local signout"""

    @pytest.mark.asyncio
    async def test_slo_returns_logout_url_then_completes(self, provider, saml_response):
        """Happy path: session survives until the IdP's LogoutResponse arrives"""
        # Arrange
        await provider.authenticate({"provider": "okta", "samlResponse": saml_response()})

        # Act
        result = await provider.signout()

        # Assert
        assert result.success is True
        logout_url = result.metadata["logoutUrl"]
        assert result.data == {"logoutUrl": logout_url}
        request = redirect_document(logout_url)
        assert request.tag == f"{{{SAMLP_NS}}}LogoutRequest"
        assert request.findtext(f"{{{SAML_NS}}}NameID") == "alice@company.com"
        assert (await provider.validate_session()).data is True

        completed = await provider.complete_logout(logout_response(request.get("ID")))

        assert completed.success is True
        assert (await provider.validate_session()).data is False

    @pytest.mark.asyncio
    async def test_unexpected_logout_response(self, provider, saml_response):
        await provider.authenticate({"provider": "okta", "samlResponse": saml_response()})

        result = await provider.complete_logout(logout_response("_unknown"))

        assert result.success is False
        assert result.error.code == "SAML_UNKNOWN_REQUEST"
        assert provider.current_session is not None

    @pytest.mark.asyncio
    async def test_refused_logout_keeps_session(self, provider, saml_response):
        """Edge case: a non-success LogoutResponse consumes the request but not the session"""
        await provider.authenticate({"provider": "okta", "samlResponse": saml_response()})
        request = redirect_document((await provider.signout()).metadata["logoutUrl"])

        result = await provider.complete_logout(
            logout_response(request.get("ID"), status="urn:oasis:names:tc:SAML:2.0:status:Responder")
        )

        assert result.success is False
        assert result.error.code == "SAML_LOGOUT_FAILED"
        assert request.get("ID") not in provider.pending
        assert provider.current_session is not None

    @pytest.mark.asyncio
    async def test_resumed_session_can_single_logout(self, provider, saml_response, okta_config, clock):
        """Happy path: a fresh instance rebound to a stored session names its subject"""
        session = (await provider.authenticate({"provider": "okta", "samlResponse": saml_response()})).data
        other = SamlProvider(providers={"okta": okta_config}, sp_entity_id="multiauth", clock=clock)

        other.resume(session)
        result = await other.signout()

        request = redirect_document(result.metadata["logoutUrl"])
        assert request.findtext(f"{{{SAML_NS}}}NameID") == "alice@company.com"
        assert request.findtext(f"{{{SAMLP_NS}}}SessionIndex") == "_session1"

    @pytest.mark.asyncio
    async def test_local_signout_without_slo(self, provider, saml_response):
        provider.configure({"providers": {"okta": {"sloUrl": None}}})
        await provider.authenticate({"provider": "okta", "samlResponse": saml_response()})

        result = await provider.signout()

        assert result.success is True
        assert "logoutUrl" not in result.metadata
        assert provider.current_session is None

    @pytest.mark.asyncio
    async def test_signout_without_session(self, provider):
        assert (await provider.signout()).success is True


@pytest.mark.unit
class TestSamlSurface:
    """Test metadata, unsupported operations and configure"""

    def test_metadata_document(self, provider):
        document = ET.fromstring(provider.get_metadata("okta"))

        assert document.get("entityID") == "multiauth"
        acs = document.find(
            "{urn:oasis:names:tc:SAML:2.0:metadata}SPSSODescriptor/"
            "{urn:oasis:names:tc:SAML:2.0:metadata}AssertionConsumerService"
        )
        assert acs.get("Location") == "http://localhost:8000/auth/saml/acs"

    def test_metadata_unknown_provider(self, provider):
        with pytest.raises(KeyError):
            provider.get_metadata("onelogin")

    @pytest.mark.asyncio
    async def test_refresh_is_unsupported(self, provider, saml_response):
        """Capability gap: SAML sessions are renewed by logging in again"""
        await provider.authenticate({"provider": "okta", "samlResponse": saml_response()})

        result = await provider.refresh_token()

        assert result.success is False
        assert result.error.type == AuthErrorType.UNKNOWN_ERROR
        assert result.error.code == "SAML_REFRESH_NOT_SUPPORTED"
        assert "token_refresh" not in provider.get_capabilities()

    @pytest.mark.asyncio
    async def test_register_is_unsupported(self, provider):
        result = await provider.register({"email": "a@b.com"})

        assert result.error.type == AuthErrorType.UNKNOWN_ERROR

    def test_configure(self, provider):
        provider.configure({"acs_url": "https://app.example.com/acs", "pending_request_ttl": 60})

        assert provider.acs_url == "https://app.example.com/acs"
        with pytest.raises(ValueError):
            provider.configure({"certificate": "x"})
