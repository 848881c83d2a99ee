"""
Pytest configuration and fixtures for multiauth tests.

Provides fixtures for:
- Controllable clock
- In-memory storage, cookie jar and broadcast hub
- Seeded LDAP directory
- SAML IdP signing keys and response builders
- OAuth endpoints behind httpx.MockTransport
"""

import base64
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, Optional

import httpx
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID
from onelogin.saml2.utils import OneLogin_Saml2_Utils

from multiauth.domain.models import LdapProviderConfig, OAuthProviderConfig, SamlProviderConfig
from multiauth.infrastructure.auth import MemoryUserDirectory
from multiauth.infrastructure.ldap import MemoryDirectory
from multiauth.infrastructure.storage import CookieJar, MemoryBroadcastHub, MemoryKeyValueStore

T0 = datetime(2025, 1, 15, 12, 0, 0, tzinfo=timezone.utc)

SAMLP_NS = "urn:oasis:names:tc:SAML:2.0:protocol"
SAML_NS = "urn:oasis:names:tc:SAML:2.0:assertion"
GROUP_CLAIM = "http://schemas.xmlsoap.org/claims/Group"
EMAIL_CLAIM = "http://schemas.xmlsoap.org/ws/2005/05/identity/claims/emailaddress"


class FakeClock:
    """Clock whose time only moves when told to"""

    def __init__(self, start: datetime = T0):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current

    def set(self, value: datetime) -> None:
        self.current = value


@pytest.fixture
def clock():
    """Fake clock starting at T0"""
    return FakeClock()


@pytest.fixture
def storage(clock):
    return MemoryKeyValueStore(clock=clock)


@pytest.fixture
def cookie_jar(clock):
    return CookieJar(clock=clock)


@pytest.fixture
def hub():
    return MemoryBroadcastHub()


@pytest.fixture
def user_directory(clock):
    """User directory with cheap bcrypt rounds"""
    return MemoryUserDirectory(bcrypt_rounds=4, clock=clock)


# LDAP

AD_BASE = "DC=company,DC=com"
AD_SERVICE_DN = "CN=ldap_bind,OU=Service Accounts,DC=company,DC=com"
TEST_USER_DN = "CN=Test User,OU=Users,DC=company,DC=com"


@pytest.fixture
def ad_config():
    """Active Directory config pointing at the seeded directory"""
    return LdapProviderConfig(
        url="ldap://ad.company.com",
        port=389,
        base_dn=AD_BASE,
        bind_dn=AD_SERVICE_DN,
        bind_password="bind-password",
        user_search_base=AD_BASE,
        user_search_filter="(sAMAccountName={username})",
        group_search_base=AD_BASE,
        group_search_filter="(member={userDN})",
        attribute_mapping={
            "username": "sAMAccountName",
            "email": "mail",
            "firstName": "givenName",
            "lastName": "sn",
            "groups": "memberOf",
        },
    )


@pytest.fixture
def directory():
    """Directory with a service account, testuser/testpass and two groups"""
    directory = MemoryDirectory()
    directory.add_entry(AD_SERVICE_DN, {"cn": "ldap_bind"}, password="bind-password")
    directory.add_entry(
        TEST_USER_DN,
        {
            "sAMAccountName": "testuser",
            "mail": "testuser@company.com",
            "givenName": "Test",
            "sn": "User",
            "memberOf": ["CN=Domain Admins,OU=Groups,DC=company,DC=com"],
        },
        password="testpass",
    )
    directory.add_entry(
        "CN=Jane Dev,OU=Users,DC=company,DC=com",
        {"sAMAccountName": "jdev", "mail": "jdev@company.com", "givenName": "Jane", "sn": "Dev"},
        password="devpass",
    )
    directory.add_entry(
        "CN=Developers,OU=Groups,DC=company,DC=com",
        {"cn": "Developers", "member": ["CN=Jane Dev,OU=Users,DC=company,DC=com"]},
    )
    return directory


# SAML

@pytest.fixture(scope="session")
def idp_keys():
    """Private key and self-signed certificate the test IdP signs with (PEM)"""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "idp.company.com")])
    issued = datetime.now(timezone.utc)
    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(issued - timedelta(days=1))
        .not_valid_after(issued + timedelta(days=365))
        .sign(key, hashes.SHA256())
    )
    key_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode("ascii")
    cert_pem = certificate.public_bytes(serialization.Encoding.PEM).decode("ascii")
    return key_pem, cert_pem


@pytest.fixture
def okta_config(idp_keys):
    """Okta record trusting the test IdP certificate, signing required"""
    return SamlProviderConfig(
        entity_id="http://www.okta.com/test-entity",
        sso_url="https://company.okta.com/app/sso/saml",
        slo_url="https://company.okta.com/app/slo/saml",
        certificate=idp_keys[1],
        attribute_mapping={"email": EMAIL_CLAIM, "groups": GROUP_CLAIM},
    )


def build_saml_document(
    issuer: str = "http://www.okta.com/test-entity",
    subject: str = "alice@company.com",
    not_before: Optional[datetime] = T0 - timedelta(minutes=1),
    not_on_or_after: datetime = T0 + timedelta(minutes=5),
    in_response_to: Optional[str] = None,
    audience: Optional[str] = "multiauth",
    groups: Iterable[str] = ("Engineering",),
    status: str = "urn:oasis:names:tc:SAML:2.0:status:Success",
    assertion_id: str = "_assertion1",
) -> str:
    """SAML 2.0 Response document as the IdP would emit it"""

    def fmt(value: datetime) -> str:
        return value.strftime("%Y-%m-%dT%H:%M:%SZ")

    irt = f' InResponseTo="{in_response_to}"' if in_response_to else ""
    conditions_attrs = f' NotOnOrAfter="{fmt(not_on_or_after)}"'
    if not_before is not None:
        conditions_attrs = f' NotBefore="{fmt(not_before)}"' + conditions_attrs
    audience_xml = (
        f"<saml:AudienceRestriction><saml:Audience>{audience}</saml:Audience></saml:AudienceRestriction>"
        if audience else ""
    )
    group_values = "".join(f"<saml:AttributeValue>{g}</saml:AttributeValue>" for g in groups)

    return (
        f'<samlp:Response xmlns:samlp="{SAMLP_NS}" xmlns:saml="{SAML_NS}" ID="_resp1" Version="2.0" '
        f'IssueInstant="{fmt(T0)}"{irt}>'
        f"<saml:Issuer>{issuer}</saml:Issuer>"
        f'<samlp:Status><samlp:StatusCode Value="{status}"/></samlp:Status>'
        f'<saml:Assertion ID="{assertion_id}" Version="2.0" IssueInstant="{fmt(T0)}">'
        f"<saml:Issuer>{issuer}</saml:Issuer>"
        f"<saml:Subject><saml:NameID>{subject}</saml:NameID>"
        f'<saml:SubjectConfirmation Method="urn:oasis:names:tc:SAML:2.0:cm:bearer">'
        f"<saml:SubjectConfirmationData{irt}/></saml:SubjectConfirmation>"
        f"</saml:Subject>"
        f"<saml:Conditions{conditions_attrs}>{audience_xml}</saml:Conditions>"
        f'<saml:AuthnStatement AuthnInstant="{fmt(T0)}" SessionIndex="_session1"/>'
        f"<saml:AttributeStatement>"
        f'<saml:Attribute Name="{EMAIL_CLAIM}"><saml:AttributeValue>{subject}</saml:AttributeValue></saml:Attribute>'
        f'<saml:Attribute Name="{GROUP_CLAIM}">{group_values}</saml:Attribute>'
        f"</saml:AttributeStatement>"
        f"</saml:Assertion>"
        f"</samlp:Response>"
    )


def encode_document(xml) -> str:
    if isinstance(xml, str):
        xml = xml.encode("utf-8")
    return base64.b64encode(xml).decode("ascii")


@pytest.fixture
def saml_response(idp_keys):
    """Factory for base64 SAML responses signed by the test IdP"""
    key_pem, cert_pem = idp_keys

    def factory(**fields) -> str:
        signed = OneLogin_Saml2_Utils.add_sign(build_saml_document(**fields), key_pem, cert_pem)
        return encode_document(signed)

    return factory


@pytest.fixture
def unsigned_saml_response():
    """Factory for base64 SAML responses carrying no signature"""

    def factory(**fields) -> str:
        return encode_document(build_saml_document(**fields))

    return factory


# OAuth

@pytest.fixture
def google_config():
    return OAuthProviderConfig(
        client_id="google-client",
        client_secret="google-secret",
        redirect_uri="http://localhost:8000/auth/oauth/callback",
        scope=["openid", "email", "profile"],
        authorization_endpoint="https://accounts.example.com/authorize",
        token_endpoint="https://accounts.example.com/token",
        user_info_endpoint="https://accounts.example.com/userinfo",
        pkce=True,
    )


class OAuthServer:
    """Token and userinfo endpoints recording what they were sent"""

    def __init__(self):
        self.token_requests: list[Dict[str, str]] = []
        self.userinfo_calls = 0
        self.token_status = 200
        self.userinfo_status = 200
        self.profile = {"sub": "google-123", "email": "alice@example.com", "name": "Alice"}
        self.fail_with: Optional[Exception] = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        if self.fail_with is not None:
            raise self.fail_with
        if request.url.path == "/token":
            form = dict(httpx.QueryParams(request.content.decode("utf-8")))
            self.token_requests.append(form)
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"error": "invalid_grant"})
            return httpx.Response(
                200,
                json={"access_token": "at-123", "token_type": "Bearer", "expires_in": 3600},
            )
        if request.url.path == "/userinfo":
            self.userinfo_calls += 1
            if self.userinfo_status != 200:
                return httpx.Response(self.userinfo_status, json={"error": "invalid_token"})
            return httpx.Response(200, json=self.profile)
        return httpx.Response(404)


@pytest.fixture
def oauth_server():
    return OAuthServer()


@pytest.fixture
def oauth_http_client(oauth_server):
    return httpx.AsyncClient(transport=httpx.MockTransport(oauth_server.handler))
