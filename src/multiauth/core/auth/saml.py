"""SAML 2.0 Web SSO provider (service provider side).

Supports preconfigured identity providers:
- Okta
- Azure AD
- ADFS
- PingOne

Flow:
    1. authenticate({"provider": "okta"}) builds an AuthnRequest with
       python3-saml, records it as pending and returns a pending session
       whose metadata.ssoUrl is the HTTP-Redirect URL.
    2. authenticate({"provider": "okta", "samlResponse": ...}) parses the
       posted response, verifies its XML signature against the IdP
       certificate, checks issuer, InResponseTo and the assertion time
       window, then maps attributes into an active session.

With signing enabled (the default) a response is accepted only when its
signature verifies against the IdP's configured certificate. An IdP
without a certificate cannot sign anyone in.
"""

import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlparse

from onelogin.saml2.auth import OneLogin_Saml2_Auth
from onelogin.saml2.constants import OneLogin_Saml2_Constants
from onelogin.saml2.errors import OneLogin_Saml2_Error, OneLogin_Saml2_ValidationError
from onelogin.saml2.logout_response import OneLogin_Saml2_Logout_Response
from onelogin.saml2.response import OneLogin_Saml2_Response
from onelogin.saml2.settings import OneLogin_Saml2_Settings
from onelogin.saml2.utils import OneLogin_Saml2_Utils
from onelogin.saml2.xml_utils import OneLogin_Saml2_XML

from multiauth.config.settings import Settings, get_settings
from multiauth.domain.models import (
    AuthCredentials,
    AuthErrorType,
    AuthResult,
    AuthSession,
    AuthToken,
    AuthUser,
    PendingRequest,
    ProviderType,
    SamlProviderConfig,
)

from .errors import AuthenticationError, auth_boundary
from .pending import PendingRequestStore
from .permissions import SAML_TIERS, map_groups_to_permissions
from .provider import AuthProvider, Credentials
from .single_flight import SingleFlight

logger = logging.getLogger(__name__)

CLAIMS = "http://schemas.xmlsoap.org/ws/2005/05/identity/claims"
CLAIMS_ATTRIBUTE_MAPPING = {
    "email": f"{CLAIMS}/emailaddress",
    "firstName": f"{CLAIMS}/givenname",
    "lastName": f"{CLAIMS}/surname",
    "groups": "http://schemas.xmlsoap.org/claims/Group",
}

CONDITIONS_XPATH = "/samlp:Response/saml:Assertion/saml:Conditions"
CONFIRMATION_XPATH = (
    "/samlp:Response/saml:Assertion/saml:Subject/saml:SubjectConfirmation/saml:SubjectConfirmationData"
)
LOGOUT_RESPONSE_TAG = f"{{{OneLogin_Saml2_Constants.NS_SAMLP}}}LogoutResponse"


def default_saml_providers(settings: Settings) -> Dict[str, SamlProviderConfig]:
    """Okta, Azure AD, ADFS and Ping identity provider records"""
    return {
        "okta": SamlProviderConfig(
            entity_id=settings.okta_entity_id,
            sso_url=settings.okta_sso_url,
            slo_url=settings.okta_slo_url,
            certificate=settings.okta_certificate,
            attribute_mapping=dict(CLAIMS_ATTRIBUTE_MAPPING),
        ),
        "azure_ad": SamlProviderConfig(
            entity_id=settings.azure_entity_id,
            sso_url=settings.azure_sso_url,
            slo_url=settings.azure_slo_url,
            certificate=settings.azure_certificate,
            attribute_mapping={
                "email": CLAIMS_ATTRIBUTE_MAPPING["email"],
                "firstName": CLAIMS_ATTRIBUTE_MAPPING["firstName"],
                "lastName": CLAIMS_ATTRIBUTE_MAPPING["lastName"],
                "groups": "http://schemas.microsoft.com/ws/2008/06/identity/claims/groups",
                "objectId": "http://schemas.microsoft.com/identity/claims/objectidentifier",
            },
        ),
        "adfs": SamlProviderConfig(
            entity_id=settings.adfs_entity_id,
            sso_url=settings.adfs_sso_url,
            slo_url=settings.adfs_slo_url,
            certificate=settings.adfs_certificate,
            attribute_mapping=dict(CLAIMS_ATTRIBUTE_MAPPING),
        ),
        "ping": SamlProviderConfig(
            entity_id=settings.ping_entity_id,
            sso_url=settings.ping_sso_url,
            slo_url=settings.ping_slo_url,
            certificate=settings.ping_certificate,
            attribute_mapping={
                "email": "email",
                "firstName": "firstName",
                "lastName": "lastName",
                "groups": "groups",
            },
        ),
    }


def parse_saml_time(value: str) -> datetime:
    """Parse an xs:dateTime value as an aware UTC datetime

    Raises:
        ValueError: If the value is not an xs:dateTime
    """
    try:
        timestamp = OneLogin_Saml2_Utils.parse_SAML_to_time(value.strip())
    except Exception as e:
        raise ValueError(str(e)) from e
    return datetime.fromtimestamp(timestamp, timezone.utc)


@dataclass
class SamlAssertion:
    """Fields read from a SAML assertion"""
    id: str
    issuers: list[str]
    subject: str
    not_on_or_after: datetime
    not_before: Optional[datetime] = None
    in_response_to: Optional[str] = None
    session_index: Optional[str] = None
    audiences: list[str] = field(default_factory=list)
    attributes: Dict[str, list[str]] = field(default_factory=dict)

    @property
    def issuer(self) -> str:
        return self.issuers[0] if self.issuers else ""


class SamlProvider(AuthProvider):
    """SAML 2.0 service provider.

    An assertion is accepted only when
    notBefore - allowedClockSkew <= now < notOnOrAfter. The upper bound
    is exclusive and is not widened by the skew allowance.

    python3-saml runs in non-strict mode: it parses, checks status and
    verifies signatures, while the time window and InResponseTo checks
    run here against the provider clock.
    """

    provider_type = ProviderType.SAML

    def __init__(
        self,
        providers: Optional[Mapping[str, SamlProviderConfig]] = None,
        sp_entity_id: Optional[str] = None,
        acs_url: Optional[str] = None,
        pending_ttl_seconds: float = 600,
        max_pending_requests: int = 1000,
        **kwargs: Any
    ):
        """Initialize SAML provider.

        Args:
            providers: Named IdP configs (default: Okta, Azure AD, ADFS, Ping)
            sp_entity_id: Our entity id (default: SAML_SP_ENTITY_ID)
            acs_url: Assertion consumer service URL (default: SAML_ACS_URL)
            pending_ttl_seconds: Lifetime of an unanswered AuthnRequest
            max_pending_requests: Bound on outstanding AuthnRequests
        """
        super().__init__(**kwargs)
        settings = get_settings()
        self.providers: Dict[str, SamlProviderConfig] = (
            dict(providers) if providers is not None else default_saml_providers(settings)
        )
        self.sp_entity_id = sp_entity_id or settings.saml_sp_entity_id
        self.acs_url = acs_url or settings.saml_acs_url
        self.pending = PendingRequestStore(
            ttl_seconds=pending_ttl_seconds,
            max_entries=max_pending_requests,
            clock=self._clock,
        )
        self._flights = SingleFlight()
        self.current_provider: Optional[str] = None
        self._name_id: Optional[str] = None
        self._session_index: Optional[str] = None

    def _build_saml_settings(self, config: SamlProviderConfig) -> Dict[str, Any]:
        """Settings dict for python3-saml"""
        sp: Dict[str, Any] = {
            "entityId": self.sp_entity_id,
            "assertionConsumerService": {
                "url": self.acs_url,
                "binding": OneLogin_Saml2_Constants.BINDING_HTTP_POST,
            },
            "NameIDFormat": config.name_id_format,
            "x509cert": "",
            "privateKey": "",
        }
        idp: Dict[str, Any] = {
            "entityId": config.entity_id,
            "singleSignOnService": {
                "url": config.sso_url,
                "binding": OneLogin_Saml2_Constants.BINDING_HTTP_REDIRECT,
            },
            "x509cert": config.certificate,
        }
        if config.slo_url:
            sp["singleLogoutService"] = {
                "url": self.acs_url,
                "binding": OneLogin_Saml2_Constants.BINDING_HTTP_REDIRECT,
            }
            idp["singleLogoutService"] = {
                "url": config.slo_url,
                "binding": OneLogin_Saml2_Constants.BINDING_HTTP_REDIRECT,
            }
        return {
            "strict": False,
            "debug": False,
            "sp": sp,
            "idp": idp,
            "security": {
                "authnRequestsSigned": False,
                "wantAssertionsSigned": config.signing_enabled,
                "allowRepeatAttributeName": True,
            },
        }

    def _settings_for(self, config: SamlProviderConfig) -> OneLogin_Saml2_Settings:
        # IdP records are validated by our own config model
        return OneLogin_Saml2_Settings(self._build_saml_settings(config), sp_validation_only=True)

    def _request_data(self) -> Dict[str, Any]:
        """Request context python3-saml derives self URLs from"""
        url = urlparse(self.acs_url)
        data: Dict[str, Any] = {
            "https": "on" if url.scheme == "https" else "off",
            "http_host": url.hostname or "",
            "script_name": url.path,
            "get_data": {},
            "post_data": {},
        }
        if url.port:
            data["server_port"] = url.port
        return data

    def _resolve(self, creds: AuthCredentials) -> SamlProviderConfig:
        if not creds.provider:
            raise AuthenticationError(
                AuthErrorType.VALIDATION_ERROR,
                "SAML identity provider must be specified",
                "SAML_MISSING_PROVIDER",
            )
        config = self.providers.get(creds.provider)
        if config is None:
            raise AuthenticationError(
                AuthErrorType.VALIDATION_ERROR,
                f"Unsupported SAML identity provider: {creds.provider}",
                "SAML_UNSUPPORTED_PROVIDER",
            )
        return config

    @auth_boundary("SAML_AUTH_ERROR")
    async def authenticate(self, credentials: Credentials) -> AuthResult:
        creds = self.coerce_credentials(credentials)
        config = self._resolve(creds)

        if not creds.saml_response:
            return AuthResult.ok(self._initiate(creds.provider, config, creds.relay_state))

        digest = hashlib.sha256(creds.saml_response.encode("utf-8")).hexdigest()
        session = await self._flights.run(
            ("response", digest),
            lambda: self._handle_response(creds, config),
        )
        self.current_session = session
        self.current_provider = creds.provider
        logger.info(f"SAML login via {creds.provider} for {session.user.id}")
        return AuthResult.ok(session)

    def _initiate(
        self, name: str, config: SamlProviderConfig, relay_state: Optional[str]
    ) -> AuthSession:
        """INITIATE: build and record an AuthnRequest"""
        now = self.now()
        auth = OneLogin_Saml2_Auth(self._request_data(), self._settings_for(config))
        sso_url = auth.login(return_to=relay_state)
        request_id = auth.get_last_request_id()

        expires_at = self.pending.expiry_for(now)
        self.pending.put(
            PendingRequest(
                id=request_id,
                provider_name=name,
                issuer=self.sp_entity_id,
                destination=config.sso_url,
                issued_at=now,
                expires_at=expires_at,
                relay_state=relay_state,
            )
        )
        logger.info(f"SAML AuthnRequest {request_id} issued for {name}")

        return AuthSession(
            user=AuthUser(id=""),
            token=AuthToken(access_token="", expires_at=expires_at, token_type="SAML", scope=["sso"]),
            provider=self.provider_type,
            created_at=now,
            expires_at=expires_at,
            is_active=False,
            metadata={
                "provider": name,
                "ssoUrl": sso_url,
                "requestId": request_id,
                "relayState": relay_state,
            },
        )

    async def _handle_response(
        self, creds: AuthCredentials, config: SamlProviderConfig
    ) -> AuthSession:
        """RESPONSE: parse, verify, validate and map the posted assertion"""
        response = self._parse(creds.saml_response, config)
        self._verify_signature(response, creds.provider, config)
        assertion = self.read_assertion(response)

        if any(issuer != config.entity_id for issuer in assertion.issuers):
            raise AuthenticationError(
                AuthErrorType.TOKEN_INVALID,
                f"Unexpected assertion issuer: {assertion.issuer}",
                "SAML_ISSUER_MISMATCH",
            )
        if assertion.audiences and self.sp_entity_id not in assertion.audiences:
            raise AuthenticationError(
                AuthErrorType.TOKEN_INVALID,
                "Assertion is not addressed to this service provider",
                "SAML_AUDIENCE_MISMATCH",
            )

        self.validate_time_window(assertion, config)
        self._consume_request(assertion, creds.provider, config)
        return await self._build_session(creds, config, assertion)

    def _parse(self, saml_response: str, config: SamlProviderConfig) -> OneLogin_Saml2_Response:
        """Decode the response and check status and assertion count

        Raises:
            AuthenticationError: TOKEN_INVALID for malformed documents,
                CREDENTIALS_INVALID for a non-success status
        """
        try:
            response = OneLogin_Saml2_Response(self._settings_for(config), saml_response)
        except Exception as e:
            # base64, XML syntax and forbidden DTD errors all land here
            raise AuthenticationError(
                AuthErrorType.TOKEN_INVALID, f"SAML response is not readable: {e}", "SAML_RESPONSE_MALFORMED"
            )

        try:
            response.check_status()
        except OneLogin_Saml2_ValidationError as e:
            if e.code == OneLogin_Saml2_ValidationError.STATUS_CODE_IS_NOT_SUCCESS:
                raise AuthenticationError(
                    AuthErrorType.CREDENTIALS_INVALID,
                    f"Identity provider returned an error status: {e}",
                    "SAML_STATUS_ERROR",
                )
            raise AuthenticationError(AuthErrorType.TOKEN_INVALID, str(e), "SAML_RESPONSE_MALFORMED")

        if not response.validate_num_assertions():
            raise AuthenticationError(
                AuthErrorType.TOKEN_INVALID,
                "SAML response must carry exactly one assertion",
                "SAML_NO_ASSERTION",
            )
        return response

    def _verify_signature(
        self, response: OneLogin_Saml2_Response, name: str, config: SamlProviderConfig
    ) -> None:
        """Fail closed: signing enabled means a verified signature is required

        Raises:
            AuthenticationError: TOKEN_INVALID/SAML_SIGNATURE_UNVERIFIED when
                no certificate is configured, SAML_SIGNATURE_INVALID when the
                signature is missing or does not verify
        """
        if not config.signing_enabled:
            logger.warning(f"SAML signature checks are disabled for {name}")
            return

        if not config.certificate:
            logger.error(f"SAML response from {name} rejected: no IdP certificate configured")
            raise AuthenticationError(
                AuthErrorType.TOKEN_INVALID,
                f"No certificate configured to verify {name} responses",
                "SAML_SIGNATURE_UNVERIFIED",
            )

        try:
            response.is_valid(self._request_data(), raise_exceptions=True)
        except (OneLogin_Saml2_ValidationError, OneLogin_Saml2_Error) as e:
            raise AuthenticationError(
                AuthErrorType.TOKEN_INVALID,
                f"SAML signature rejected: {e}",
                "SAML_SIGNATURE_INVALID",
            )

    def read_assertion(self, response: OneLogin_Saml2_Response) -> SamlAssertion:
        """Extract the fields this provider validates and maps

        Raises:
            AuthenticationError: TOKEN_INVALID for a missing or unreadable
                validity window or issuer
        """
        conditions = OneLogin_Saml2_XML.query(response.document, CONDITIONS_XPATH)
        if not conditions or not conditions[0].get("NotOnOrAfter"):
            raise AuthenticationError(
                AuthErrorType.TOKEN_INVALID, "Assertion has no validity window", "SAML_MISSING_CONDITIONS"
            )

        try:
            issuers = response.get_issuers()
            not_on_or_after = parse_saml_time(conditions[0].get("NotOnOrAfter"))
            not_before = conditions[0].get("NotBefore")
            not_before = parse_saml_time(not_before) if not_before else None
        except (OneLogin_Saml2_ValidationError, ValueError) as e:
            raise AuthenticationError(
                AuthErrorType.TOKEN_INVALID, f"Invalid assertion: {e}", "SAML_RESPONSE_MALFORMED"
            )

        in_response_to = response.get_in_response_to()
        if not in_response_to:
            confirmation = OneLogin_Saml2_XML.query(response.document, CONFIRMATION_XPATH)
            in_response_to = confirmation[0].get("InResponseTo") if confirmation else None

        attributes = {
            name: [value for value in values if isinstance(value, str)]
            for name, values in response.get_attributes().items()
        }

        return SamlAssertion(
            id=response.get_assertion_id() or "",
            issuers=issuers,
            subject=(response.get_nameid() or "").strip(),
            not_before=not_before,
            not_on_or_after=not_on_or_after,
            in_response_to=in_response_to,
            session_index=response.get_session_index(),
            audiences=response.get_audiences(),
            attributes=attributes,
        )

    def validate_time_window(
        self,
        assertion: SamlAssertion,
        config: SamlProviderConfig,
        now: Optional[datetime] = None
    ) -> None:
        """Reject assertions outside [notBefore - skew, notOnOrAfter)

        Raises:
            AuthenticationError: TOKEN_EXPIRED/SAML_ASSERTION_INVALID_TIME
        """
        now = now or self.now()
        skew = timedelta(seconds=config.allowed_clock_skew)
        if assertion.not_before is not None and now < assertion.not_before - skew:
            raise AuthenticationError(
                AuthErrorType.TOKEN_EXPIRED,
                "SAML assertion is not yet valid",
                "SAML_ASSERTION_INVALID_TIME",
            )
        if now >= assertion.not_on_or_after:
            raise AuthenticationError(
                AuthErrorType.TOKEN_EXPIRED,
                "SAML assertion has expired",
                "SAML_ASSERTION_INVALID_TIME",
            )

    def _consume_request(
        self, assertion: SamlAssertion, name: str, config: SamlProviderConfig
    ) -> None:
        if assertion.in_response_to is None:
            if not config.allow_unsolicited:
                raise AuthenticationError(
                    AuthErrorType.TOKEN_INVALID,
                    "Unsolicited SAML responses are not accepted",
                    "SAML_UNSOLICITED_RESPONSE",
                )
            return

        pending = self.pending.pop(assertion.in_response_to)
        if pending is None or pending.provider_name != name:
            raise AuthenticationError(
                AuthErrorType.TOKEN_INVALID,
                "SAML response does not answer an outstanding request",
                "SAML_UNKNOWN_REQUEST",
            )

    async def _build_session(
        self,
        creds: AuthCredentials,
        config: SamlProviderConfig,
        assertion: SamlAssertion
    ) -> AuthSession:
        mapped = self.map_attributes(assertion.attributes, config.attribute_mapping)
        email = mapped.get("email") or (assertion.subject if "@" in assertion.subject else "")
        groups = mapped.get("groups", [])

        now = self.now()
        self._name_id = assertion.subject
        self._session_index = assertion.session_index

        return AuthSession(
            user=AuthUser(
                id=assertion.subject or assertion.id,
                email=email,
                username=email or assertion.subject,
                roles=groups,
                permissions=map_groups_to_permissions(groups, SAML_TIERS),
                profile={
                    "firstName": mapped.get("firstName", ""),
                    "lastName": mapped.get("lastName", ""),
                },
            ),
            token=AuthToken(
                access_token=creds.saml_response,
                expires_at=assertion.not_on_or_after,
                token_type="SAML",
                scope=["sso"],
            ),
            provider=self.provider_type,
            created_at=now,
            expires_at=assertion.not_on_or_after,
            metadata={
                "provider": creds.provider,
                "assertionId": assertion.id,
                "issuer": assertion.issuer,
                "sessionIndex": assertion.session_index,
                "relayState": creds.relay_state,
                "ipAddress": await self.client_ip(creds),
                "userAgent": creds.user_agent or "unknown",
            },
        )

    @staticmethod
    def map_attributes(
        attributes: Mapping[str, list[str]], mapping: Mapping[str, str]
    ) -> Dict[str, Any]:
        """Map IdP attribute names to email/firstName/lastName/groups

        Groups collect every value (comma-separated values are split);
        other keys take the first value.
        """
        mapped: Dict[str, Any] = {}
        for key, attribute_name in mapping.items():
            values = attributes.get(attribute_name, [])
            if key == "groups":
                mapped["groups"] = [
                    group.strip() for value in values for group in value.split(",") if group.strip()
                ]
            elif values:
                mapped[key] = values[0]
        return mapped

    async def register(self, credentials: Credentials) -> AuthResult:
        return self.unsupported("Registration", "SAML_REGISTER_NOT_SUPPORTED")

    async def activate(self, code: str) -> AuthResult:
        return self.unsupported("Activation", "SAML_ACTIVATE_NOT_SUPPORTED")

    def resume(self, session: AuthSession) -> None:
        """Rebind to a stored SAML session so single logout can name it"""
        super().resume(session)
        self.current_provider = session.metadata.get("provider")
        self._name_id = session.user.id
        self._session_index = session.metadata.get("sessionIndex")

    def reset_caller_state(self) -> None:
        super().reset_caller_state()
        self._clear()

    @auth_boundary("SAML_SIGNOUT_ERROR")
    async def signout(self) -> AuthResult:
        """LOGOUT: redirect to the IdP's SLO endpoint when it has one.

        With an SLO endpoint the local session stays in place until
        complete_logout() receives the IdP's LogoutResponse.
        """
        if not self.current_provider:
            return AuthResult.ok()

        config = self.providers.get(self.current_provider)
        if config is not None and config.slo_url:
            logout_url = self._logout_redirect(self.current_provider, config)
            return AuthResult.ok({"logoutUrl": logout_url}, logoutUrl=logout_url)

        logger.info(f"SAML local signout from {self.current_provider}")
        self._clear()
        return AuthResult.ok()

    def _logout_redirect(self, name: str, config: SamlProviderConfig) -> str:
        now = self.now()
        auth = OneLogin_Saml2_Auth(self._request_data(), self._settings_for(config))
        logout_url = auth.logout(
            name_id=self._name_id,
            session_index=self._session_index,
            name_id_format=config.name_id_format,
        )
        request_id = auth.get_last_request_id()

        self.pending.put(
            PendingRequest(
                id=request_id,
                provider_name=name,
                issuer=self.sp_entity_id,
                destination=config.slo_url,
                issued_at=now,
                expires_at=self.pending.expiry_for(now),
            )
        )
        logger.info(f"SAML LogoutRequest {request_id} issued for {name}")
        return logout_url

    @auth_boundary("SAML_SIGNOUT_ERROR")
    async def complete_logout(self, saml_response: str) -> AuthResult:
        """Finish single logout with the IdP's LogoutResponse"""
        config = self.providers.get(self.current_provider or "")
        if config is None:
            return AuthResult.fail(
                AuthErrorType.VALIDATION_ERROR, "No SAML session to log out", "SAML_NO_ACTIVE_SESSION"
            )

        try:
            response = OneLogin_Saml2_Logout_Response(self._settings_for(config), saml_response)
        except Exception as e:
            raise AuthenticationError(
                AuthErrorType.TOKEN_INVALID, f"LogoutResponse is not readable: {e}", "SAML_RESPONSE_MALFORMED"
            )
        if response.document.tag != LOGOUT_RESPONSE_TAG:
            raise AuthenticationError(
                AuthErrorType.TOKEN_INVALID, "Not a LogoutResponse", "SAML_RESPONSE_MALFORMED"
            )
        if self.pending.pop(response.get_in_response_to() or "") is None:
            raise AuthenticationError(
                AuthErrorType.TOKEN_INVALID,
                "LogoutResponse does not answer an outstanding request",
                "SAML_UNKNOWN_REQUEST",
            )
        if response.get_status() != OneLogin_Saml2_Constants.STATUS_SUCCESS:
            raise AuthenticationError(
                AuthErrorType.SERVER_ERROR,
                f"Identity provider refused logout: {response.get_status()}",
                "SAML_LOGOUT_FAILED",
            )
        self._clear()
        return AuthResult.ok()

    def _clear(self) -> None:
        self.current_session = None
        self.current_provider = None
        self._name_id = None
        self._session_index = None

    async def refresh_token(self) -> AuthResult:
        return self.unsupported("Token refresh", "SAML_REFRESH_NOT_SUPPORTED")

    async def validate_session(self) -> AuthResult:
        result = self.validation_result()
        if not result.data:
            self.current_provider = None
        return result

    def get_metadata(self, name: str) -> str:
        """Service provider metadata document for one IdP

        Raises:
            KeyError: If name is not a configured IdP
            ValueError: If the generated metadata does not validate
        """
        config = self.providers[name]
        settings = self._settings_for(config)
        metadata = settings.get_sp_metadata()
        if isinstance(metadata, bytes):
            metadata = metadata.decode("utf-8")
        errors = settings.validate_metadata(metadata)
        if errors:
            raise ValueError(f"Invalid SAML metadata: {errors}")
        return metadata

    def configure(self, config: Mapping[str, Any]) -> None:
        """Merge IdP records and options (providers, sp_entity_id, acs_url)"""
        for key, value in config.items():
            if key == "providers":
                for name, partial in value.items():
                    existing = self.providers.get(name)
                    self.providers[name] = (
                        existing.merged(partial) if existing is not None
                        else SamlProviderConfig.model_validate(partial)
                    )
            elif key == "sp_entity_id":
                self.sp_entity_id = value
            elif key == "acs_url":
                self.acs_url = value
            elif key == "pending_request_ttl":
                self.pending.ttl = timedelta(seconds=float(value))
            else:
                raise ValueError(f"Unknown SAML option: {key}")

    def get_capabilities(self) -> list[str]:
        return [
            "saml_authentication",
            "saml_2_0_web_sso",
            "enterprise_sso",
            "metadata_exchange",
            "assertion_validation",
            "single_logout",
            "multi_idp_support",
        ]

    async def _check_health(self) -> tuple[bool, str, dict]:
        self.pending.sweep()
        unverifiable = sorted(
            name for name, config in self.providers.items()
            if config.signing_enabled and not config.certificate
        )
        metadata = {
            "providers": sorted(self.providers),
            "pendingRequests": len(self.pending),
            "missingCertificates": unverifiable,
        }
        if not self.providers:
            return False, "No SAML identity providers configured", metadata
        return True, "SAML provider operational", metadata
