"""Authentication Routes

Purpose: HTTP surface over the AuthOrchestrator

Session endpoints act on the session named by the request cookie. Every
endpoint answers with the AuthResult envelope
({"success", "data", "error", "metadata"}); the status code reflects the
error taxonomy.

Key Endpoints:
- POST /auth/{provider_type}/login: Authenticate (or begin a redirect flow)
- GET /auth/oauth/callback: OAuth2 authorization-code callback
- POST /auth/saml/acs: SAML assertion consumer service
- GET /auth/saml/metadata/{provider_name}: Service provider metadata
- GET /auth/session: Current session
- POST /auth/session/refresh: Extend the current session
- POST /auth/signout: Sign out the calling session
- GET /auth/providers/{provider_type}/capabilities: Feature detection
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, Response, status
from fastapi.responses import JSONResponse

from multiauth.core.auth import AuthOrchestrator, SamlProvider
from multiauth.domain.models import AuthErrorType, AuthResult, ProviderType

router = APIRouter(prefix="/auth", tags=["authentication"])
logger = logging.getLogger(__name__)

ERROR_STATUS = {
    AuthErrorType.VALIDATION_ERROR: status.HTTP_400_BAD_REQUEST,
    AuthErrorType.UNKNOWN_ERROR: status.HTTP_400_BAD_REQUEST,
    AuthErrorType.CREDENTIALS_INVALID: status.HTTP_401_UNAUTHORIZED,
    AuthErrorType.TOKEN_EXPIRED: status.HTTP_401_UNAUTHORIZED,
    AuthErrorType.TOKEN_INVALID: status.HTTP_401_UNAUTHORIZED,
    AuthErrorType.SERVER_ERROR: status.HTTP_502_BAD_GATEWAY,
}


def get_orchestrator(request: Request) -> AuthOrchestrator:
    """Orchestrator created by the application lifespan"""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Authentication service is starting up",
        )
    return orchestrator


def get_caller(
    request: Request, orchestrator: AuthOrchestrator = Depends(get_orchestrator)
) -> AuthOrchestrator:
    """Orchestrator scoped to the session cookie this request presents"""
    cookie_name = orchestrator.session_manager.config.cookie_name
    return orchestrator.for_caller(request.cookies.get(cookie_name))


def request_context(request: Request) -> Dict[str, Optional[str]]:
    """Client address and user agent recorded in session metadata"""
    return {
        "ipAddress": request.client.host if request.client else None,
        "userAgent": request.headers.get("user-agent"),
    }


def envelope(result: AuthResult, orchestrator: AuthOrchestrator) -> JSONResponse:
    """Render an AuthResult with its status code and session cookie"""
    status_code = status.HTTP_200_OK
    headers = {}
    if not result.success:
        status_code = ERROR_STATUS.get(result.error.type, status.HTTP_400_BAD_REQUEST)
        if result.error.code == "AUTH_RATE_LIMITED":
            status_code = status.HTTP_429_TOO_MANY_REQUESTS
            headers["Retry-After"] = str(result.metadata.get("retryAfterSeconds", 0))

    response = JSONResponse(
        status_code=status_code,
        content=result.model_dump(mode="json", by_alias=True),
        headers=headers,
    )
    cookie = orchestrator.session_manager.cookie_header()
    if result.success and cookie:
        response.headers.append("set-cookie", cookie)
    return response


@router.post("/{provider_type}/login")
async def login(
    provider_type: str,
    request: Request,
    credentials: Optional[Dict[str, Any]] = Body(None),
    orchestrator: AuthOrchestrator = Depends(get_caller),
):
    """Authenticate with the selected provider.

    For OAuth and SAML without a code or assertion, the result is a pending
    session whose metadata carries the redirect URL. The client address and
    user agent are taken from the request, never from the body.
    """
    payload = {**(credentials or {}), **request_context(request)}
    result = await orchestrator.authenticate(provider_type, payload)
    return envelope(result, orchestrator)


@router.get("/oauth/callback")
async def oauth_callback(
    request: Request,
    code: str = Query(..., description="Authorization code from provider"),
    state: str = Query(..., description="CSRF protection state"),
    provider: str = Query(..., description="Configured OAuth provider name"),
    code_verifier: Optional[str] = Query(None, description="PKCE code verifier"),
    orchestrator: AuthOrchestrator = Depends(get_caller),
):
    """Complete the OAuth2 authorization-code flow"""
    logger.info(f"OAuth callback for {provider} (state={state[:8]}...)")
    payload = {
        **request_context(request),
        "provider": provider,
        "authorizationCode": code,
        "state": state,
        "codeVerifier": code_verifier,
    }
    result = await orchestrator.authenticate(ProviderType.OAUTH, payload)
    return envelope(result, orchestrator)


@router.post("/saml/acs")
async def saml_acs(
    request: Request,
    provider: str = Query(..., description="Configured SAML identity provider name"),
    saml_response: str = Body(..., embed=True, alias="SAMLResponse"),
    relay_state: Optional[str] = Body(None, embed=True, alias="RelayState"),
    orchestrator: AuthOrchestrator = Depends(get_caller),
):
    """Consume a SAML response relayed by the browser"""
    payload = {
        **request_context(request),
        "provider": provider,
        "samlResponse": saml_response,
        "relayState": relay_state,
    }
    result = await orchestrator.authenticate(ProviderType.SAML, payload)
    return envelope(result, orchestrator)


@router.get("/saml/metadata/{provider_name}")
async def saml_metadata(
    provider_name: str,
    orchestrator: AuthOrchestrator = Depends(get_orchestrator),
):
    """Service provider metadata for one identity provider"""
    saml = orchestrator.registry.get(ProviderType.SAML)
    if not isinstance(saml, SamlProvider) or provider_name not in saml.providers:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown SAML identity provider: {provider_name}",
        )
    return Response(content=saml.get_metadata(provider_name), media_type="application/samlmetadata+xml")


@router.get("/session")
async def current_session(orchestrator: AuthOrchestrator = Depends(get_caller)):
    """Current session after re-validation"""
    session = await orchestrator.get_current_session()
    if session is None:
        result = AuthResult.fail(
            AuthErrorType.TOKEN_INVALID, "No active session", "SESSION_NOT_FOUND"
        )
    else:
        result = AuthResult.ok(session)
    return envelope(result, orchestrator)


@router.post("/session/refresh")
async def refresh_session(orchestrator: AuthOrchestrator = Depends(get_caller)):
    result = await orchestrator.refresh_session()
    return envelope(result, orchestrator)


@router.post("/signout")
async def signout(orchestrator: AuthOrchestrator = Depends(get_caller)):
    result = await orchestrator.global_signout()
    response = envelope(result, orchestrator)
    response.delete_cookie(orchestrator.session_manager.config.cookie_name)
    return response


@router.get("/providers/{provider_type}/capabilities")
async def provider_capabilities(
    provider_type: str,
    orchestrator: AuthOrchestrator = Depends(get_orchestrator),
):
    try:
        capabilities = orchestrator.get_capabilities(provider_type)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except KeyError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No provider registered for {provider_type}",
        )
    return {"provider": provider_type, "capabilities": capabilities}
