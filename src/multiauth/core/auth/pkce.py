"""PKCE and CSRF state generation (RFC 7636).

The challenge is base64url(SHA256(verifier)) without padding, so any
verifier can be re-derived into the challenge placed in the
authorization URL.
"""

import base64
import hashlib
import secrets

CODE_CHALLENGE_METHOD = "S256"

# token_urlsafe(96) yields 128 characters, the RFC 7636 maximum
VERIFIER_BYTES = 96
STATE_BYTES = 32


def generate_state() -> str:
    """Random CSRF state parameter"""
    return secrets.token_urlsafe(STATE_BYTES)


def generate_code_verifier() -> str:
    """Random PKCE code verifier (43-128 unreserved characters)"""
    return secrets.token_urlsafe(VERIFIER_BYTES)


def code_challenge(verifier: str) -> str:
    """S256 code challenge for a verifier"""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
