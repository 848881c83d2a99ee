"""Authentication errors and the result boundary.

Provider internals raise AuthenticationError; the auth_boundary decorator
converts anything raised inside a public provider coroutine into a failed
AuthResult, so callers only ever see the envelope.
"""

import functools
import logging
from typing import Any, Awaitable, Callable

import httpx

from multiauth.domain.models import AuthErrorType, AuthResult

logger = logging.getLogger(__name__)


class AuthenticationError(Exception):
    """Authentication failed.

    Attributes:
        error_type: Taxonomy entry reported to the caller
        code: Machine-readable reason (e.g. LDAP_AUTH_FAILED)
    """

    def __init__(self, error_type: AuthErrorType, message: str, code: str):
        super().__init__(message)
        self.error_type = error_type
        self.message = message
        self.code = code

    def to_result(self) -> AuthResult:
        return AuthResult.fail(self.error_type, self.message, self.code)


def auth_boundary(failure_code: str) -> Callable:
    """Convert exceptions raised by a provider coroutine into AuthResults.

    - AuthenticationError keeps its own type and code
    - httpx.HTTPError (transport or status failure) becomes SERVER_ERROR
    - Any other exception is logged and becomes SERVER_ERROR

    Args:
        failure_code: Code reported for unclassified failures
    """

    def decorator(func: Callable[..., Awaitable[AuthResult]]) -> Callable[..., Awaitable[AuthResult]]:
        @functools.wraps(func)
        async def wrapper(self: Any, *args: Any, **kwargs: Any) -> AuthResult:
            operation = f"{type(self).__name__}.{func.__name__}"
            try:
                return await func(self, *args, **kwargs)
            except AuthenticationError as e:
                logger.warning(f"{operation} rejected: {e.code}: {e.message}")
                return e.to_result()
            except httpx.HTTPError as e:
                logger.error(f"{operation} network failure: {e}")
                return AuthResult.fail(
                    AuthErrorType.SERVER_ERROR,
                    f"Network error: {e}",
                    failure_code,
                )
            except Exception as e:
                logger.error(f"{operation} failed: {e}", exc_info=True)
                return AuthResult.fail(
                    AuthErrorType.SERVER_ERROR,
                    f"{operation} failed: {e}",
                    failure_code,
                )

        return wrapper

    return decorator
