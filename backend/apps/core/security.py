"""
Core security - bearer authentication for API endpoints.

Identity tokens are HS256 JWTs minted by the upstream auth service with the
user id in ``sub`` (or the legacy ``userId`` claim) and the marketplace side
in ``userType``.
"""

import jwt
from django.conf import settings
from django.http import HttpRequest
from ninja.security import HttpBearer

from apps.core.auth import Audience, AuthContext
from apps.core.exceptions import AuthenticationFailed
from apps.core.logging import bind_contextvars, get_logger

logger = get_logger(__name__)

# Legacy user types still present in older tokens
_AUDIENCE_ALIASES = {
    "owner": Audience.OWNER,
    "landlord": Audience.OWNER,
    "tenant": Audience.TENANT,
}


def decode_identity_token(token: str) -> AuthContext:
    """
    Decode and verify an upstream identity token.

    Raises:
        AuthenticationFailed: If the token is invalid, expired or incomplete
    """
    try:
        claims = jwt.decode(
            token,
            settings.AUTH_JWT_SECRET,
            algorithms=[settings.AUTH_JWT_ALGORITHM],
        )
    except jwt.ExpiredSignatureError:
        raise AuthenticationFailed("Token has expired") from None
    except jwt.InvalidTokenError:
        raise AuthenticationFailed("Invalid token") from None

    user_id = claims.get("sub") or claims.get("userId")
    audience = _AUDIENCE_ALIASES.get(str(claims.get("userType", "")).lower())
    if not user_id or audience is None:
        raise AuthenticationFailed("Token is missing user identity")

    return AuthContext(user_id=str(user_id), audience=audience)


class BearerAuth(HttpBearer):
    """
    Bearer token authentication for API endpoints.

    Returns an AuthContext which django-ninja stores on ``request.auth``.
    """

    def authenticate(self, request: HttpRequest, token: str) -> AuthContext | None:
        if not token:
            return None
        try:
            context = decode_identity_token(token)
        except AuthenticationFailed as e:
            logger.info("bearer_auth_rejected", reason=e.message)
            return None

        bind_contextvars(**{"usr.id": context.user_id, "usr.audience": context.audience.value})
        return context


def get_auth_context(request: HttpRequest) -> AuthContext:
    """
    Get the authenticated identity or raise 401.

    Use this in endpoints to get a properly typed AuthContext.
    """
    context = getattr(request, "auth", None)
    if not isinstance(context, AuthContext):
        raise AuthenticationFailed()
    return context
