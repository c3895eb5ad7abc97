"""Authentication dependencies for API user scoping."""

from dataclasses import dataclass
import logging
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from services.errors import AuthError
from services.security_log import log_security_event
from services.session_token import decode_session_token


auth_scheme = HTTPBearer(auto_error=False)
logger = logging.getLogger(__name__)


@dataclass
class AuthContext:
    user_id: str
    email: Optional[str] = None


def resolve_user_scope(auth_user_id: str, supplied_user_id: Optional[str]) -> str:
    """Return the authenticated user_id; a conflicting explicit value is ignored."""
    if supplied_user_id and supplied_user_id != auth_user_id:
        logger.warning(
            "Ignoring user_id=%s that does not match authenticated user %s",
            supplied_user_id,
            auth_user_id,
        )
    return auth_user_id


async def get_auth_context(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    """Resolve authenticated user from Bearer session token."""
    if not credentials or credentials.scheme.lower() != "bearer":
        log_security_event("unauthorized", "high", request=request, reason="missing bearer token")
        raise AuthError("Missing Bearer session token.")

    try:
        payload = decode_session_token(credentials.credentials)
    except ValueError as exc:
        log_security_event("unauthorized", "high", request=request, reason=str(exc))
        raise AuthError(str(exc)) from exc

    return AuthContext(
        user_id=str(payload.get("sub", "")),
        email=str(payload.get("email", "")) or None,
    )
