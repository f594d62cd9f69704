"""
Authentication dependencies.

Users live in the external auth provider; a verified token is enough to
identify the caller, so no user table is consulted here.
"""
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from core.exceptions import UnauthorizedError
from core.security import decode_access_token

# Use auto_error=False to handle missing credentials manually and return 401 (not 403)
security = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class CurrentUser:
    id: str
    email: Optional[str] = None


def _user_from_token(token: str) -> CurrentUser:
    payload = decode_access_token(token)
    if not payload:
        raise UnauthorizedError("Invalid auth token")

    user_id = str(payload.get("sub") or "").strip()
    if not user_id:
        raise UnauthorizedError("Invalid token payload")

    email = payload.get("email")
    return CurrentUser(id=user_id, email=str(email) if email else None)


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> CurrentUser:
    """
    Get the current authenticated user from the bearer token.

    Raises 401 if the token is missing or invalid.
    """
    if not credentials:
        raise UnauthorizedError("Missing auth token")
    return _user_from_token(credentials.credentials)


def get_optional_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Optional[CurrentUser]:
    """Like get_current_user, but anonymous callers get None instead of 401."""
    if not credentials:
        return None
    return _user_from_token(credentials.credentials)
