"""
Security utilities for user tokens.

User sessions are issued by the auth provider as HS256 JWTs; this service
only verifies them. `create_access_token` exists for tooling and tests.

SECURITY REQUIREMENTS:
- SECRET_KEY must be set via environment variable
- SECRET_KEY must be cryptographically secure (32+ characters)
- SECRET_KEY must NEVER be committed to source control
"""
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict
from jose import JWTError, jwt
from core.config import settings

SECRET_KEY = settings.SECRET_KEY

# Validate SECRET_KEY strength at module load
if len(SECRET_KEY) < 32:
    raise ValueError(
        "SECRET_KEY must be at least 32 characters. "
        "Generate with: python -c \"import secrets; print(secrets.token_urlsafe(32))\""
    )

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 60


def create_access_token(data: Dict, expires_delta: Optional[timedelta] = None) -> str:
    """Create a JWT access token."""
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_access_token(token: str) -> Optional[Dict]:
    """Decode and validate a JWT token."""
    try:
        return jwt.decode(
            token,
            SECRET_KEY,
            algorithms=[ALGORITHM],
            # Provider tokens carry an audience we do not pin.
            options={"verify_aud": False},
        )
    except JWTError:
        return None
