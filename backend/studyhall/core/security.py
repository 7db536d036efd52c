"""
Caller identity.

The booking core does not log anyone in. Registered users arrive with a JWT
issued by the identity provider; we only verify it and read the subject.
Guests arrive without a token. Admin tooling is guarded by a shared key.
"""

import hmac
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from studyhall.core.config import get_settings

bearer_scheme = HTTPBearer(auto_error=False)


def decode_user_id(token: str) -> str:
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    subject = payload.get("sub")
    if not subject:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has no subject",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return str(subject)


def create_access_token(user_id: str) -> str:
    """Mint a token the same way the identity provider does. Used by tests and tooling."""
    settings = get_settings()
    return jwt.encode({"sub": user_id}, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


async def get_optional_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Optional[str]:
    """User id from a bearer token, or None for guest checkout."""
    if credentials is None:
        return None
    return decode_user_id(credentials.credentials)


async def require_admin(x_admin_key: Optional[str] = Header(default=None)) -> None:
    settings = get_settings()
    if not x_admin_key or not hmac.compare_digest(x_admin_key, settings.ADMIN_API_KEY):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin key required",
        )
