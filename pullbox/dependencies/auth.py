"""
Authentication and request-scoped dependencies for FastAPI.
"""
import logging
from typing import AsyncGenerator, Optional

import httpx
from fastapi import Depends, Header, HTTPException, Query, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from pullbox.config import get_settings
from pullbox.schemas.credential import OwnerIdentity
from pullbox.utils.security import decode_session_token, secrets_match

logger = logging.getLogger("pullbox.auth")

# HTTP Bearer token security scheme
security = HTTPBearer(auto_error=False)


async def get_current_owner(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> OwnerIdentity:
    """
    Dependency to get the authenticated owner from the session JWT.

    Args:
        credentials: Bearer token from request header

    Returns:
        OwnerIdentity (id, email, name)

    Raises:
        HTTPException: If token is missing, invalid, expired or for another audience
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    if not credentials:
        logger.warning("Auth failed", extra={"event": "auth", "reason": "no_token"})
        raise credentials_exception

    owner = decode_session_token(credentials.credentials)

    if owner is None:
        logger.warning("Auth failed", extra={"event": "auth", "reason": "invalid_or_expired_token"})
        raise credentials_exception

    return owner


async def verify_upload_gate(
    x_upload_token: Optional[str] = Header(None, alias="X-Upload-Token"),
    token: Optional[str] = Query(None),
) -> None:
    """
    Optional shared-secret gate for the public upload endpoint.
    Disabled when UPLOAD_GATE_SECRET is empty.
    """
    secret = get_settings().upload_gate_secret
    if not secret:
        return

    if not secrets_match(x_upload_token or token, secret):
        logger.warning("Upload gate rejected", extra={"event": "auth", "reason": "upload_gate"})
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid upload token",
        )


async def get_http_client() -> AsyncGenerator[httpx.AsyncClient, None]:
    """
    Dependency that provides an outbound HTTP client for provider calls.
    Overridden in tests with a MockTransport-backed client.
    """
    settings = get_settings()
    async with httpx.AsyncClient(timeout=settings.provider_timeout_seconds) as client:
        yield client
