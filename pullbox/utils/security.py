"""
Security utility functions for session JWT verification and share-link codes.
"""
import secrets
import string
import uuid
from datetime import datetime, timedelta
from typing import Optional

from jose import JWTError, jwt

from pullbox.config import get_settings
from pullbox.schemas.credential import OwnerIdentity

settings = get_settings()

# 공유 링크 코드 문자 집합 (대문자 + 숫자)
LINK_CODE_ALPHABET = string.ascii_uppercase + string.digits


def create_session_token(
    owner_id: str,
    email: Optional[str] = None,
    full_name: Optional[str] = None,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """
    Create a session JWT in the identity provider's format.

    Sessions are normally issued by the identity provider; this is used for
    local development and tests.

    Args:
        owner_id: Subject (owner id)
        email: Optional email claim
        full_name: Optional ``user_metadata.full_name`` claim
        expires_delta: Optional expiration time delta (default 1 hour)

    Returns:
        Encoded JWT token string
    """
    if expires_delta is None:
        expires_delta = timedelta(hours=1)

    to_encode = {
        "sub": owner_id,
        "aud": settings.session_jwt_audience,
        "exp": datetime.utcnow() + expires_delta,
    }
    if email:
        to_encode["email"] = email
    if full_name:
        to_encode["user_metadata"] = {"full_name": full_name}

    return jwt.encode(
        to_encode,
        settings.session_jwt_secret,
        algorithm=settings.session_jwt_algorithm,
    )


def decode_session_token(token: str) -> Optional[OwnerIdentity]:
    """
    Decode and validate an owner session JWT.

    Args:
        token: JWT token string

    Returns:
        OwnerIdentity if valid, None if invalid, expired or for another audience
    """
    try:
        payload = jwt.decode(
            token,
            settings.session_jwt_secret,
            algorithms=[settings.session_jwt_algorithm],
            audience=settings.session_jwt_audience,
        )
    except JWTError:
        return None

    owner_id = payload.get("sub")
    if not owner_id:
        return None

    metadata = payload.get("user_metadata") or {}
    return OwnerIdentity(
        id=str(owner_id),
        email=payload.get("email"),
        name=metadata.get("full_name") if isinstance(metadata, dict) else None,
    )


def generate_link_code(length: Optional[int] = None) -> str:
    """
    Generate a random share-link code.

    Args:
        length: Code length (default ``link_code_length`` setting)

    Returns:
        Uppercase alphanumeric code
    """
    if length is None:
        length = settings.link_code_length
    return "".join(secrets.choice(LINK_CODE_ALPHABET) for _ in range(length))


def generate_upload_key() -> str:
    """Generate an idempotency key for one uploaded file."""
    return uuid.uuid4().hex


def secrets_match(provided: Optional[str], expected: str) -> bool:
    """Constant-time comparison for shared secrets."""
    if not provided:
        return False
    return secrets.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))
