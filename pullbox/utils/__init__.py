"""
Utility functions package.
"""
from pullbox.utils.security import (
    create_session_token,
    decode_session_token,
    generate_link_code,
    generate_upload_key,
)

__all__ = [
    "create_session_token",
    "decode_session_token",
    "generate_link_code",
    "generate_upload_key",
]
