"""Security utilities for the admin backend.

Access tokens are issued by the platform's auth service; this backend only verifies them.
"""
import logging
from typing import Any, Dict, Optional

from jose import jwt, JWTError

from homeadmin.backend.core.config import get_web_settings

logger = logging.getLogger(__name__)


def decode_token(token: str) -> Optional[Dict[str, Any]]:
    """
    Decode and validate JWT token.

    Args:
        token: JWT token to decode

    Returns:
        Token payload if valid, None otherwise
    """
    settings = get_web_settings()

    try:
        return jwt.decode(
            token,
            settings.secret_key,
            algorithms=[settings.jwt_algorithm]
        )
    except JWTError as e:
        logger.debug("Token decode error: %s", e)
        return None
