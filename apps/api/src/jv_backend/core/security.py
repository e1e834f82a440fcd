"""
Token verification helpers for the auth gate.

Tokens are issued by the login handlers (outside this package); this
module only verifies them.
"""

import logging
from typing import Any

from jose import JWTError, jwt

from jv_backend.core.config import settings

logger = logging.getLogger(__name__)


def decode_token(token: str) -> dict[str, Any] | None:
    """
    Decode and verify a signed access token.

    Args:
        token: Encoded JWT string

    Returns:
        The token payload, or None if the signature, algorithm or expiry
        check fails.
    """
    try:
        return jwt.decode(
            token,
            settings.effective_jwt_secret,
            algorithms=[settings.jwt_algorithm],
        )
    except JWTError as e:
        logger.debug(f"Token rejected: {e}")
        return None
