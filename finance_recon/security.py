"""JWT verification for request authentication.

Tokens are issued by the identity service; this service only verifies them.
"""

from typing import Any

import jwt

from finance_recon.config import settings
from finance_recon.logger import get_logger

logger = get_logger(__name__)


def decode_access_token(token: str) -> dict[str, Any] | None:
    """Decode and validate a JWT access token."""
    try:
        return jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        logger.debug("JWT token expired")
        return None
    except jwt.PyJWTError as exc:
        logger.warning(
            "JWT decode failed",
            error=str(exc),
            error_type=type(exc).__name__,
        )
        return None
