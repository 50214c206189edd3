"""
Service API key check for mutating endpoints (uploads, clip and dub requests,
asset deletion). Read-only endpoints stay open.
"""

import logging
import secrets
from typing import Optional

from fastapi import Header, HTTPException, status

from sermonclips.config import get_settings

logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-API-Key"


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": API_KEY_HEADER},
    )


async def verify_api_key(
    x_api_key: Optional[str] = Header(None, alias=API_KEY_HEADER),
) -> None:
    """
    FastAPI dependency comparing the X-API-Key header with API_KEY.

    With no API_KEY configured every request passes (local development).

    Raises:
        HTTPException: 401 when the header is absent or does not match
    """
    configured = get_settings().api_key
    if not configured:
        logger.debug("API_KEY not configured, request accepted without a key")
        return

    if not x_api_key:
        logger.warning(f"Rejected request without {API_KEY_HEADER} header")
        raise _unauthorized("Missing API key")

    if not secrets.compare_digest(x_api_key.encode(), configured.encode()):
        logger.warning(f"Rejected request with a wrong {API_KEY_HEADER}")
        raise _unauthorized("Invalid API key")
