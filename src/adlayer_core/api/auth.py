"""API-key guard shared by every adlayer route."""
import logging
import secrets
from typing import Annotated

from fastapi import HTTPException, Security, status
from fastapi.security import APIKeyHeader

from ..config import Settings


logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-ADLAYER-API-KEY"

api_key_header = APIKeyHeader(name=API_KEY_HEADER, auto_error=False)


async def require_api_key(
    api_key: Annotated[str | None, Security(api_key_header)] = None
) -> str:
    """Check the caller's key against ADLAYER_API_KEY.

    The key is re-read on every request so rotation needs no restart.

    Raises:
        HTTPException: 503 when no key is configured, 401 when the header
            is missing or does not match
    """
    expected = Settings.from_env().api_key
    if not expected:
        logger.error("ADLAYER_API_KEY is not configured; rejecting request")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="API key not configured",
        )

    if not api_key or not secrets.compare_digest(api_key, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
            headers={"WWW-Authenticate": "API-Key"},
        )
    return api_key
