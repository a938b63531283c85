"""
Request authentication for the mutating clip endpoints.

Keys come from CLIPFORGE_API_KEY, a comma-separated list so an old key can
keep working while clients move to a new one. With no keys configured every
request is let through (local development).
"""

import hmac
import logging
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import APIKeyHeader

from clipforge.config import Settings, get_settings

logger = logging.getLogger(__name__)


API_KEY_HEADER = "X-Clipforge-API-Key"

# auto_error=False: a missing header is only an error when keys are configured
api_key_header = APIKeyHeader(name=API_KEY_HEADER, auto_error=False)


def accepted_api_keys(settings: Settings) -> list[str]:
    if not settings.clipforge_api_key:
        return []
    return [key.strip() for key in settings.clipforge_api_key.split(",") if key.strip()]


def _reject(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": API_KEY_HEADER},
    )


async def verify_api_key(
    presented: Optional[str] = Depends(api_key_header),
    settings: Settings = Depends(get_settings),
) -> None:
    """
    Require a configured API key on the request.

    Raises:
        HTTPException: 401 if the header is missing or matches no key
    """
    keys = accepted_api_keys(settings)
    if not keys:
        return

    if not presented:
        logger.warning(f"Rejected request without {API_KEY_HEADER}")
        raise _reject("Missing API key")

    matched = False
    for key in keys:
        matched |= hmac.compare_digest(presented.encode("utf-8"), key.encode("utf-8"))
    if not matched:
        logger.warning("Rejected request with an unknown API key")
        raise _reject("Invalid API key")
