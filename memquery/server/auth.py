"""API key check for the memquery-server session and stats routes."""

import hmac
import logging

from fastapi import HTTPException, Request, Security
from fastapi.security import APIKeyHeader

from memquery.server.config import settings

logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-Memquery-Key"

_api_key_header = APIKeyHeader(name=API_KEY_HEADER, auto_error=False)


def _accepted_keys() -> list[str]:
    # MEMQUERY_API_KEY may list several comma-separated keys during rotation
    return [key.strip() for key in settings.api_key.split(",") if key.strip()]


async def require_auth(
    request: Request,
    api_key: str | None = Security(_api_key_header),
) -> None:
    """Reject requests without a configured key. No keys configured = open server."""
    keys = _accepted_keys()
    if not keys:
        return

    if not api_key:
        raise HTTPException(status_code=401, detail=f"Missing {API_KEY_HEADER} header")

    presented = api_key.encode()
    matched = False
    for key in keys:
        # every key is compared so timing does not reveal which one matched
        matched |= hmac.compare_digest(presented, key.encode())
    if not matched:
        logger.warning("Rejected API key for %s %s", request.method, request.url.path)
        raise HTTPException(status_code=403, detail="Invalid API key")
