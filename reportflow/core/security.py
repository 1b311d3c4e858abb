"""API-key guard for the monitoring and cancellation endpoints."""

import logging
import secrets

from fastapi import Depends
from fastapi import HTTPException
from fastapi import Request
from fastapi.security import APIKeyHeader

from reportflow.core.config import settings

logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-API-Key"

# auto_error=False: a missing header is rejected below with the same 403 as a wrong one
api_key_header = APIKeyHeader(name=API_KEY_HEADER, auto_error=False)


async def verify_api_key(request: Request, key: str | None = Depends(api_key_header)) -> bool:
    """FastAPI dependency letting a request through only with the configured API key.

    Raises:
        HTTPException: 403 when the server has no key configured, or the header
                       is missing or does not match.
    """
    if not settings.api_key:
        logger.critical(
            "No API_KEY configured: request registry endpoints are locked. Refusing %s %s",
            request.method,
            request.url.path,
        )
        raise HTTPException(status_code=403, detail="Invalid API Key")

    if key is None or not secrets.compare_digest(key.encode(), settings.api_key.encode()):
        logger.warning(
            "Rejected %s %s: %s API key",
            request.method,
            request.url.path,
            "missing" if key is None else "wrong",
        )
        raise HTTPException(status_code=403, detail="Invalid API Key")
    return True
