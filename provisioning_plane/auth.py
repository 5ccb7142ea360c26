"""Admin API-key authentication for FastAPI routes."""

import hmac
import logging
from typing import Callable, List

from fastapi import HTTPException, Request

logger = logging.getLogger(__name__)


def extract_bearer_token(request: Request) -> str:
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return ""
    return token.strip()


def is_valid_key(token: str, keys: List[str]) -> bool:
    return any(hmac.compare_digest(token.encode(), key.encode()) for key in keys)


def admin_key_dependency(keys: List[str]) -> Callable:
    """Build a dependency that admits requests carrying one of the admin keys."""

    async def require_admin(request: Request) -> str:
        if not keys:
            raise HTTPException(status_code=503, detail="Admin API keys not configured")
        token = extract_bearer_token(request)
        if not token:
            raise HTTPException(status_code=401, detail="Missing or invalid authorization header")
        if not is_valid_key(token, keys):
            logger.warning(f"Rejected admin request from {request.client.host if request.client else 'unknown'}")
            raise HTTPException(status_code=403, detail="Invalid or inactive API key")
        return token

    return require_admin
