"""Optional bearer-key check for the convoy HTTP surface.

Approving a manual job can start a production deploy, so a server reachable
from outside a trusted network should set ``CONVOY_API_KEY``. Every router
endpoint then needs ``Authorization: Bearer <key>``; ``/health`` stays open
for liveness checks. An empty value still counts as configured, so a blank secret
locks the API instead of opening it.
"""

from __future__ import annotations

import logging
import os
import secrets

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

logger = logging.getLogger(__name__)

API_KEY_ENV = "CONVOY_API_KEY"

_bearer = HTTPBearer(auto_error=False)


def api_key_configured() -> bool:
    return os.environ.get(API_KEY_ENV) is not None


def _unauthorized(request: Request, detail: str) -> HTTPException:
    logger.warning(
        "Rejected %s %s from %s: %s",
        request.method,
        request.url.path,
        request.client.host if request.client else "unknown",
        detail,
    )
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def require_api_key(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer),
) -> bool:
    """Router dependency: pass when no key is configured or the bearer token matches."""
    expected = os.environ.get(API_KEY_ENV)
    if expected is None:
        return True
    if credentials is None:
        raise _unauthorized(request, f"{API_KEY_ENV} is set; send 'Authorization: Bearer <key>'")
    if not secrets.compare_digest(credentials.credentials.encode(), expected.encode()):
        raise _unauthorized(request, "Invalid API key")
    return True
