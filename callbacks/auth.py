"""Authentication dependency for the realtime admin endpoints.

Behavior matrix:
  ADMIN_API_KEY set + valid token   → allow
  ADMIN_API_KEY set + wrong/missing → 401 Unauthorized
  ADMIN_API_KEY empty + DEBUG=true  → allow (local dev convenience)
  ADMIN_API_KEY empty + DEBUG=false → 403 Forbidden (locked in production)
"""

from __future__ import annotations

import logging

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from callbacks.config import settings

log = logging.getLogger("callbacks.auth")

_bearer_scheme = HTTPBearer(auto_error=False)


async def require_admin_token(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> None:
    """FastAPI dependency — protect admin endpoints with a bearer token."""
    key = settings.admin_api_key

    if not key:
        if settings.debug:
            return  # Local dev
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin API key not configured. Set ADMIN_API_KEY in .env.",
        )

    if credentials is None or credentials.credentials != key:
        log.warning("Rejected admin request with %s token", "no" if credentials is None else "a wrong")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing admin token.",
            headers={"WWW-Authenticate": "Bearer"},
        )
