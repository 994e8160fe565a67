"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

The access token is read from two places, in priority order:
  1. JWT cookie ("access_token") -- set by the login and refresh routes.
  2. Authorization: Bearer <token> header -- API clients.

get_auth_service() returns the AuthService wired into app.state at startup.
get_current_user_id() verifies the access token and returns its subject; it
raises HTTP 401 on any failure and logs the internal reason.

Layer rule: auth/dependencies.py may import from fastapi (Depends/HTTPException/
Request) because it is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

import logging

from fastapi import HTTPException, Request

from auth.errors import UnauthorizedError
from auth.service import AuthService

logger = logging.getLogger("keyturn.auth")

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def extract_access_token(request: Request) -> str | None:
    """Return the raw access token from the cookie or Bearer header, if any."""
    token: str | None = request.cookies.get(ACCESS_COOKIE)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]
    return token or None


def get_current_user_id(request: Request) -> str:
    """Require a valid access token. Raises HTTP 401 otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user_id: str = Depends(get_current_user_id)): ...
    """
    token = extract_access_token(request)
    if token is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    service = get_auth_service(request)
    try:
        claims = service.issuer.verify_access(token)
    except UnauthorizedError as exc:
        logger.warning("Access token rejected: %s", exc.reason.value)
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        ) from exc
    return claims.subject
