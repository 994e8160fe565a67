"""
api/routes/v1/auth.py -- Authentication and profile REST endpoints.

Routes:
  POST /api/v1/auth/register   -- create account; 201 with sanitized user
  POST /api/v1/auth/login      -- password login; sets access + refresh cookies
  POST /api/v1/auth/refresh    -- rotate refresh token; sets new cookies
  POST /api/v1/auth/logout     -- revoke refresh token, clear cookies (requires auth)
  GET  /api/v1/auth/profile    -- current user (requires auth)
  PUT  /api/v1/auth/profile    -- update email and/or name (requires auth)

All handlers are plain `def`, so FastAPI runs them on its threadpool and
bcrypt / JWT work never blocks the event loop.

Errors: handlers let auth.errors.AuthError propagate; api/main.py maps each
error code to a status and the shared error envelope. UnauthorizedError
always becomes the same generic 401 regardless of its internal reason.

Security:
  [C1] Login goes through AuthService.login() -> CredentialValidator.verify(),
       which equalizes timing for unknown emails. Never inline a lookup here.
  [M5] Cache-Control: no-store on every response that carries tokens.
"""

from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse

from api.models import (
    LoginRequest,
    LoginResponse,
    MessageResponse,
    ProfileUpdate,
    RefreshRequest,
    RegisterRequest,
    TokenResponse,
    UserEnvelope,
    UserResponse,
)
from auth.dependencies import ACCESS_COOKIE, REFRESH_COOKIE, get_auth_service, get_current_user_id
from auth.errors import UnauthorizedError, UnauthorizedReason
from auth.models import TokenPair
from auth.service import AuthService

# Auth policy:
# - POST /auth/register, /auth/login, /auth/refresh: public
# - POST /auth/logout, GET/PUT /auth/profile:        require a valid access token
router = APIRouter()


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def _max_age(expires_at: datetime) -> int:
    return max(0, int((expires_at - datetime.now(timezone.utc)).total_seconds()))


def set_token_cookies(response: Response, pair: TokenPair, secure: bool) -> None:
    """Write both tokens as httpOnly cookies whose max_age matches the token expiry.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST -- CSRF mitigation.
    secure: only sent over HTTPS when SECURE_COOKIES=true.
    """
    response.set_cookie(
        ACCESS_COOKIE,
        value=pair.access_token,
        httponly=True,
        samesite="lax",
        secure=secure,
        max_age=_max_age(pair.access_expires_at),
        path="/",
    )
    response.set_cookie(
        REFRESH_COOKIE,
        value=pair.refresh_token,
        httponly=True,
        samesite="lax",
        secure=secure,
        max_age=_max_age(pair.refresh_expires_at),
        path="/",
    )
    response.headers["Cache-Control"] = "no-store"  # [M5]


def clear_token_cookies(response: Response, secure: bool) -> None:
    for name in (ACCESS_COOKIE, REFRESH_COOKIE):
        response.delete_cookie(name, path="/", httponly=True, samesite="lax", secure=secure)


def _secure(request: Request) -> bool:
    return request.app.state.settings.secure_cookies


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=UserEnvelope, status_code=201)
def register(body: RegisterRequest, service: AuthService = Depends(get_auth_service)) -> UserEnvelope:
    """Create an account. Returns the sanitized user -- never the hash or tokens."""
    user = service.register(body.email, body.password, body.name)
    return UserEnvelope(user=UserResponse.from_public(user), message="Registration successful")


@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest, service: AuthService = Depends(get_auth_service)) -> JSONResponse:
    """Authenticate with email and password; set access and refresh cookies.

    Wrong email and wrong password produce the same 401 body.
    """
    result = service.login(body.email, body.password)
    content = LoginResponse(
        **TokenResponse.from_pair(result.tokens, message="Login successful").model_dump(),
        user=UserResponse.from_public(result.user),
    )
    resp = JSONResponse(status_code=200, content=content.model_dump(mode="json"))
    set_token_cookies(resp, result.tokens, _secure(request))
    return resp


@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(
    request: Request,
    body: RefreshRequest | None = None,
    service: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    """Exchange the refresh token (body first, then cookie) for a new pair."""
    token = (body.refresh_token if body else None) or request.cookies.get(REFRESH_COOKIE)
    if not token:
        raise UnauthorizedError(UnauthorizedReason.MALFORMED)
    pair = service.refresh(token)
    content = TokenResponse.from_pair(pair, message="Token refreshed successfully")
    resp = JSONResponse(status_code=200, content=content.model_dump(mode="json"))
    set_token_cookies(resp, pair, _secure(request))
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=MessageResponse)
def logout(
    request: Request,
    user_id: str = Depends(get_current_user_id),
    service: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    """Revoke the stored refresh token and clear both cookies."""
    service.logout(user_id)
    resp = JSONResponse(content=MessageResponse(message="Logout successful").model_dump())
    clear_token_cookies(resp, _secure(request))
    return resp


@router.get("/auth/profile", response_model=UserEnvelope)
def get_profile(
    user_id: str = Depends(get_current_user_id),
    service: AuthService = Depends(get_auth_service),
) -> UserEnvelope:
    return UserEnvelope(user=UserResponse.from_public(service.get_profile(user_id)))


@router.put("/auth/profile", response_model=UserEnvelope)
def update_profile(
    body: ProfileUpdate,
    user_id: str = Depends(get_current_user_id),
    service: AuthService = Depends(get_auth_service),
) -> UserEnvelope:
    """Update email and/or name. Email must stay unique across users."""
    user = service.update_profile(user_id, email=body.email, name=body.name)
    return UserEnvelope(user=UserResponse.from_public(user), message="Profile updated successfully")
