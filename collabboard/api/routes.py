from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Cookie, Depends, Header, HTTPException, Path, Response

from collabboard.api.schemas import (
    AdminCreateRequest,
    AuthResponse,
    CleanupResponse,
    Envelope,
    LoginRequest,
    LogoutRequest,
    PasswordChangeRequest,
    RefreshResponse,
    RegisterRequest,
    TokenRefreshRequest,
    UpdateUserRoleRequest,
    UserResponse,
    UserStatusRequest,
)
from collabboard.logging import bind_request_user, get_logger
from collabboard.service.auth import AuthContext, AuthResult
from collabboard.service.errors import InvalidTokenError
from collabboard.service.runtime import get_runtime
from collabboard.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/api")

REFRESH_COOKIE = "refresh_token"
REFRESH_COOKIE_PATH = "/api/auth"
HEALTH_CHECK_TIMEOUT_SECONDS = 3


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    ctx = runtime.sessions.authenticate(authorization)
    bind_request_user(ctx.user_id, ctx.role)
    return ctx


async def get_admin_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    ctx = runtime.sessions.authenticate(authorization, required_role="admin")
    bind_request_user(ctx.user_id, ctx.role)
    return ctx


def _user_to_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        name=user.name,
        email=user.email,
        role=user.role,
        is_active=user.is_active,
        created_at=user.created_at,
        last_login=user.last_login,
    )


def _set_refresh_cookie(response: Response, refresh_token: str) -> None:
    settings = get_runtime().settings
    response.set_cookie(
        REFRESH_COOKIE,
        refresh_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="strict",
        max_age=settings.refresh_token_ttl_seconds,
        path=REFRESH_COOKIE_PATH,
    )


def _clear_refresh_cookie(response: Response) -> None:
    settings = get_runtime().settings
    response.delete_cookie(
        REFRESH_COOKIE,
        path=REFRESH_COOKIE_PATH,
        secure=settings.cookie_secure,
        httponly=True,
        samesite="strict",
    )


def _auth_envelope(result: AuthResult, response: Response) -> Envelope:
    runtime = get_runtime()
    _set_refresh_cookie(response, result.refresh_token)
    return Envelope(
        status="ok",
        data=AuthResponse(
            user=_user_to_response(result.user),
            access_token=result.access_token,
            refresh_token=result.refresh_token,
            expires_in=runtime.settings.access_token_ttl_seconds,
        ),
    )


# -- auth ---------------------------------------------------------------------


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, response: Response):
    """Create a new account and open its first session.

    Raises:
        409: If an account with this email already exists
    """
    runtime = get_runtime()
    result = await runtime.sessions.register(body.name, body.email, body.password)
    return _auth_envelope(result, response)


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    """Authenticate with email and password.

    Raises:
        401: If credentials are invalid
        403: If the account is deactivated
    """
    runtime = get_runtime()
    result = await runtime.sessions.login(body.email, body.password)
    return _auth_envelope(result, response)


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_token(
    body: Optional[TokenRefreshRequest] = Body(None),
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    """Exchange a stored refresh token for a new access token.

    The token is read from the JSON body when present, otherwise from the
    HttpOnly refresh cookie. The refresh token itself is not rotated.
    """
    presented = (body.refresh_token if body else None) or refresh_cookie
    if not presented:
        raise InvalidTokenError("refresh token required")
    runtime = get_runtime()
    result = await runtime.sessions.refresh(presented)
    return Envelope(
        status="ok",
        data=RefreshResponse(
            user=_user_to_response(result.user),
            access_token=result.access_token,
            expires_in=runtime.settings.access_token_ttl_seconds,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    response: Response,
    body: Optional[LogoutRequest] = Body(None),
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
    principal: AuthContext = Depends(get_user),
):
    presented = (body.refresh_token if body else None) or refresh_cookie
    runtime = get_runtime()
    await runtime.sessions.logout(principal.user_id, presented)
    _clear_refresh_cookie(response)
    return Envelope(status="ok", data={"message": "logged out"})


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(response: Response, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await runtime.sessions.logout_all(principal.user_id)
    _clear_refresh_cookie(response)
    return Envelope(status="ok", data={"message": "logged out from all devices"})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def get_current_user(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = runtime.sessions.get_profile(principal.user_id)
    return Envelope(status="ok", data=_user_to_response(user))


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    response: Response,
    principal: AuthContext = Depends(get_user),
):
    """Change the current user's password.

    Every refresh token the user holds is revoked, so all devices (this one
    included) must log in again once their access token lapses.
    """
    runtime = get_runtime()
    await runtime.sessions.change_password(
        principal.user_id, body.current_password, body.new_password
    )
    _clear_refresh_cookie(response)
    return Envelope(status="ok", data={"message": "password changed"})


# -- admin --------------------------------------------------------------------


@router.post("/admin/tokens/cleanup", response_model=Envelope, tags=["admin"])
async def admin_cleanup_tokens(principal: AuthContext = Depends(get_admin_user)):
    """Purge expired refresh tokens across all users right now."""
    runtime = get_runtime()
    report = await runtime.cleanup.manual_cleanup()
    logger.info("admin_token_cleanup", admin_id=principal.user_id)
    return Envelope(
        status="ok",
        data=CleanupResponse(
            users_affected=report.users_affected,
            total_tokens_removed=report.total_tokens_removed,
            users_scanned=report.users_scanned,
            failures=len(report.failures),
            message=report.message,
        ),
    )


@router.post("/admin/users/admin", response_model=Envelope, status_code=201, tags=["admin"])
async def admin_create_admin(
    body: AdminCreateRequest,
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    result = await runtime.sessions.create_admin(body.name, body.email, body.password)
    logger.info("admin_user_created", admin_id=principal.user_id, user_id=result.user.id)
    return Envelope(status="ok", data=_user_to_response(result.user))


@router.post("/admin/users/{user_id}/status", response_model=Envelope, tags=["admin"])
async def admin_set_user_status(
    body: UserStatusRequest,
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_user),
):
    """Activate or deactivate a user; deactivation also ends all their sessions."""
    if user_id == principal.user_id and not body.is_active:
        raise _http_error("validation_error", "cannot deactivate yourself", status_code=400)
    runtime = get_runtime()
    user = await runtime.sessions.set_user_active(user_id, body.is_active)
    return Envelope(status="ok", data=_user_to_response(user))


@router.post("/admin/users/{user_id}/role", response_model=Envelope, tags=["admin"])
async def admin_set_user_role(
    body: UpdateUserRoleRequest,
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    user = await runtime.sessions.set_user_role(user_id, body.role)
    return Envelope(status="ok", data=_user_to_response(user))


# -- health -------------------------------------------------------------------


@router.get("/health", tags=["health"])
async def health() -> Dict[str, Any]:
    return {"status": "ok", "service": "collabboard"}


@router.get("/health/ready", tags=["health"])
async def readiness(response: Response) -> Dict[str, Any]:
    """Report whether the credential store answers within the probe timeout."""
    runtime = get_runtime()
    store_ok = True
    try:
        await asyncio.wait_for(
            asyncio.to_thread(runtime.store.verify_connection),
            HEALTH_CHECK_TIMEOUT_SECONDS,
        )
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component="store")
        store_ok = False
    except Exception as exc:
        logger.error("health_check_store_failed", error=str(exc))
        store_ok = False
    if not store_ok:
        response.status_code = 503
    return {
        "status": "ready" if store_ok else "unavailable",
        "checks": {
            "store": {
                "status": "healthy" if store_ok else "unhealthy",
                "type": runtime.settings.store_backend.value,
            },
            "token_cleanup": {"running": runtime.cleanup.running},
        },
    }
