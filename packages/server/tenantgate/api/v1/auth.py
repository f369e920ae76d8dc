"""
Authentication endpoints.

POST /api/v1/auth/register — Create a principal (email/password)
POST /api/v1/auth/login    — Issue a JWT session and load the tenant context
POST /api/v1/auth/logout   — Revoke the session and forget the tenant context
GET  /api/v1/auth/me       — The authenticated principal
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, Response
from sqlalchemy.ext.asyncio import AsyncSession

from tenantgate_shared.schemas.users import (
    LoginRequest,
    LoginResponse,
    RegisterRequest,
    UserResponse,
)

from tenantgate.context import open_tenant_context
from tenantgate.core.auth import (
    Principal,
    create_jwt,
    generate_csrf_token,
    get_principal,
    revoke_jwt,
)
from tenantgate.core.config import get_settings
from tenantgate.core.database import get_session, set_rls_principal
from tenantgate.core.errors import ContextSuperseded, ContextUnavailable
from tenantgate.core.middleware import CSRF_COOKIE
from tenantgate.services import users as user_service

log = structlog.get_logger()
settings = get_settings()
router = APIRouter()

COOKIE_KWARGS = {
    "httponly": True,
    "secure": settings.secure_cookies,
    "samesite": "lax",
    "path": "/",
    "max_age": settings.jwt_expire_minutes * 60,
}


def _set_session_cookies(response: Response, token: str, csrf: str) -> None:
    """Set the session JWT and CSRF cookies on a response."""
    response.set_cookie(key=settings.session_cookie_name, value=token, **COOKIE_KWARGS)
    response.set_cookie(
        key=CSRF_COOKIE,
        value=csrf,
        httponly=False,  # JS must read this
        secure=settings.secure_cookies,
        samesite="lax",
        path="/",
        max_age=settings.jwt_expire_minutes * 60,
    )


@router.post("/register", response_model=UserResponse, status_code=201)
async def register(
    body: RegisterRequest,
    session: AsyncSession = Depends(get_session),
):
    """Register a principal. New principals belong to no organisation until invited."""
    user = await user_service.register_user(body, session)
    return UserResponse.model_validate(user)


@router.post("/login", response_model=LoginResponse)
async def login(
    body: LoginRequest,
    response: Response,
    session: AsyncSession = Depends(get_session),
):
    """Authenticate with email/password, receive a session and the initial tenant context."""
    user = await user_service.authenticate_user(body.email, body.password, session)
    token, jti = create_jwt(user.id)
    _set_session_cookies(response, token, generate_csrf_token())

    principal = Principal(user=user, session_id=jti)
    await set_rls_principal(session, user.id)
    context = await open_tenant_context(principal, session)
    try:
        await context.initialise()
    except (ContextUnavailable, ContextSuperseded):
        # The session is valid; the client retries GET /context.
        pass

    log.info("auth.login", user_id=str(user.id), context_state=context.state.value)
    return LoginResponse(
        user=UserResponse.model_validate(user),
        access_token=token,
        context=context.snapshot(),
    )


@router.post("/logout", status_code=204)
async def logout(
    response: Response,
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
):
    """Revoke the session, drop the overlay, persisted selection and cached reads."""
    await revoke_jwt(principal.session_id)
    context = await open_tenant_context(principal, session)
    await context.logout()
    response.delete_cookie(settings.session_cookie_name, path="/")
    response.delete_cookie(CSRF_COOKIE, path="/")
    log.info("auth.logout", user_id=str(principal.user_id))


@router.get("/me", response_model=UserResponse)
async def me(principal: Principal = Depends(get_principal)):
    return UserResponse.model_validate(principal.user)
