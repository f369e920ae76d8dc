"""
Authentication for TenantGate.

Supports:
- Email/password login with bcrypt hashes
- JWT session cookies (or Bearer tokens) with a Redis revocation list
- The trusted principal handed to every authorization decision
"""

from __future__ import annotations

import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
import jwt
import structlog
from fastapi import Depends, Request
from fastapi.security import APIKeyHeader
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from tenantgate_shared.schemas.common import SystemRole

from tenantgate.core.config import get_settings
from tenantgate.core.database import get_session, set_rls_principal
from tenantgate.core.errors import Denied, NotAuthenticated
from tenantgate.core.redis import get_redis
from tenantgate.models.user import User

log = structlog.get_logger()
settings = get_settings()

authorization_header = APIKeyHeader(name="Authorization", auto_error=False)

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------

def hash_password(password: str) -> str:
    """Hash a password using bcrypt with cost factor 12."""
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt(rounds=12)).decode()


def verify_password(password: str, hashed: str) -> bool:
    """Verify a password against a bcrypt hash."""
    return bcrypt.checkpw(password.encode(), hashed.encode())


# ---------------------------------------------------------------------------
# JWT
# ---------------------------------------------------------------------------

def create_jwt(
    user_id: uuid.UUID,
    *,
    expires_delta: timedelta | None = None,
) -> tuple[str, str]:
    """Create a signed JWT. Returns (token, jti).

    The token carries identity only. Roles are re-read from the database on
    every request so a downgrade takes effect immediately.
    """
    jti = str(uuid.uuid4())
    now = datetime.now(timezone.utc)
    exp = now + (expires_delta or timedelta(minutes=settings.jwt_expire_minutes))
    payload = {
        "sub": str(user_id),
        "iat": now,
        "exp": exp,
        "jti": jti,
    }
    token = jwt.encode(payload, settings.secret_key, algorithm=settings.jwt_algorithm)
    return token, jti


def decode_jwt(token: str) -> dict:
    """Decode and verify a JWT. Raises jwt.PyJWTError on failure."""
    return jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])


# ---------------------------------------------------------------------------
# JWT Revocation (Redis)
# ---------------------------------------------------------------------------

async def revoke_jwt(jti: str, ttl_seconds: Optional[int] = None) -> None:
    """Add a JWT ID to the revocation list in Redis."""
    redis = await get_redis()
    await redis.setex(f"tg:jwt:revoked:{jti}", ttl_seconds or settings.jwt_expire_minutes * 60, "1")


async def is_jwt_revoked(jti: str) -> bool:
    """Check if a JWT ID has been revoked."""
    redis = await get_redis()
    return await redis.exists(f"tg:jwt:revoked:{jti}") > 0


# ---------------------------------------------------------------------------
# CSRF Token
# ---------------------------------------------------------------------------

def generate_csrf_token() -> str:
    """Generate a random CSRF token."""
    return secrets.token_urlsafe(32)


# ---------------------------------------------------------------------------
# Principal
# ---------------------------------------------------------------------------

class Principal:
    """The authenticated identity behind a request, plus its session id."""

    def __init__(self, user: User, session_id: str):
        self.user = user
        self.user_id = user.id
        self.email = user.email
        self.session_id = session_id
        self.system_role = user.role

    @property
    def is_system_admin(self) -> bool:
        return self.system_role == SystemRole.SYSTEM_ADMIN

    def __repr__(self) -> str:
        return f"Principal(user_id={self.user_id}, system_role={self.system_role.value})"


def _extract_token(request: Request, authorization: Optional[str]) -> Optional[str]:
    if authorization and authorization.startswith("Bearer "):
        return authorization[7:].strip()
    return request.cookies.get(settings.session_cookie_name)


async def authenticate_token(token: str, session: AsyncSession) -> Principal:
    """Resolve a session token to a principal, or raise NotAuthenticated."""
    try:
        payload = decode_jwt(token)
    except jwt.PyJWTError:
        raise NotAuthenticated("Invalid or expired session")

    jti = payload.get("jti")
    if not jti or await is_jwt_revoked(jti):
        raise NotAuthenticated("Session has been revoked")

    try:
        user_id = uuid.UUID(payload["sub"])
    except (KeyError, ValueError):
        raise NotAuthenticated("Invalid session subject")

    result = await session.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if not user:
        raise NotAuthenticated("User not found")
    return Principal(user=user, session_id=jti)


async def get_principal(
    request: Request,
    authorization: Optional[str] = Depends(authorization_header),
    session: AsyncSession = Depends(get_session),
) -> Principal:
    """Main authentication dependency: Bearer token first, then session cookie."""
    token = _extract_token(request, authorization)
    if not token:
        raise NotAuthenticated()

    principal = await authenticate_token(token, session)
    await set_rls_principal(session, principal.user_id)
    request.state.principal = principal
    structlog.contextvars.bind_contextvars(principal_id=str(principal.user_id))
    return principal


async def require_system_admin(
    principal: Principal = Depends(get_principal),
) -> Principal:
    """Requires the system_admin system role."""
    if not principal.is_system_admin:
        raise Denied("System administrator access required")
    return principal
