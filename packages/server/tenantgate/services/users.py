"""
Principal service: registration, password login and the system role.
"""

from __future__ import annotations

import uuid
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from tenantgate_shared.schemas.common import SystemRole
from tenantgate_shared.schemas.users import RegisterRequest

from tenantgate.core.audit import record_audit
from tenantgate.core.auth import Principal, hash_password, verify_password
from tenantgate.core.cache import mark_subject_stale
from tenantgate.core.errors import Conflict, Denied, NotAuthenticated, NotFound
from tenantgate.models.user import User

log = structlog.get_logger()


async def get_user_by_email(email: str, session: AsyncSession) -> Optional[User]:
    result = await session.execute(select(User).where(User.email == email.lower()))
    return result.scalar_one_or_none()


async def register_user(req: RegisterRequest, session: AsyncSession) -> User:
    """Create a principal with the ``user`` system role."""
    if await get_user_by_email(req.email, session):
        raise Conflict("An account with this email already exists")

    user = User(
        email=req.email.lower(),
        display_name=req.display_name,
        system_role=SystemRole.USER.value,
        password_hash=hash_password(req.password),
    )
    session.add(user)
    await session.flush()

    log.info("user.registered", user_id=str(user.id))
    return user


async def authenticate_user(email: str, password: str, session: AsyncSession) -> User:
    user = await get_user_by_email(email, session)
    if not user or not user.password_hash or not verify_password(password, user.password_hash):
        log.info("user.login_failed")
        raise NotAuthenticated("Invalid email or password")
    return user


async def set_system_role(
    user_id: uuid.UUID,
    role: SystemRole,
    actor: Principal,
    session: AsyncSession,
) -> User:
    """Change a principal's system role. Only system admins may do this."""
    if not actor.is_system_admin:
        raise Denied("System administrator access required")

    user = await session.get(User, user_id)
    if user is None:
        raise NotFound("User not found")
    if user.role is role:
        return user

    previous = user.system_role
    user.system_role = role.value
    session.add(user)
    await session.flush()
    mark_subject_stale(session, user.id)

    await record_audit(
        session,
        "user.system_role_changed",
        actor_id=actor.user_id,
        target_type="user",
        target_id=user.id,
        details={"from": previous, "to": role.value},
    )
    log.info("user.system_role_changed", user_id=str(user.id), role=role.value)
    return user
