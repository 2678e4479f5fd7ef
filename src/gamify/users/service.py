"""User directory operations and privileged role commands."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog
from sqlalchemy import select

from gamify.db.models import User
from gamify.errors import NotFound, ValidationError

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = structlog.get_logger()

ROLES: tuple[str, ...] = ("user", "manager", "admin")


async def get_user(db: AsyncSession, user_id: int) -> User:
    """
    Load a user by id.

    Raises:
        NotFound: If no such user exists.
    """
    user = await db.get(User, user_id)
    if user is None:
        msg = f"User {user_id} not found"
        raise NotFound(msg)
    return user


async def create_user(
    db: AsyncSession,
    name: str,
    email: str | None = None,
    department: str | None = None,
    role: str = "user",
) -> User:
    """Create a user row (admin / test setup)."""
    if not name or not name.strip():
        msg = "User name is required"
        raise ValidationError(msg)
    if role not in ROLES:
        msg = f"Unknown role {role!r}"
        raise ValidationError(msg)
    user = User(name=name.strip(), email=email, department=department or None, role=role)
    db.add(user)
    await db.flush()
    return user


async def set_role(db: AsyncSession, user_id: int, role: str) -> User:
    """Promote or demote a user. Administrative only; not part of the event path."""
    if role not in ROLES:
        msg = f"Unknown role {role!r}"
        raise ValidationError(msg)
    user = await get_user(db, user_id)
    old_role = user.role
    user.role = role
    await db.flush()
    logger.info("user_role_changed", user_id=user_id, old_role=old_role, new_role=role)
    return user


async def list_departments(db: AsyncSession) -> list[str]:
    """All distinct non-empty departments, sorted."""
    result = await db.execute(
        select(User.department).distinct().where(User.department.isnot(None))
    )
    return sorted(d for d in result.scalars().all() if d)
