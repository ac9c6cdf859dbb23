from __future__ import annotations

import copy
import logging
from typing import Any, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from ..orm_models import DEFAULT_PREFERENCES, UserORM, UserRole
from .access import (
    ensure_project_manager_tier,
    ensure_self_or_administrator,
    ensure_self_or_project_manager_tier,
    is_administrator,
    parse_user_role,
)
from .errors import AccessDenied, Conflict, ResourceNotFound
from .paging import paginate, validate_page

logger = logging.getLogger(__name__)

DIRECTORY_DENIED = "Only administrators and project managers can browse the user directory"


def get_user(session: Session, user_id: str) -> UserORM:
    user = session.get(UserORM, user_id)
    if user is None:
        raise ResourceNotFound(f"User not found with ID: {user_id}")
    return user


def get_visible_user(session: Session, actor: UserORM, user_id: str) -> UserORM:
    ensure_self_or_project_manager_tier(actor, user_id)
    return get_user(session, user_id)


def list_users(
    session: Session,
    actor: UserORM,
    *,
    role: UserRole | str | None = None,
    search: Optional[str] = None,
    page: int = 0,
    size: int = 20,
) -> tuple[list[UserORM], int]:
    ensure_project_manager_tier(actor, DIRECTORY_DENIED)
    page, size = validate_page(page, size)
    stmt = select(UserORM).order_by(UserORM.full_name, UserORM.email)
    if role:
        stmt = stmt.where(UserORM.role == parse_user_role(role))
    if search and search.strip():
        pattern = f"%{search.strip().lower()}%"
        stmt = stmt.where(
            or_(
                func.lower(UserORM.full_name).like(pattern),
                func.lower(UserORM.email).like(pattern),
            )
        )
    return paginate(session, stmt, page, size)


def users_by_role(session: Session, actor: UserORM, role: UserRole | str) -> list[UserORM]:
    ensure_project_manager_tier(actor, DIRECTORY_DENIED)
    resolved = parse_user_role(role)
    return list(
        session.execute(
            select(UserORM).where(UserORM.role == resolved).order_by(UserORM.full_name)
        ).scalars()
    )


def active_users(session: Session, actor: UserORM) -> list[UserORM]:
    ensure_project_manager_tier(actor, DIRECTORY_DENIED)
    return list(
        session.execute(
            select(UserORM).where(UserORM.is_active.is_(True)).order_by(UserORM.full_name)
        ).scalars()
    )


def assignable_users(session: Session) -> list[UserORM]:
    return list(
        session.execute(
            select(UserORM)
            .where(UserORM.is_active.is_(True))
            .where(UserORM.role != UserRole.ADMIN)
            .order_by(UserORM.full_name)
        ).scalars()
    )


def count_by_role(session: Session, actor: UserORM, role: UserRole | str) -> int:
    ensure_project_manager_tier(actor, DIRECTORY_DENIED)
    resolved = parse_user_role(role)
    return session.execute(
        select(func.count(UserORM.id)).where(UserORM.role == resolved)
    ).scalar_one()


def count_active(session: Session, actor: UserORM) -> int:
    ensure_project_manager_tier(actor, DIRECTORY_DENIED)
    return session.execute(
        select(func.count(UserORM.id)).where(UserORM.is_active.is_(True))
    ).scalar_one()


def update_user(
    session: Session,
    actor: UserORM,
    user_id: str,
    *,
    email: Optional[str] = None,
    full_name: Optional[str] = None,
    role: UserRole | str | None = None,
    is_active: Optional[bool] = None,
) -> UserORM:
    ensure_self_or_administrator(actor, user_id)
    user = get_user(session, user_id)

    if (role is not None or is_active is not None) and not is_administrator(actor):
        logger.warning("User %s tried to change role or activity of %s", actor.email, user.email)
        raise AccessDenied("Only administrators can change roles or account status")

    if email is not None:
        normalized = email.strip().lower()
        if normalized != user.email:
            clash = session.execute(select(UserORM.id).where(UserORM.email == normalized)).first()
            if clash is not None:
                raise Conflict("Email is already registered", details={"email": normalized})
            user.email = normalized
    if full_name is not None and full_name.strip():
        user.full_name = full_name.strip()
    if role is not None:
        user.role = parse_user_role(role)
    if is_active is not None:
        user.is_active = is_active

    session.flush()
    logger.info("Updated user %s by %s", user.id, actor.email)
    return user


def get_preferences(session: Session, actor: UserORM, user_id: str) -> dict[str, Any]:
    ensure_self_or_administrator(actor, user_id)
    user = get_user(session, user_id)
    if not user.preferences:
        return copy.deepcopy(DEFAULT_PREFERENCES)
    return dict(user.preferences)


def _merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def update_preferences(
    session: Session,
    actor: UserORM,
    user_id: str,
    preferences: dict[str, Any],
) -> dict[str, Any]:
    current = get_preferences(session, actor, user_id)
    user = get_user(session, user_id)
    # Assign a new dict so the JSON column is flagged dirty.
    user.preferences = _merge(current, preferences)
    session.flush()
    return dict(user.preferences)
