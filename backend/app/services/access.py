"""Role and membership based access decisions.

Every service consults this module before reading or mutating project
scoped data. The checks always hit the database so that role and
membership changes apply to the very next request.
"""

from __future__ import annotations

import logging
from typing import NoReturn, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..orm_models import ELEVATED_MEMBER_ROLES, MemberRole, ProjectMemberORM, ProjectORM, UserORM, UserRole
from .errors import AccessDenied, ValidationFailed
from .validation import parse_choice

logger = logging.getLogger(__name__)

ROLE_PREFIX = "ROLE_"

PROJECT_MANAGER_TIER = frozenset({UserRole.ADMIN, UserRole.PROJECT_MANAGER})
TEAM_MEMBER_TIER = frozenset(UserRole)
# Global roles allowed to start projects and hand out tasks.
LEAD_TIER = frozenset({UserRole.ADMIN, UserRole.PROJECT_MANAGER, UserRole.TEAM_LEAD})


# === Principal resolver =====================================================

def resolve_principal(session: Session, login: str | None) -> UserORM:
    if not login:
        raise AccessDenied("User not authenticated")
    user = session.execute(
        select(UserORM).where(UserORM.email == login.strip().lower())
    ).scalars().first()
    if user is None:
        raise AccessDenied("User not found")
    if not user.is_active:
        raise AccessDenied("User account is deactivated")
    return user


def require_principal(principal: Optional[UserORM]) -> UserORM:
    if principal is None or not principal.is_active:
        raise AccessDenied("User not authenticated")
    return principal


# === Role classifier ========================================================

def parse_user_role(value: UserRole | str) -> UserRole:
    if isinstance(value, UserRole):
        return value
    normalized = str(value).strip().upper()
    if normalized.startswith(ROLE_PREFIX):
        normalized = normalized[len(ROLE_PREFIX):]
    try:
        return UserRole(normalized)
    except ValueError:
        raise ValidationFailed(
            f"Invalid role: {value}",
            details={"allowed": [role.value for role in UserRole]},
        ) from None


def parse_member_role(value: MemberRole | str) -> MemberRole:
    if isinstance(value, str) and value.strip().upper().startswith(ROLE_PREFIX):
        value = value.strip()[len(ROLE_PREFIX):]
    return parse_choice(MemberRole, value, "member role")


def _role_of(principal: Optional[UserORM]) -> Optional[UserRole]:
    if principal is None or not principal.is_active:
        return None
    return principal.role


def is_administrator(principal: Optional[UserORM]) -> bool:
    return _role_of(principal) == UserRole.ADMIN


def is_project_manager_tier(principal: Optional[UserORM]) -> bool:
    return _role_of(principal) in PROJECT_MANAGER_TIER


def is_team_member_tier(principal: Optional[UserORM]) -> bool:
    return _role_of(principal) in TEAM_MEMBER_TIER


def is_lead_tier(principal: Optional[UserORM]) -> bool:
    return _role_of(principal) in LEAD_TIER


# === Membership lookup ======================================================

def get_member(session: Session, project_id: str, user_id: str) -> Optional[ProjectMemberORM]:
    return session.execute(
        select(ProjectMemberORM)
        .where(ProjectMemberORM.project_id == project_id)
        .where(ProjectMemberORM.user_id == user_id)
    ).scalar_one_or_none()


def find_member_role(session: Session, project_id: str, user_id: str) -> Optional[MemberRole]:
    """Project scoped role of a user, or ``None`` without a membership row.

    Administrators are not special cased here; callers check
    :func:`is_administrator` first.
    """
    return session.execute(
        select(ProjectMemberORM.role)
        .where(ProjectMemberORM.project_id == project_id)
        .where(ProjectMemberORM.user_id == user_id)
    ).scalar_one_or_none()


# === Access decisions =======================================================

def can_view_project(session: Session, project: ProjectORM, principal: Optional[UserORM]) -> bool:
    if principal is None or not principal.is_active:
        return False
    if is_administrator(principal):
        return True
    return find_member_role(session, project.id, principal.id) is not None


def can_edit_project(session: Session, project: ProjectORM, principal: Optional[UserORM]) -> bool:
    if principal is None or not principal.is_active:
        return False
    if is_administrator(principal):
        return True
    return find_member_role(session, project.id, principal.id) in ELEVATED_MEMBER_ROLES


def can_create_project(principal: Optional[UserORM]) -> bool:
    return is_lead_tier(principal)


def can_delete_resource(
    session: Session,
    project: ProjectORM,
    creator_id: Optional[str],
    principal: Optional[UserORM],
) -> bool:
    if principal is None or not principal.is_active:
        return False
    if creator_id is not None and creator_id == principal.id:
        return True
    return can_edit_project(session, project, principal)


def can_create_or_update_resource(principal: Optional[UserORM]) -> bool:
    return is_team_member_tier(principal)


def can_assign_task(principal: Optional[UserORM]) -> bool:
    return is_lead_tier(principal)


def _deny(reason: str, principal: Optional[UserORM], **details: object) -> NoReturn:
    logger.warning(
        "Access denied for %s: %s",
        principal.email if principal is not None else "<anonymous>",
        reason,
    )
    raise AccessDenied(reason, details={key: value for key, value in details.items() if value is not None} or None)


def ensure_can_view_project(session: Session, project: ProjectORM, principal: Optional[UserORM]) -> None:
    require_principal(principal)
    if not can_view_project(session, project, principal):
        _deny(
            "Access denied. You are not a member of this project",
            principal,
            projectId=project.id,
        )


def ensure_can_edit_project(session: Session, project: ProjectORM, principal: Optional[UserORM]) -> None:
    require_principal(principal)
    if not can_edit_project(session, project, principal):
        _deny(
            "Only project managers and team leads of this project can modify it",
            principal,
            projectId=project.id,
        )


def ensure_can_create_project(principal: Optional[UserORM]) -> None:
    require_principal(principal)
    if not can_create_project(principal):
        _deny("Insufficient permissions to create projects", principal)


def ensure_can_delete_resource(
    session: Session,
    project: ProjectORM,
    creator_id: Optional[str],
    principal: Optional[UserORM],
    *,
    resource: str,
) -> None:
    require_principal(principal)
    if not can_delete_resource(session, project, creator_id, principal):
        _deny(
            f"Only the author or a project manager or team lead can delete this {resource}",
            principal,
            projectId=project.id,
        )


def ensure_can_create_or_update_resource(principal: Optional[UserORM], *, resource: str) -> None:
    require_principal(principal)
    if not can_create_or_update_resource(principal):
        _deny(f"Insufficient permissions to modify {resource}", principal)


def ensure_can_assign_task(principal: Optional[UserORM]) -> None:
    require_principal(principal)
    if not can_assign_task(principal):
        _deny("Only PROJECT_MANAGER and TEAM_LEAD can assign tasks", principal)


def ensure_administrator(principal: Optional[UserORM], reason: str = "Administrator role required") -> None:
    require_principal(principal)
    if not is_administrator(principal):
        _deny(reason, principal)


def ensure_self_or_administrator(principal: Optional[UserORM], user_id: str) -> None:
    require_principal(principal)
    if principal.id != user_id and not is_administrator(principal):
        _deny("You can only access your own account", principal, userId=user_id)


def ensure_project_manager_tier(principal: Optional[UserORM], reason: str = "Project manager role required") -> None:
    require_principal(principal)
    if not is_project_manager_tier(principal):
        _deny(reason, principal)


def ensure_self_or_project_manager_tier(principal: Optional[UserORM], user_id: str) -> None:
    require_principal(principal)
    if principal.id != user_id and not is_project_manager_tier(principal):
        _deny("You can only view your own profile", principal, userId=user_id)
