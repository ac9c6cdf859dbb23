from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from .. import orm_models
from ..orm_models import MemberRole, ProjectStatus, UserORM
from ..schemas import Project, ProjectCreate, ProjectMember, ProjectMemberRequest, ProjectUpdate, UserSummary
from .access import (
    ensure_administrator,
    ensure_can_create_project,
    ensure_can_edit_project,
    ensure_can_view_project,
    get_member,
    is_administrator,
    parse_member_role,
)
from .errors import Conflict, ResourceNotFound, ValidationFailed
from .paging import paginate, validate_page
from .validation import ensure_date_order, parse_choice

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    created: int = 0
    updated: int = 0
    removed: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.created or self.updated or self.removed)


def serialize_member(member: orm_models.ProjectMemberORM) -> ProjectMember:
    return ProjectMember(
        userId=member.user_id,
        email=member.user.email,
        fullName=member.user.full_name,
        role=member.role,
        joinedAt=member.joined_at,
    )


def serialize_project(project: orm_models.ProjectORM) -> Project:
    members = sorted(project.members, key=lambda item: (item.joined_at, item.user.email))
    return Project(
        id=project.id,
        name=project.name,
        description=project.description,
        status=project.status,
        startDate=project.start_date,
        endDate=project.end_date,
        createdBy=UserSummary.model_validate(project.created_by),
        createdAt=project.created_at,
        updatedAt=project.updated_at,
        members=[serialize_member(member) for member in members],
        memberCount=len(members),
    )


def get_project(session: Session, project_id: str) -> orm_models.ProjectORM:
    project = session.get(orm_models.ProjectORM, project_id)
    if project is None:
        raise ResourceNotFound(f"Project not found with ID: {project_id}")
    return project


def get_visible_project(session: Session, actor: UserORM, project_id: str) -> orm_models.ProjectORM:
    project = get_project(session, project_id)
    ensure_can_view_project(session, project, actor)
    return project


def _get_user(session: Session, user_id: str) -> UserORM:
    user = session.get(UserORM, user_id)
    if user is None:
        raise ResourceNotFound(f"User not found with ID: {user_id}")
    return user


def _ensure_unique_name(session: Session, name: str, *, exclude_id: Optional[str] = None) -> None:
    stmt = select(orm_models.ProjectORM.id).where(func.lower(orm_models.ProjectORM.name) == name.lower())
    if exclude_id:
        stmt = stmt.where(orm_models.ProjectORM.id != exclude_id)
    if session.execute(stmt).first() is not None:
        raise Conflict(f"Project with name '{name}' already exists")


def _desired_members(
    session: Session,
    requests: Iterable[ProjectMemberRequest],
    *,
    skip_user_id: Optional[str] = None,
) -> dict[str, MemberRole]:
    desired: dict[str, MemberRole] = {}
    for request in requests:
        if skip_user_id and request.userId == skip_user_id:
            continue
        role = parse_member_role(request.role)
        _get_user(session, request.userId)
        desired[request.userId] = role
    return desired


def _flush_members(session: Session, project: orm_models.ProjectORM) -> None:
    try:
        session.flush()
    except IntegrityError as exc:
        logger.warning("Membership conflict on project %s: %s", project.id, exc.orig)
        raise Conflict("User is already a member of this project", details={"projectId": project.id}) from exc


def create_project(session: Session, actor: UserORM, payload: ProjectCreate) -> orm_models.ProjectORM:
    ensure_can_create_project(actor)
    logger.info("Creating project %r for %s", payload.name, actor.email)

    status = parse_choice(ProjectStatus, payload.status, "project status", default=ProjectStatus.ACTIVE)
    ensure_date_order(payload.startDate, payload.endDate)
    _ensure_unique_name(session, payload.name)
    desired = _desired_members(session, payload.members, skip_user_id=actor.id)

    project = orm_models.ProjectORM(
        name=payload.name,
        description=payload.description,
        status=status,
        start_date=payload.startDate,
        end_date=payload.endDate,
        created_by=actor,
    )
    project.members.append(orm_models.ProjectMemberORM(user=actor, role=MemberRole.PROJECT_MANAGER))
    for user_id, role in desired.items():
        project.members.append(orm_models.ProjectMemberORM(user_id=user_id, role=role))

    session.add(project)
    _flush_members(session, project)
    logger.info("Created project %s with %s members", project.id, len(project.members))
    return project


def list_projects(
    session: Session,
    actor: UserORM,
    *,
    status: ProjectStatus | str | None = None,
    search: Optional[str] = None,
    member_id: Optional[str] = None,
    page: int = 0,
    size: int = 20,
) -> tuple[List[orm_models.ProjectORM], int]:
    ensure_administrator(actor, "Only administrators can list all projects")
    page, size = validate_page(page, size)
    stmt = (
        select(orm_models.ProjectORM)
        .options(selectinload(orm_models.ProjectORM.members))
        .order_by(orm_models.ProjectORM.created_at.desc(), orm_models.ProjectORM.name)
    )
    if status:
        stmt = stmt.where(orm_models.ProjectORM.status == parse_choice(ProjectStatus, status, "project status"))
    if search and search.strip():
        stmt = stmt.where(func.lower(orm_models.ProjectORM.name).like(f"%{search.strip().lower()}%"))
    if member_id:
        stmt = stmt.where(
            orm_models.ProjectORM.members.any(orm_models.ProjectMemberORM.user_id == member_id)
        )
    return paginate(session, stmt, page, size)


def list_projects_for_user(session: Session, actor: UserORM) -> List[orm_models.ProjectORM]:
    stmt = (
        select(orm_models.ProjectORM)
        .options(selectinload(orm_models.ProjectORM.members))
        .order_by(orm_models.ProjectORM.name)
    )
    if not is_administrator(actor):
        stmt = stmt.where(
            orm_models.ProjectORM.members.any(orm_models.ProjectMemberORM.user_id == actor.id)
        )
    return list(session.execute(stmt).scalars())


def reconcile_members(
    session: Session,
    project: orm_models.ProjectORM,
    desired: dict[str, MemberRole],
) -> ReconcileResult:
    """Make the project's membership rows match ``desired`` exactly.

    Rows for users missing from ``desired`` are deleted, existing rows get
    their role updated and new users are added.
    Applying the same mapping twice is a no-op.
    """
    result = ReconcileResult()
    existing = {member.user_id: member for member in project.members}

    for member in list(project.members):
        if member.user_id not in desired:
            project.members.remove(member)
            session.delete(member)
            result.removed += 1

    for user_id, role in desired.items():
        member = existing.get(user_id)
        if member is None:
            project.members.append(orm_models.ProjectMemberORM(user_id=user_id, role=role))
            result.created += 1
        elif member.role != role:
            member.role = role
            result.updated += 1

    return result


def update_project(
    session: Session,
    actor: UserORM,
    project_id: str,
    payload: ProjectUpdate,
) -> orm_models.ProjectORM:
    project = get_project(session, project_id)
    ensure_can_edit_project(session, project, actor)
    logger.info("Updating project %s by %s", project.id, actor.email)

    if payload.name is not None:
        name = payload.name.strip()
        if not name:
            raise ValidationFailed("Project name is required")
        if name != project.name:
            _ensure_unique_name(session, name, exclude_id=project.id)
            project.name = name
    if payload.description is not None:
        project.description = payload.description
    if payload.status is not None:
        project.status = parse_choice(ProjectStatus, payload.status, "project status")

    start_date = payload.startDate if payload.startDate is not None else project.start_date
    end_date = payload.endDate if payload.endDate is not None else project.end_date
    ensure_date_order(start_date, end_date)
    project.start_date = start_date
    project.end_date = end_date

    if payload.members is not None:
        desired = _desired_members(session, payload.members)
        result = reconcile_members(session, project, desired)
        if result.changed:
            logger.info(
                "Reconciled members of project %s: +%s ~%s -%s",
                project.id,
                result.created,
                result.updated,
                result.removed,
            )

    _flush_members(session, project)
    return project


def archive_project(session: Session, actor: UserORM, project_id: str) -> orm_models.ProjectORM:
    project = get_project(session, project_id)
    ensure_can_edit_project(session, project, actor)
    project.status = ProjectStatus.ARCHIVED
    session.flush()
    logger.info("Archived project %s", project.id)
    return project


def delete_project(session: Session, actor: UserORM, project_id: str) -> None:
    project = get_project(session, project_id)
    ensure_administrator(actor, "Only administrators can delete projects")
    session.delete(project)
    session.flush()
    logger.info("Deleted project %s by %s", project_id, actor.email)


def list_project_members(session: Session, actor: UserORM, project_id: str) -> List[orm_models.ProjectMemberORM]:
    project = get_visible_project(session, actor, project_id)
    return sorted(project.members, key=lambda item: (item.joined_at, item.user.email))


def add_project_member(
    session: Session,
    actor: UserORM,
    project_id: str,
    payload: ProjectMemberRequest,
) -> orm_models.ProjectMemberORM:
    project = get_project(session, project_id)
    ensure_can_edit_project(session, project, actor)

    role = parse_member_role(payload.role)
    user = _get_user(session, payload.userId)
    if get_member(session, project.id, user.id) is not None:
        raise Conflict(
            "User is already a member of this project",
            details={"projectId": project.id, "userId": user.id},
        )

    member = orm_models.ProjectMemberORM(user=user, role=role)
    project.members.append(member)
    _flush_members(session, project)
    logger.info("Added %s to project %s as %s", user.email, project.id, role.value)
    return member


def remove_project_member(session: Session, actor: UserORM, project_id: str, user_id: str) -> None:
    project = get_project(session, project_id)
    ensure_can_edit_project(session, project, actor)

    member = get_member(session, project.id, user_id)
    if member is None:
        raise ResourceNotFound("Project member not found")
    project.members.remove(member)
    session.delete(member)
    session.flush()
    logger.info("Removed user %s from project %s", user_id, project.id)
