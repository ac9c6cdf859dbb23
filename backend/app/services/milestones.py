from __future__ import annotations

import logging
from datetime import timedelta
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .. import orm_models
from ..orm_models import MilestoneStatus, UserORM, today
from ..schemas import Milestone, MilestoneCreate, MilestoneUpdate
from .access import ensure_can_edit_project
from .errors import Conflict, ResourceNotFound, ValidationFailed
from .paging import paginate, validate_page
from .projects import get_project, get_visible_project
from .validation import ensure_not_in_past, parse_choice

logger = logging.getLogger(__name__)


def _task_count(session: Session, milestone_id: str) -> int:
    return session.execute(
        select(func.count(orm_models.TaskORM.id)).where(orm_models.TaskORM.milestone_id == milestone_id)
    ).scalar_one()


def serialize_milestone(session: Session, milestone: orm_models.MilestoneORM) -> Milestone:
    return Milestone(
        id=milestone.id,
        projectId=milestone.project_id,
        name=milestone.name,
        description=milestone.description,
        status=milestone.status,
        dueDate=milestone.due_date,
        taskCount=_task_count(session, milestone.id),
        isOverdue=milestone.is_overdue,
        createdAt=milestone.created_at,
        updatedAt=milestone.updated_at,
    )


def get_milestone(session: Session, project_id: str, milestone_id: str) -> orm_models.MilestoneORM:
    milestone = session.get(orm_models.MilestoneORM, milestone_id)
    if milestone is None or milestone.project_id != project_id:
        raise ResourceNotFound(f"Milestone not found with ID: {milestone_id}")
    return milestone


def _ensure_unique_name(
    session: Session,
    project_id: str,
    name: str,
    *,
    exclude_id: Optional[str] = None,
) -> None:
    stmt = (
        select(orm_models.MilestoneORM.id)
        .where(orm_models.MilestoneORM.project_id == project_id)
        .where(func.lower(orm_models.MilestoneORM.name) == name.lower())
    )
    if exclude_id:
        stmt = stmt.where(orm_models.MilestoneORM.id != exclude_id)
    if session.execute(stmt).first() is not None:
        raise Conflict(f"Milestone with name '{name}' already exists in this project")


def create_milestone(
    session: Session,
    actor: UserORM,
    project_id: str,
    payload: MilestoneCreate,
) -> orm_models.MilestoneORM:
    logger.info("Creating milestone for project %s", project_id)
    project = get_project(session, project_id)
    ensure_can_edit_project(session, project, actor)

    name = payload.name.strip()
    if not name:
        raise ValidationFailed("Milestone name is required")
    _ensure_unique_name(session, project.id, name)
    ensure_not_in_past(payload.dueDate, "Due date")

    milestone = orm_models.MilestoneORM(
        project=project,
        name=name,
        description=payload.description,
        status=parse_choice(MilestoneStatus, payload.status, "milestone status", default=MilestoneStatus.PLANNED),
        due_date=payload.dueDate,
    )
    session.add(milestone)
    session.flush()
    logger.info("Created milestone %s", milestone.id)
    return milestone


def list_milestones(
    session: Session,
    actor: UserORM,
    project_id: str,
    *,
    status: MilestoneStatus | str | None = None,
    page: int = 0,
    size: int = 20,
) -> tuple[List[orm_models.MilestoneORM], int]:
    project = get_visible_project(session, actor, project_id)
    page, size = validate_page(page, size)
    stmt = (
        select(orm_models.MilestoneORM)
        .where(orm_models.MilestoneORM.project_id == project.id)
        .order_by(orm_models.MilestoneORM.due_date.is_(None), orm_models.MilestoneORM.due_date, orm_models.MilestoneORM.name)
    )
    if status:
        stmt = stmt.where(
            orm_models.MilestoneORM.status == parse_choice(MilestoneStatus, status, "milestone status")
        )
    return paginate(session, stmt, page, size)


def get_visible_milestone(
    session: Session,
    actor: UserORM,
    project_id: str,
    milestone_id: str,
) -> orm_models.MilestoneORM:
    get_visible_project(session, actor, project_id)
    return get_milestone(session, project_id, milestone_id)


def update_milestone(
    session: Session,
    actor: UserORM,
    project_id: str,
    milestone_id: str,
    payload: MilestoneUpdate,
) -> orm_models.MilestoneORM:
    milestone = get_milestone(session, project_id, milestone_id)
    ensure_can_edit_project(session, milestone.project, actor)

    if payload.name is not None:
        name = payload.name.strip()
        if not name:
            raise ValidationFailed("Milestone name is required")
        if name != milestone.name:
            _ensure_unique_name(session, milestone.project_id, name, exclude_id=milestone.id)
            milestone.name = name
    if payload.description is not None:
        milestone.description = payload.description
    if payload.status is not None:
        milestone.status = parse_choice(MilestoneStatus, payload.status, "milestone status")
    if payload.dueDate is not None:
        ensure_not_in_past(payload.dueDate, "Due date")
        milestone.due_date = payload.dueDate

    session.flush()
    logger.info("Updated milestone %s", milestone.id)
    return milestone


def delete_milestone(session: Session, actor: UserORM, project_id: str, milestone_id: str) -> None:
    milestone = get_milestone(session, project_id, milestone_id)
    ensure_can_edit_project(session, milestone.project, actor)
    if _task_count(session, milestone.id):
        raise ValidationFailed("Cannot delete milestone with associated tasks")
    session.delete(milestone)
    session.flush()
    logger.info("Deleted milestone %s", milestone_id)


def overdue_milestones(session: Session, actor: UserORM, project_id: str) -> List[orm_models.MilestoneORM]:
    project = get_visible_project(session, actor, project_id)
    return list(
        session.execute(
            select(orm_models.MilestoneORM)
            .where(orm_models.MilestoneORM.project_id == project.id)
            .where(orm_models.MilestoneORM.due_date < today())
            .where(orm_models.MilestoneORM.status != MilestoneStatus.COMPLETED)
            .order_by(orm_models.MilestoneORM.due_date)
        ).scalars()
    )


def upcoming_milestones(
    session: Session,
    actor: UserORM,
    project_id: str,
    days: int = 7,
) -> List[orm_models.MilestoneORM]:
    if days < 1 or days > 365:
        raise ValidationFailed("Days must be between 1 and 365")
    project = get_visible_project(session, actor, project_id)
    start = today()
    return list(
        session.execute(
            select(orm_models.MilestoneORM)
            .where(orm_models.MilestoneORM.project_id == project.id)
            .where(orm_models.MilestoneORM.due_date.between(start, start + timedelta(days=days)))
            .order_by(orm_models.MilestoneORM.due_date)
        ).scalars()
    )
