from __future__ import annotations

import logging
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .. import orm_models
from ..orm_models import TASK_TERMINAL_STATUSES, TaskPriority, TaskStatus, UserORM, today
from ..schemas import Task, TaskCreate, TaskUpdate, UserSummary
from .access import (
    ensure_can_assign_task,
    ensure_can_create_or_update_resource,
    ensure_can_delete_resource,
    ensure_can_view_project,
    find_member_role,
    is_administrator,
)
from .errors import Conflict, ResourceNotFound, ValidationFailed
from .paging import clamp_page, paginate
from .projects import get_visible_project
from .validation import ensure_not_in_past, parse_choice

logger = logging.getLogger(__name__)

HIGH_PRIORITIES = (TaskPriority.HIGH, TaskPriority.URGENT)


def _count(session: Session, model, task_id: str) -> int:
    return session.execute(select(func.count(model.id)).where(model.task_id == task_id)).scalar_one()


def total_time_logged(session: Session, task_id: str) -> Decimal:
    total = session.execute(
        select(func.coalesce(func.sum(orm_models.TimeLogORM.hours), 0)).where(
            orm_models.TimeLogORM.task_id == task_id
        )
    ).scalar_one()
    return Decimal(str(total))


def serialize_task(session: Session, task: orm_models.TaskORM) -> Task:
    return Task(
        id=task.id,
        projectId=task.project_id,
        projectName=task.project.name,
        milestoneId=task.milestone_id,
        milestoneName=task.milestone.name if task.milestone else None,
        title=task.title,
        description=task.description,
        status=task.status,
        priority=task.priority,
        deadline=task.deadline,
        assignee=UserSummary.model_validate(task.assignee) if task.assignee else None,
        createdBy=UserSummary.model_validate(task.created_by),
        createdAt=task.created_at,
        updatedAt=task.updated_at,
        completedAt=task.completed_at,
        isOverdue=task.is_overdue,
        commentCount=_count(session, orm_models.CommentORM, task.id),
        attachmentCount=_count(session, orm_models.AttachmentORM, task.id),
        totalTimeLogged=float(total_time_logged(session, task.id)),
    )


def get_task(session: Session, task_id: str) -> orm_models.TaskORM:
    task = session.get(orm_models.TaskORM, task_id)
    if task is None:
        raise ResourceNotFound(f"Task not found with ID: {task_id}")
    return task


def get_visible_task(session: Session, actor: UserORM, task_id: str) -> orm_models.TaskORM:
    task = get_task(session, task_id)
    ensure_can_view_project(session, task.project, actor)
    return task


def _ensure_unique_title(
    session: Session,
    project_id: str,
    title: str,
    *,
    exclude_id: Optional[str] = None,
) -> None:
    stmt = (
        select(orm_models.TaskORM.id)
        .where(orm_models.TaskORM.project_id == project_id)
        .where(func.lower(orm_models.TaskORM.title) == title.lower())
    )
    if exclude_id:
        stmt = stmt.where(orm_models.TaskORM.id != exclude_id)
    if session.execute(stmt).first() is not None:
        raise Conflict(f"Task with title '{title}' already exists in this project")


def _resolve_milestone(
    session: Session,
    project: orm_models.ProjectORM,
    milestone_id: str,
) -> orm_models.MilestoneORM:
    milestone = session.get(orm_models.MilestoneORM, milestone_id)
    if milestone is None:
        raise ResourceNotFound(f"Milestone not found with ID: {milestone_id}")
    if milestone.project_id != project.id:
        raise ValidationFailed("Milestone does not belong to the specified project")
    return milestone


def _resolve_assignee(
    session: Session,
    actor: UserORM,
    project: orm_models.ProjectORM,
    assignee_id: str,
) -> UserORM:
    ensure_can_assign_task(actor)
    assignee = session.get(UserORM, assignee_id)
    if assignee is None:
        raise ResourceNotFound(f"User not found with ID: {assignee_id}")
    if not assignee.is_active:
        raise ValidationFailed("Cannot assign tasks to a deactivated user")
    if not is_administrator(assignee) and find_member_role(session, project.id, assignee.id) is None:
        raise ValidationFailed("Assignee must be a member of the project")
    return assignee


def create_task(session: Session, actor: UserORM, project_id: str, payload: TaskCreate) -> orm_models.TaskORM:
    logger.info("Creating task for project %s", project_id)
    project = get_visible_project(session, actor, project_id)
    ensure_can_create_or_update_resource(actor, resource="tasks")

    title = payload.title.strip()
    if not title:
        raise ValidationFailed("Task title is required")
    _ensure_unique_title(session, project.id, title)
    ensure_not_in_past(payload.deadline, "Deadline")

    task = orm_models.TaskORM(
        project=project,
        title=title,
        description=payload.description,
        priority=parse_choice(TaskPriority, payload.priority, "task priority", default=TaskPriority.MEDIUM),
        deadline=payload.deadline,
        created_by=actor,
    )
    task.set_status(parse_choice(TaskStatus, payload.status, "task status", default=TaskStatus.TODO))
    if payload.milestoneId:
        task.milestone = _resolve_milestone(session, project, payload.milestoneId)
    if payload.assigneeId:
        task.assignee = _resolve_assignee(session, actor, project, payload.assigneeId)

    session.add(task)
    session.flush()
    logger.info("Created task %s in project %s", task.id, project.id)
    return task


def list_tasks(
    session: Session,
    actor: UserORM,
    project_id: str,
    *,
    search: Optional[str] = None,
    status: TaskStatus | str | None = None,
    priority: TaskPriority | str | None = None,
    assignee_id: Optional[str] = None,
    milestone_id: Optional[str] = None,
    page: int = 0,
    size: int = 20,
) -> tuple[List[orm_models.TaskORM], int, int, int]:
    project = get_visible_project(session, actor, project_id)
    page, size = clamp_page(page, size)

    stmt = (
        select(orm_models.TaskORM)
        .where(orm_models.TaskORM.project_id == project.id)
        .order_by(orm_models.TaskORM.created_at.desc(), orm_models.TaskORM.title)
    )
    if search and search.strip():
        stmt = stmt.where(func.lower(orm_models.TaskORM.title).like(f"%{search.strip().lower()}%"))
    if status:
        stmt = stmt.where(orm_models.TaskORM.status == parse_choice(TaskStatus, status, "task status"))
    if priority:
        stmt = stmt.where(orm_models.TaskORM.priority == parse_choice(TaskPriority, priority, "task priority"))
    if assignee_id:
        stmt = stmt.where(orm_models.TaskORM.assignee_id == assignee_id)
    if milestone_id:
        stmt = stmt.where(orm_models.TaskORM.milestone_id == milestone_id)

    items, total = paginate(session, stmt, page, size)
    return items, total, page, size


def update_task(session: Session, actor: UserORM, task_id: str, payload: TaskUpdate) -> orm_models.TaskORM:
    task = get_task(session, task_id)
    project = task.project
    ensure_can_view_project(session, project, actor)
    ensure_can_create_or_update_resource(actor, resource="tasks")

    if payload.title is not None:
        title = payload.title.strip()
        if not title:
            raise ValidationFailed("Task title is required")
        if title != task.title:
            _ensure_unique_title(session, project.id, title, exclude_id=task.id)
            task.title = title
    if payload.description is not None:
        task.description = payload.description
    if payload.priority is not None:
        task.priority = parse_choice(TaskPriority, payload.priority, "task priority")
    if payload.status is not None:
        task.set_status(parse_choice(TaskStatus, payload.status, "task status"))
    if payload.deadline is not None:
        ensure_not_in_past(payload.deadline, "Deadline")
        task.deadline = payload.deadline
    # An empty string clears the reference, None leaves it untouched.
    if payload.milestoneId is not None:
        task.milestone = _resolve_milestone(session, project, payload.milestoneId) if payload.milestoneId else None
    if payload.assigneeId is not None:
        if payload.assigneeId:
            if payload.assigneeId != task.assignee_id:
                task.assignee = _resolve_assignee(session, actor, project, payload.assigneeId)
        else:
            ensure_can_assign_task(actor)
            task.assignee = None

    session.flush()
    logger.info("Updated task %s", task.id)
    return task


def update_task_status(
    session: Session,
    actor: UserORM,
    task_id: str,
    status: TaskStatus | str,
) -> orm_models.TaskORM:
    task = get_task(session, task_id)
    ensure_can_view_project(session, task.project, actor)
    ensure_can_create_or_update_resource(actor, resource="task status")
    task.set_status(parse_choice(TaskStatus, status, "task status"))
    session.flush()
    logger.info("Task %s moved to %s", task.id, task.status.value)
    return task


def delete_task(session: Session, actor: UserORM, task_id: str) -> None:
    task = get_task(session, task_id)
    ensure_can_delete_resource(session, task.project, task.created_by_id, actor, resource="task")
    session.delete(task)
    session.flush()
    logger.info("Deleted task %s", task_id)


def overdue_tasks(session: Session, actor: UserORM, project_id: str) -> List[orm_models.TaskORM]:
    project = get_visible_project(session, actor, project_id)
    return list(
        session.execute(
            select(orm_models.TaskORM)
            .where(orm_models.TaskORM.project_id == project.id)
            .where(orm_models.TaskORM.deadline < today())
            .where(orm_models.TaskORM.status.not_in(TASK_TERMINAL_STATUSES))
            .order_by(orm_models.TaskORM.deadline)
        ).scalars()
    )


def high_priority_tasks(session: Session, actor: UserORM, project_id: str) -> List[orm_models.TaskORM]:
    project = get_visible_project(session, actor, project_id)
    return list(
        session.execute(
            select(orm_models.TaskORM)
            .where(orm_models.TaskORM.project_id == project.id)
            .where(orm_models.TaskORM.priority.in_(HIGH_PRIORITIES))
            .where(orm_models.TaskORM.status.not_in(TASK_TERMINAL_STATUSES))
            .order_by(orm_models.TaskORM.deadline.is_(None), orm_models.TaskORM.deadline)
        ).scalars()
    )
