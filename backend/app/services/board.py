from __future__ import annotations

from enum import Enum
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from .. import orm_models
from ..orm_models import TaskPriority, TaskStatus, UserORM
from ..schemas import TaskBoard, TaskBoardColumn, TaskBoardItem, UserSummary
from .projects import get_visible_project
from .validation import parse_choice


class BoardGrouping(str, Enum):
    STATUS = "STATUS"
    PRIORITY = "PRIORITY"
    ASSIGNEE = "ASSIGNEE"


STATUS_TITLES = {
    TaskStatus.TODO: "To Do",
    TaskStatus.IN_PROGRESS: "In Progress",
    TaskStatus.REVIEW: "Review",
    TaskStatus.DONE: "Done",
    TaskStatus.CANCELLED: "Cancelled",
}

PRIORITY_TITLES = {
    TaskPriority.LOW: "Low",
    TaskPriority.MEDIUM: "Medium",
    TaskPriority.HIGH: "High",
    TaskPriority.URGENT: "Urgent",
}

UNASSIGNED_KEY = "UNASSIGNED"
UNASSIGNED_TITLE = "Unassigned"


def _to_item(task: orm_models.TaskORM) -> TaskBoardItem:
    return TaskBoardItem(
        id=task.id,
        title=task.title,
        status=task.status,
        priority=task.priority,
        deadline=task.deadline,
        assignee=UserSummary.model_validate(task.assignee) if task.assignee else None,
        milestoneName=task.milestone.name if task.milestone else None,
        isOverdue=task.is_overdue,
    )


def _column(key: str, title: str, tasks: list[orm_models.TaskORM]) -> TaskBoardColumn:
    return TaskBoardColumn(key=key, title=title, count=len(tasks), tasks=[_to_item(task) for task in tasks])


def _group_by_enum(tasks, attribute: str, titles: dict) -> list[TaskBoardColumn]:
    buckets: dict = {value: [] for value in titles}
    for task in tasks:
        buckets[getattr(task, attribute)].append(task)
    return [_column(value.value, titles[value], buckets[value]) for value in titles]


def _group_by_assignee(tasks) -> list[TaskBoardColumn]:
    buckets: dict[str, list[orm_models.TaskORM]] = {}
    assignees: dict[str, UserORM] = {}
    unassigned: list[orm_models.TaskORM] = []
    for task in tasks:
        if task.assignee is None:
            unassigned.append(task)
            continue
        assignees[task.assignee.id] = task.assignee
        buckets.setdefault(task.assignee.id, []).append(task)

    ordered = sorted(assignees.values(), key=lambda user: ((user.full_name or user.email).lower(), user.email))
    columns = [_column(user.id, user.full_name or user.email, buckets[user.id]) for user in ordered]
    if unassigned:
        columns.append(_column(UNASSIGNED_KEY, UNASSIGNED_TITLE, unassigned))
    return columns


def build_task_board(
    session: Session,
    actor: UserORM,
    project_id: str,
    *,
    group_by: BoardGrouping | str | None = None,
    milestone_id: Optional[str] = None,
) -> TaskBoard:
    project = get_visible_project(session, actor, project_id)
    grouping = parse_choice(BoardGrouping, group_by, "board grouping", default=BoardGrouping.STATUS)

    stmt = (
        select(orm_models.TaskORM)
        .options(
            selectinload(orm_models.TaskORM.assignee),
            selectinload(orm_models.TaskORM.milestone),
        )
        .where(orm_models.TaskORM.project_id == project.id)
        .order_by(orm_models.TaskORM.created_at, orm_models.TaskORM.title)
    )
    if milestone_id:
        stmt = stmt.where(orm_models.TaskORM.milestone_id == milestone_id)
    tasks = list(session.execute(stmt).scalars())

    if grouping == BoardGrouping.PRIORITY:
        columns = _group_by_enum(tasks, "priority", PRIORITY_TITLES)
    elif grouping == BoardGrouping.ASSIGNEE:
        columns = _group_by_assignee(tasks)
    else:
        columns = _group_by_enum(tasks, "status", STATUS_TITLES)

    return TaskBoard(
        projectId=project.id,
        projectName=project.name,
        groupBy=grouping.value,
        totalTasks=len(tasks),
        columns=columns,
    )
