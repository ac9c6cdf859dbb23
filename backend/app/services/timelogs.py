from __future__ import annotations

import logging
from datetime import date
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .. import orm_models
from ..orm_models import UserORM, today
from ..schemas import TimeLog, UserSummary
from .access import (
    ensure_can_create_or_update_resource,
    ensure_can_delete_resource,
    ensure_can_view_project,
    is_lead_tier,
)
from .errors import AccessDenied, Conflict, ResourceNotFound, ValidationFailed
from .paging import paginate, validate_page
from .tasks import get_visible_task
from .validation import ensure_date_order

logger = logging.getLogger(__name__)

MAX_HOURS_PER_DAY = Decimal("24")
HOURS_PRECISION = Decimal("0.01")


def serialize_time_log(log: orm_models.TimeLogORM) -> TimeLog:
    return TimeLog(
        id=log.id,
        taskId=log.task_id,
        taskTitle=log.task.title,
        projectId=log.task.project_id,
        user=UserSummary.model_validate(log.user),
        hours=float(log.hours),
        date=log.date,
        createdAt=log.created_at,
    )


def _normalize_hours(hours: Decimal | float | str | None) -> Decimal:
    if hours is None:
        raise ValidationFailed("Hours are required")
    try:
        raw = Decimal(str(hours))
    except InvalidOperation:
        raise ValidationFailed(f"Invalid hours value: {hours}") from None
    if not raw.is_finite():
        raise ValidationFailed(f"Invalid hours value: {hours}")
    # Range applies to the stored, rounded value.
    value = raw.quantize(HOURS_PRECISION, rounding=ROUND_HALF_UP)
    if value <= 0 or value > MAX_HOURS_PER_DAY:
        raise ValidationFailed("Hours must be greater than 0 and at most 24")
    return value


def create_time_log(
    session: Session,
    actor: UserORM,
    task_id: str,
    *,
    hours: Decimal | float | str | None,
    log_date: Optional[date],
) -> orm_models.TimeLogORM:
    task = get_visible_task(session, actor, task_id)
    ensure_can_create_or_update_resource(actor, resource="time logs")

    value = _normalize_hours(hours)
    if log_date is None:
        raise ValidationFailed("Date is required")
    if log_date > today():
        raise ValidationFailed("Cannot log time for a future date")

    existing = session.execute(
        select(orm_models.TimeLogORM.id)
        .where(orm_models.TimeLogORM.task_id == task.id)
        .where(orm_models.TimeLogORM.user_id == actor.id)
        .where(orm_models.TimeLogORM.date == log_date)
    ).first()
    if existing is not None:
        raise Conflict(
            "Time log already exists for this task and date",
            details={"taskId": task.id, "date": log_date.isoformat()},
        )

    log = orm_models.TimeLogORM(task=task, user=actor, hours=value, date=log_date)
    session.add(log)
    session.flush()
    logger.info("Logged %s hours on task %s for %s", value, task.id, actor.email)
    return log


def _sum_hours(session: Session, stmt) -> Decimal:
    subquery = stmt.order_by(None).subquery()
    total = session.execute(select(func.coalesce(func.sum(subquery.c.hours), 0))).scalar_one()
    return Decimal(str(total))


def list_task_time_logs(
    session: Session,
    actor: UserORM,
    task_id: str,
    *,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    page: int = 0,
    size: int = 20,
) -> tuple[List[orm_models.TimeLogORM], int, Decimal]:
    task = get_visible_task(session, actor, task_id)
    page, size = validate_page(page, size)
    ensure_date_order(start_date, end_date)

    stmt = (
        select(orm_models.TimeLogORM)
        .where(orm_models.TimeLogORM.task_id == task.id)
        .order_by(orm_models.TimeLogORM.date.desc(), orm_models.TimeLogORM.created_at.desc())
    )
    if start_date:
        stmt = stmt.where(orm_models.TimeLogORM.date >= start_date)
    if end_date:
        stmt = stmt.where(orm_models.TimeLogORM.date <= end_date)
    items, total = paginate(session, stmt, page, size)
    return items, total, _sum_hours(session, stmt)


def list_user_time_logs(
    session: Session,
    actor: UserORM,
    user_id: str,
    *,
    project_id: Optional[str] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    page: int = 0,
    size: int = 20,
) -> tuple[List[orm_models.TimeLogORM], int, Decimal]:
    if actor.id != user_id and not is_lead_tier(actor):
        logger.warning("User %s tried to read time logs of %s", actor.email, user_id)
        raise AccessDenied("You can only view your own time logs")
    if session.get(UserORM, user_id) is None:
        raise ResourceNotFound(f"User not found with ID: {user_id}")
    page, size = validate_page(page, size)
    ensure_date_order(start_date, end_date)

    stmt = (
        select(orm_models.TimeLogORM)
        .where(orm_models.TimeLogORM.user_id == user_id)
        .order_by(orm_models.TimeLogORM.date.desc(), orm_models.TimeLogORM.created_at.desc())
    )
    if project_id:
        stmt = stmt.where(
            orm_models.TimeLogORM.task_id.in_(
                select(orm_models.TaskORM.id).where(orm_models.TaskORM.project_id == project_id)
            )
        )
    if start_date:
        stmt = stmt.where(orm_models.TimeLogORM.date >= start_date)
    if end_date:
        stmt = stmt.where(orm_models.TimeLogORM.date <= end_date)
    items, total = paginate(session, stmt, page, size)
    return items, total, _sum_hours(session, stmt)


def get_time_log(session: Session, actor: UserORM, log_id: str) -> orm_models.TimeLogORM:
    log = session.get(orm_models.TimeLogORM, log_id)
    if log is None:
        raise ResourceNotFound(f"Time log not found with ID: {log_id}")
    if log.user_id != actor.id:
        ensure_can_view_project(session, log.task.project, actor)
    return log


def delete_time_log(session: Session, actor: UserORM, log_id: str) -> None:
    log = session.get(orm_models.TimeLogORM, log_id)
    if log is None:
        raise ResourceNotFound(f"Time log not found with ID: {log_id}")
    ensure_can_delete_resource(session, log.task.project, log.user_id, actor, resource="time log")
    session.delete(log)
    session.flush()
    logger.info("Deleted time log %s", log_id)


def total_hours_for_task(session: Session, actor: UserORM, task_id: str) -> Decimal:
    task = get_visible_task(session, actor, task_id)
    return _sum_hours(
        session,
        select(orm_models.TimeLogORM).where(orm_models.TimeLogORM.task_id == task.id),
    )
