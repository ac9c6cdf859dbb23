"""Read-only aggregates over tasks and time logs.

A task counts as completed only when its status is ``DONE``; the date it
was completed comes from ``completed_at``.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import date, datetime, time, timedelta
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Iterable, Optional

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from .. import orm_models
from ..orm_models import TaskStatus, UserORM, today
from ..schemas import (
    ChartData,
    ChartDataset,
    DailyHours,
    DailyPerformance,
    DashboardAnalytics,
    MemberPerformance,
    PerformanceSummary,
    ProjectAnalytics,
    ProjectBreakdown,
    UserPerformance,
)
from .access import ensure_can_view_project, is_administrator, is_project_manager_tier
from .errors import AccessDenied, ResourceNotFound, ValidationFailed
from .projects import get_project, get_visible_project
from .validation import ensure_date_order, parse_choice

logger = logging.getLogger(__name__)

TWO_PLACES = Decimal("0.01")
DEFAULT_PERFORMANCE_DAYS = 30
DEFAULT_DASHBOARD_DAYS = 7
MAX_RANGE_DAYS = 366

HOURS_COLORS = ("rgba(54, 162, 235, 0.2)", "rgba(54, 162, 235, 1)")
COMPLETION_COLORS = ("rgba(75, 192, 192, 0.2)", "rgba(75, 192, 192, 1)")


class AnalyticsPeriod(str, Enum):
    WEEK = "WEEK"
    MONTH = "MONTH"


def _round(value: Decimal) -> Decimal:
    return value.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def _ratio(part: int, whole: int) -> Decimal:
    if whole <= 0:
        return Decimal("0.00")
    return _round(Decimal(part) / Decimal(whole))


def _average_per_day(total: Decimal, start: date, end: date) -> Decimal:
    days = (end - start).days + 1
    if days <= 0:
        return Decimal("0.00")
    return _round(total / Decimal(days))


def period_start(end: date, period: AnalyticsPeriod) -> date:
    if period is AnalyticsPeriod.MONTH:
        return end - timedelta(days=30)
    return end - timedelta(weeks=1)


def _days(start: date, end: date) -> list[date]:
    return [start + timedelta(days=offset) for offset in range((end - start).days + 1)]


def _day_bounds(start: date, end: date) -> tuple[datetime, datetime]:
    return datetime.combine(start, time.min), datetime.combine(end + timedelta(days=1), time.min)


def _check_range(start: date, end: date) -> None:
    ensure_date_order(start, end)
    if (end - start).days > MAX_RANGE_DAYS:
        raise ValidationFailed(f"Date range cannot exceed {MAX_RANGE_DAYS} days")


def _hours_by(session: Session, group_column, *filters) -> dict:
    stmt = (
        select(group_column, func.coalesce(func.sum(orm_models.TimeLogORM.hours), 0))
        .join(orm_models.TaskORM, orm_models.TaskORM.id == orm_models.TimeLogORM.task_id)
        .where(*filters)
        .group_by(group_column)
    )
    return {key: Decimal(str(total)) for key, total in session.execute(stmt).all()}


# === Project analytics ======================================================

def project_analytics(
    session: Session,
    actor: UserORM,
    project_id: str,
    period: str | None = None,
) -> ProjectAnalytics:
    resolved = parse_choice(AnalyticsPeriod, period, "analytics period", default=AnalyticsPeriod.WEEK)
    logger.info("Computing %s analytics for project %s", resolved.value, project_id)
    project = get_visible_project(session, actor, project_id)
    end = today()
    start = period_start(end, resolved)

    tasks = list(
        session.execute(
            select(orm_models.TaskORM).where(orm_models.TaskORM.project_id == project.id)
        ).scalars()
    )
    completed = [task for task in tasks if task.status == TaskStatus.DONE]
    in_progress = [task for task in tasks if task.status == TaskStatus.IN_PROGRESS]
    overdue = [task for task in tasks if task.is_overdue]

    in_range = (
        orm_models.TaskORM.project_id == project.id,
        orm_models.TimeLogORM.date >= start,
        orm_models.TimeLogORM.date <= end,
    )
    hours_by_user = _hours_by(session, orm_models.TimeLogORM.user_id, *in_range)
    total_hours = sum(hours_by_user.values(), Decimal("0"))

    members = []
    for member in sorted(project.members, key=lambda item: (item.user.full_name or item.user.email).lower()):
        assigned = [task for task in tasks if task.assignee_id == member.user_id]
        members.append(
            MemberPerformance(
                userId=member.user_id,
                fullName=member.user.full_name or member.user.email,
                hoursLogged=float(_round(hours_by_user.get(member.user_id, Decimal("0")))),
                tasksAssigned=len(assigned),
                tasksCompleted=sum(1 for task in assigned if task.status == TaskStatus.DONE),
            )
        )

    return ProjectAnalytics(
        projectId=project.id,
        projectName=project.name,
        period=resolved.value,
        startDate=start,
        endDate=end,
        totalTasks=len(tasks),
        completedTasks=len(completed),
        inProgressTasks=len(in_progress),
        overdueTasks=len(overdue),
        completionRate=float(_ratio(len(completed), len(tasks))),
        hoursLogged=float(_round(total_hours)),
        averageHoursPerDay=float(_average_per_day(total_hours, start, end)),
        members=members,
    )


# === User performance =======================================================

def user_performance(
    session: Session,
    actor: UserORM,
    user_id: str,
    *,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    project_id: Optional[str] = None,
) -> UserPerformance:
    if actor.id != user_id and not is_project_manager_tier(actor):
        logger.warning("User %s tried to read performance of %s", actor.email, user_id)
        raise AccessDenied("Access denied to user performance data")
    user = session.get(UserORM, user_id)
    if user is None:
        raise ResourceNotFound(f"User not found with ID: {user_id}")
    if project_id:
        ensure_can_view_project(session, get_project(session, project_id), actor)

    end = end_date or today()
    start = start_date or end - timedelta(days=DEFAULT_PERFORMANCE_DAYS)
    _check_range(start, end)
    lower, upper = _day_bounds(start, end)

    task_filters = [orm_models.TaskORM.assignee_id == user.id]
    if project_id:
        task_filters.append(orm_models.TaskORM.project_id == project_id)

    assigned = session.execute(
        select(func.count(orm_models.TaskORM.id)).where(
            *task_filters,
            orm_models.TaskORM.created_at >= lower,
            orm_models.TaskORM.created_at < upper,
        )
    ).scalar_one()
    completed_tasks = list(
        session.execute(
            select(orm_models.TaskORM).where(
                *task_filters,
                orm_models.TaskORM.status == TaskStatus.DONE,
                orm_models.TaskORM.completed_at >= lower,
                orm_models.TaskORM.completed_at < upper,
            )
        ).scalars()
    )

    log_filters = [
        orm_models.TimeLogORM.user_id == user.id,
        orm_models.TimeLogORM.date >= start,
        orm_models.TimeLogORM.date <= end,
    ]
    if project_id:
        log_filters.append(orm_models.TaskORM.project_id == project_id)
    hours_by_day = _hours_by(session, orm_models.TimeLogORM.date, *log_filters)
    hours_by_project = _hours_by(session, orm_models.TaskORM.project_id, *log_filters)

    completed_by_day: dict[date, int] = defaultdict(int)
    completed_by_project: dict[str, int] = defaultdict(int)
    for task in completed_tasks:
        completed_by_day[task.completed_at.date()] += 1
        completed_by_project[task.project_id] += 1

    daily = [
        DailyHours(
            date=day,
            hours=float(_round(hours_by_day.get(day, Decimal("0")))),
            tasksCompleted=completed_by_day.get(day, 0),
        )
        for day in _days(start, end)
    ]

    project_ids = set(hours_by_project) | set(completed_by_project)
    names = dict(
        session.execute(
            select(orm_models.ProjectORM.id, orm_models.ProjectORM.name).where(
                orm_models.ProjectORM.id.in_(project_ids)
            )
        ).all()
    ) if project_ids else {}
    projects = sorted(
        (
            ProjectBreakdown(
                projectId=pid,
                projectName=names.get(pid, pid),
                hours=float(_round(hours_by_project.get(pid, Decimal("0")))),
                tasksCompleted=completed_by_project.get(pid, 0),
            )
            for pid in project_ids
        ),
        key=lambda item: item.projectName.lower(),
    )

    total_hours = sum(hours_by_day.values(), Decimal("0"))
    return UserPerformance(
        userId=user.id,
        fullName=user.full_name or user.email,
        startDate=start,
        endDate=end,
        tasksAssigned=assigned,
        tasksCompleted=len(completed_tasks),
        completionRate=float(_ratio(len(completed_tasks), assigned)),
        totalHours=float(_round(total_hours)),
        daily=daily,
        projects=projects,
    )


# === Dashboard ==============================================================

COMPLETION_WEIGHT = Decimal("0.7")
ON_TIME_WEIGHT = Decimal("0.3")


def _scope_project_ids(session: Session, actor: UserORM, project_id: Optional[str]) -> Optional[list[str]]:
    """Projects the dashboard may aggregate over; ``None`` means all of them."""
    if project_id:
        project = get_visible_project(session, actor, project_id)
        return [project.id]
    if is_administrator(actor):
        return None
    return list(
        session.execute(
            select(orm_models.ProjectMemberORM.project_id).where(orm_models.ProjectMemberORM.user_id == actor.id)
        ).scalars()
    )


def _in_scope(column, scope: Optional[list[str]]) -> list:
    return [] if scope is None else [column.in_(scope)]


def _dataset(label: str, values: Iterable[float], colors: tuple[str, str]) -> ChartDataset:
    background, border = colors
    return ChartDataset(label=label, data=list(values), backgroundColor=background, borderColor=border)


def _window(
    start_date: Optional[date],
    end_date: Optional[date],
    date_range: Optional[str] = None,
) -> tuple[date, date]:
    """Explicit start wins over ``date_range``; otherwise the last seven days."""
    end = end_date or today()
    if start_date is not None:
        start = start_date
    elif date_range:
        start = period_start(end, parse_choice(AnalyticsPeriod, date_range, "date range"))
    else:
        start = end - timedelta(days=DEFAULT_DASHBOARD_DAYS - 1)
    _check_range(start, end)
    return start, end


def _completed_tasks(session: Session, start: date, end: date, scope) -> list[orm_models.TaskORM]:
    lower, upper = _day_bounds(start, end)
    return list(
        session.execute(
            select(orm_models.TaskORM).where(
                orm_models.TaskORM.status == TaskStatus.DONE,
                orm_models.TaskORM.completed_at >= lower,
                orm_models.TaskORM.completed_at < upper,
                *_in_scope(orm_models.TaskORM.project_id, scope),
            )
        ).scalars()
    )


def _hours_per_day(session: Session, start: date, end: date, scope) -> dict:
    return _hours_by(
        session,
        orm_models.TimeLogORM.date,
        orm_models.TimeLogORM.date >= start,
        orm_models.TimeLogORM.date <= end,
        *_in_scope(orm_models.TaskORM.project_id, scope),
    )


def _time_tracking_chart(days: list[date], hours_by_day: dict) -> ChartData:
    return ChartData(
        labels=[day.isoformat() for day in days],
        datasets=[
            _dataset(
                "Hours Logged",
                (float(_round(hours_by_day.get(day, Decimal("0")))) for day in days),
                HOURS_COLORS,
            )
        ],
    )


def _task_completion_chart(days: list[date], completed: list[orm_models.TaskORM]) -> ChartData:
    by_day: dict[date, int] = defaultdict(int)
    for task in completed:
        by_day[task.completed_at.date()] += 1
    return ChartData(
        labels=[day.isoformat() for day in days],
        datasets=[
            _dataset("Tasks Completed", (float(by_day.get(day, 0)) for day in days), COMPLETION_COLORS)
        ],
    )


def productivity_score(completed: list[orm_models.TaskORM], created: int) -> Decimal:
    """Score in 0..100 from completion rate and the share finished by their deadline."""
    if not completed:
        return Decimal("0.00")
    completion = min(Decimal(len(completed)) / Decimal(created), Decimal("1")) if created else Decimal("1")
    on_time = sum(
        1 for task in completed if task.deadline is None or task.completed_at.date() <= task.deadline
    )
    share = Decimal(on_time) / Decimal(len(completed))
    return _round((COMPLETION_WEIGHT * completion + ON_TIME_WEIGHT * share) * 100)


def _performance(
    session: Session,
    start: date,
    end: date,
    scope,
    hours_by_day: dict,
    completed: list[orm_models.TaskORM],
) -> PerformanceSummary:
    lower, upper = _day_bounds(start, end)
    created_in_range = session.execute(
        select(func.count(orm_models.TaskORM.id)).where(
            orm_models.TaskORM.created_at >= lower,
            orm_models.TaskORM.created_at < upper,
            *_in_scope(orm_models.TaskORM.project_id, scope),
        )
    ).scalar_one()

    durations = [
        Decimal(str(max((task.completed_at - task.created_at).total_seconds(), 0))) / Decimal(3600)
        for task in completed
    ]
    average_completion = _round(sum(durations, Decimal("0")) / len(durations)) if durations else Decimal("0.00")
    total_hours = sum(hours_by_day.values(), Decimal("0"))

    return PerformanceSummary(
        totalHours=float(_round(total_hours)),
        completedTasks=len(completed),
        averageCompletionHours=float(average_completion),
        completionRate=float(_ratio(len(completed), created_in_range)),
        productivityScore=float(productivity_score(completed, created_in_range)),
    )


def dashboard_analytics(
    session: Session,
    actor: UserORM,
    *,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    project_id: Optional[str] = None,
    date_range: Optional[str] = None,
) -> DashboardAnalytics:
    start, end = _window(start_date, end_date, date_range)
    scope = _scope_project_ids(session, actor, project_id)
    days = _days(start, end)
    logger.info("Computing dashboard for %s from %s to %s", actor.email, start, end)

    hours_by_day = _hours_per_day(session, start, end, scope)
    completed = _completed_tasks(session, start, end, scope)
    return DashboardAnalytics(
        days=len(days),
        timeTracking=_time_tracking_chart(days, hours_by_day),
        taskCompletion=_task_completion_chart(days, completed),
        performance=_performance(session, start, end, scope, hours_by_day, completed),
    )


def project_dashboard(
    session: Session,
    actor: UserORM,
    project_id: str,
    date_range: Optional[str] = None,
) -> DashboardAnalytics:
    return dashboard_analytics(session, actor, project_id=project_id, date_range=date_range)


def time_tracking_data(
    session: Session,
    actor: UserORM,
    *,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    project_id: Optional[str] = None,
) -> ChartData:
    start, end = _window(start_date, end_date)
    scope = _scope_project_ids(session, actor, project_id)
    return _time_tracking_chart(_days(start, end), _hours_per_day(session, start, end, scope))


def task_completion_data(
    session: Session,
    actor: UserORM,
    *,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    project_id: Optional[str] = None,
) -> ChartData:
    start, end = _window(start_date, end_date)
    scope = _scope_project_ids(session, actor, project_id)
    return _task_completion_chart(_days(start, end), _completed_tasks(session, start, end, scope))


def performance_summary(
    session: Session,
    actor: UserORM,
    *,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    project_id: Optional[str] = None,
) -> PerformanceSummary:
    start, end = _window(start_date, end_date)
    scope = _scope_project_ids(session, actor, project_id)
    completed = _completed_tasks(session, start, end, scope)
    return _performance(session, start, end, scope, _hours_per_day(session, start, end, scope), completed)


def daily_performance(
    session: Session,
    actor: UserORM,
    *,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    project_id: Optional[str] = None,
) -> list[DailyPerformance]:
    """Per-day totals over time logs; days without logged time are omitted.

    ``tasksAssigned`` counts the distinct tasks worked on that day and
    ``tasksCompleted`` the subset of them that are now ``DONE``.
    """
    start, end = _window(start_date, end_date)
    scope = _scope_project_ids(session, actor, project_id)
    task_id = orm_models.TaskORM.id
    stmt = (
        select(
            orm_models.TimeLogORM.date,
            func.coalesce(func.sum(orm_models.TimeLogORM.hours), 0),
            func.count(func.distinct(case((orm_models.TaskORM.status == TaskStatus.DONE, task_id)))),
            func.count(func.distinct(task_id)),
        )
        .join(orm_models.TaskORM, task_id == orm_models.TimeLogORM.task_id)
        .where(
            orm_models.TimeLogORM.date >= start,
            orm_models.TimeLogORM.date <= end,
            *_in_scope(orm_models.TaskORM.project_id, scope),
        )
        .group_by(orm_models.TimeLogORM.date)
        .order_by(orm_models.TimeLogORM.date)
    )
    return [
        DailyPerformance(
            date=day,
            hoursLogged=float(_round(Decimal(str(hours)))),
            tasksCompleted=completed,
            tasksAssigned=worked,
        )
        for day, hours, completed, worked in session.execute(stmt).all()
    ]
