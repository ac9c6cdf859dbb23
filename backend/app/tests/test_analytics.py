from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from backend.app.database import Base
from backend.app.orm_models import UserORM, UserRole, today, utcnow
from backend.app.schemas import ProjectCreate, ProjectMemberRequest, TaskCreate
from backend.app.services.analytics import (
    daily_performance,
    dashboard_analytics,
    performance_summary,
    productivity_score,
    project_analytics,
    project_dashboard,
    task_completion_data,
    time_tracking_data,
    user_performance,
)
from backend.app.services.errors import AccessDenied, ValidationFailed
from backend.app.services.projects import create_project
from backend.app.services.tasks import create_task, update_task_status
from backend.app.services.timelogs import create_time_log


def _make_session_factory():
    engine = create_engine("sqlite:///:memory:", future=True)
    Base.metadata.create_all(bind=engine)
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)


@pytest.fixture()
def session():
    factory = _make_session_factory()
    with factory() as session:
        yield session


def _make_user(session, email: str, *, role: UserRole = UserRole.DEVELOPER) -> UserORM:
    user = UserORM(email=email, full_name=email.split("@")[0].title(), role=role, password_hash="stub")
    session.add(user)
    session.flush()
    return user


@pytest.fixture()
def ctx(session):
    manager = _make_user(session, "pm@example.com", role=UserRole.PROJECT_MANAGER)
    developer = _make_user(session, "dev@example.com")
    project = create_project(
        session,
        manager,
        ProjectCreate(name="Apollo", members=[ProjectMemberRequest(userId=developer.id, role="DEVELOPER")]),
    )
    done = create_task(session, manager, project.id, TaskCreate(title="Done", assigneeId=developer.id))
    create_task(session, manager, project.id, TaskCreate(title="Doing", status="IN_PROGRESS", assigneeId=developer.id))
    create_task(session, manager, project.id, TaskCreate(title="Later"))
    update_task_status(session, developer, done.id, "DONE")
    create_time_log(session, developer, done.id, hours="3", log_date=today())
    create_time_log(session, developer, done.id, hours="2", log_date=today() - timedelta(days=1))
    return {"manager": manager, "developer": developer, "project": project}


def test_project_analytics_counts_done_tasks(session, ctx):
    result = project_analytics(session, ctx["developer"], ctx["project"].id)

    assert result.period == "WEEK"
    assert (result.endDate - result.startDate).days == 7
    assert result.totalTasks == 3
    assert result.completedTasks == 1
    assert result.inProgressTasks == 1
    assert result.completionRate == pytest.approx(0.33)
    assert result.hoursLogged == pytest.approx(5.0)
    assert result.averageHoursPerDay == pytest.approx(0.63)

    by_user = {member.userId: member for member in result.members}
    assert by_user[ctx["developer"].id].tasksAssigned == 2
    assert by_user[ctx["developer"].id].tasksCompleted == 1
    assert by_user[ctx["manager"].id].hoursLogged == 0


def test_project_analytics_month_period_and_validation(session, ctx):
    result = project_analytics(session, ctx["manager"], ctx["project"].id, "month")
    assert (result.endDate - result.startDate).days == 30

    with pytest.raises(ValidationFailed):
        project_analytics(session, ctx["manager"], ctx["project"].id, "YEAR")


def test_project_analytics_requires_membership(session, ctx):
    outsider = _make_user(session, "outsider@example.com", role=UserRole.TEAM_LEAD)
    with pytest.raises(AccessDenied):
        project_analytics(session, outsider, ctx["project"].id)


def test_user_performance(session, ctx):
    developer = ctx["developer"]
    result = user_performance(session, developer, developer.id)

    assert result.tasksAssigned == 2
    assert result.tasksCompleted == 1
    assert result.completionRate == pytest.approx(0.5)
    assert result.totalHours == pytest.approx(5.0)
    assert len(result.daily) == 31
    assert result.daily[-1].hours == pytest.approx(3.0)
    assert result.daily[-1].tasksCompleted == 1
    assert [(item.projectName, item.hours) for item in result.projects] == [("Apollo", 5.0)]


def test_user_performance_access(session, ctx):
    peer = _make_user(session, "peer@example.com")
    with pytest.raises(AccessDenied):
        user_performance(session, peer, ctx["developer"].id)

    result = user_performance(session, ctx["manager"], ctx["developer"].id, start_date=today(), end_date=today())
    assert result.totalHours == pytest.approx(3.0)
    with pytest.raises(ValidationFailed):
        user_performance(session, ctx["manager"], ctx["developer"].id, start_date=today(), end_date=today() - timedelta(days=1))


def test_dashboard_chart_data(session, ctx):
    result = dashboard_analytics(session, ctx["developer"])

    assert result.days == 7
    assert result.timeTracking.labels[-1] == today().isoformat()
    hours = result.timeTracking.datasets[0]
    assert hours.label == "Hours Logged"
    assert hours.data[-2:] == [2.0, 3.0]
    completed = result.taskCompletion.datasets[0]
    assert completed.label == "Tasks Completed"
    assert completed.data[-1] == 1.0
    assert result.performance.completedTasks == 1
    assert result.performance.completionRate == pytest.approx(0.33)


def test_dashboard_is_scoped_to_memberships(session, ctx):
    outsider = _make_user(session, "outsider@example.com")
    result = dashboard_analytics(session, outsider)

    assert sum(result.timeTracking.datasets[0].data) == 0
    assert result.performance.completedTasks == 0
    with pytest.raises(AccessDenied):
        dashboard_analytics(session, outsider, project_id=ctx["project"].id)


def test_performance_summary_average_completion(session, ctx):
    done = next(item for item in ctx["project"].tasks if item.title == "Done")
    done.created_at = utcnow() - timedelta(hours=10)
    session.flush()

    summary = performance_summary(session, ctx["manager"], project_id=ctx["project"].id)

    assert summary.completedTasks == 1
    assert summary.totalHours == pytest.approx(5.0)
    assert summary.averageCompletionHours == pytest.approx(10.0, abs=0.05)


def test_dashboard_date_range(session, ctx):
    assert dashboard_analytics(session, ctx["developer"], date_range="week").days == 8
    assert project_dashboard(session, ctx["developer"], ctx["project"].id, "MONTH").days == 31
    assert dashboard_analytics(session, ctx["developer"], start_date=today(), date_range="MONTH").days == 1

    with pytest.raises(ValidationFailed):
        dashboard_analytics(session, ctx["developer"], date_range="YEAR")
    outsider = _make_user(session, "outsider@example.com")
    with pytest.raises(AccessDenied):
        project_dashboard(session, outsider, ctx["project"].id)


def test_chart_endpoints_match_dashboard(session, ctx):
    hours = time_tracking_data(session, ctx["developer"])
    assert len(hours.labels) == 7
    assert hours.datasets[0].label == "Hours Logged"
    assert hours.datasets[0].data[-2:] == [2.0, 3.0]

    completion = task_completion_data(session, ctx["developer"], project_id=ctx["project"].id)
    assert completion.datasets[0].label == "Tasks Completed"
    assert completion.datasets[0].data[-1] == 1.0


def test_daily_performance(session, ctx):
    rows = daily_performance(session, ctx["manager"], project_id=ctx["project"].id)

    assert [row.date for row in rows] == [today() - timedelta(days=1), today()]
    assert [row.hoursLogged for row in rows] == [2.0, 3.0]
    assert all(row.tasksAssigned == 1 and row.tasksCompleted == 1 for row in rows)

    outsider = _make_user(session, "outsider@example.com")
    assert daily_performance(session, outsider) == []
    with pytest.raises(ValidationFailed):
        daily_performance(session, ctx["manager"], start_date=today(), end_date=today() - timedelta(days=2))


def test_productivity_score(session, ctx):
    summary = performance_summary(session, ctx["manager"], project_id=ctx["project"].id)
    assert summary.productivityScore == pytest.approx(53.33)

    done = next(item for item in ctx["project"].tasks if item.title == "Done")
    done.deadline = today() - timedelta(days=1)
    session.flush()
    late = performance_summary(session, ctx["manager"], project_id=ctx["project"].id)
    assert late.productivityScore == pytest.approx(23.33)

    assert productivity_score([], 0) == 0
