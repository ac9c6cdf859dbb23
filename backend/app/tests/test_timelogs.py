from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from backend.app.database import Base
from backend.app.orm_models import TimeLogORM, UserORM, UserRole, today
from backend.app.schemas import ProjectCreate, ProjectMemberRequest, TaskCreate
from backend.app.services.errors import AccessDenied, Conflict, ValidationFailed
from backend.app.services.projects import create_project
from backend.app.services.tasks import create_task, serialize_task
from backend.app.services.timelogs import (
    create_time_log,
    delete_time_log,
    get_time_log,
    list_task_time_logs,
    list_user_time_logs,
    total_hours_for_task,
)


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
    peer = _make_user(session, "peer@example.com")
    project = create_project(
        session,
        manager,
        ProjectCreate(
            name="Apollo",
            members=[
                ProjectMemberRequest(userId=developer.id, role="DEVELOPER"),
                ProjectMemberRequest(userId=peer.id, role="DEVELOPER"),
            ],
        ),
    )
    task = create_task(session, manager, project.id, TaskCreate(title="Ship"))
    return {"manager": manager, "developer": developer, "peer": peer, "project": project, "task": task}


def test_log_time_and_totals(session, ctx):
    current = today()
    create_time_log(session, ctx["developer"], ctx["task"].id, hours="2.5", log_date=current)
    create_time_log(session, ctx["developer"], ctx["task"].id, hours=Decimal("1.25"), log_date=current - timedelta(days=1))
    create_time_log(session, ctx["peer"], ctx["task"].id, hours=3, log_date=current)

    assert total_hours_for_task(session, ctx["manager"], ctx["task"].id) == Decimal("6.75")
    assert serialize_task(session, ctx["task"]).totalTimeLogged == pytest.approx(6.75)

    items, total, hours = list_task_time_logs(session, ctx["peer"], ctx["task"].id, start_date=current)
    assert total == 2
    assert hours == Decimal("5.5")


@pytest.mark.parametrize(
    "hours", [0, "-1", "24.5", "24.006", "abc", "NaN", "Infinity", None, Decimal("0.001"), Decimal("0.004")]
)
def test_hours_must_be_within_a_day(session, ctx, hours):
    with pytest.raises(ValidationFailed):
        create_time_log(session, ctx["developer"], ctx["task"].id, hours=hours, log_date=today())


def test_hours_are_stored_rounded_and_positive(session, ctx):
    log = create_time_log(session, ctx["developer"], ctx["task"].id, hours=Decimal("0.005"), log_date=today())
    session.refresh(log)
    assert log.hours == Decimal("0.01")

    other = create_time_log(
        session, ctx["peer"], ctx["task"].id, hours="1.235", log_date=today() - timedelta(days=1)
    )
    session.refresh(other)
    assert other.hours == Decimal("1.24")


def test_future_dates_and_duplicates_are_rejected(session, ctx):
    with pytest.raises(ValidationFailed, match="future"):
        create_time_log(
            session,
            ctx["developer"],
            ctx["task"].id,
            hours=1,
            log_date=today() + timedelta(days=1),
        )

    create_time_log(session, ctx["developer"], ctx["task"].id, hours=1, log_date=today())
    with pytest.raises(Conflict):
        create_time_log(session, ctx["developer"], ctx["task"].id, hours=2, log_date=today())


def test_user_time_logs_are_private_to_self_and_leads(session, ctx):
    create_time_log(session, ctx["developer"], ctx["task"].id, hours=1, log_date=today())

    items, total, hours = list_user_time_logs(session, ctx["developer"], ctx["developer"].id)
    assert total == 1
    items, total, hours = list_user_time_logs(
        session, ctx["manager"], ctx["developer"].id, project_id=ctx["project"].id
    )
    assert hours == Decimal("1")

    with pytest.raises(AccessDenied):
        list_user_time_logs(session, ctx["peer"], ctx["developer"].id)
    with pytest.raises(ValidationFailed):
        list_user_time_logs(
            session,
            ctx["developer"],
            ctx["developer"].id,
            start_date=today(),
            end_date=today() - timedelta(days=1),
        )


def test_time_log_delete_rules(session, ctx):
    log = create_time_log(session, ctx["developer"], ctx["task"].id, hours=1, log_date=today())
    assert get_time_log(session, ctx["peer"], log.id).id == log.id

    with pytest.raises(AccessDenied):
        delete_time_log(session, ctx["peer"], log.id)
    delete_time_log(session, ctx["manager"], log.id)
    assert session.get(TimeLogORM, log.id) is None
