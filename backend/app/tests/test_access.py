from __future__ import annotations

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from backend.app.database import Base
from backend.app.orm_models import MemberRole, ProjectMemberORM, ProjectORM, UserORM, UserRole
from backend.app.services.access import (
    can_assign_task,
    can_create_or_update_resource,
    can_create_project,
    can_delete_resource,
    can_edit_project,
    can_view_project,
    ensure_can_edit_project,
    ensure_can_view_project,
    ensure_self_or_administrator,
    find_member_role,
    is_administrator,
    is_project_manager_tier,
    is_team_member_tier,
    parse_member_role,
    parse_user_role,
    resolve_principal,
)
from backend.app.services.errors import AccessDenied, ValidationFailed


def _make_session_factory():
    engine = create_engine("sqlite:///:memory:", future=True)
    Base.metadata.create_all(bind=engine)
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)


@pytest.fixture()
def session():
    factory = _make_session_factory()
    with factory() as session:
        yield session


def _make_user(session, email: str, *, role: UserRole = UserRole.DEVELOPER, active: bool = True) -> UserORM:
    user = UserORM(email=email, full_name=email.split("@")[0].title(), role=role, password_hash="stub", is_active=active)
    session.add(user)
    session.flush()
    return user


@pytest.fixture()
def project(session):
    owner = _make_user(session, "owner@example.com", role=UserRole.PROJECT_MANAGER)
    project = ProjectORM(name="Apollo", created_by=owner)
    project.members.append(ProjectMemberORM(user=owner, role=MemberRole.PROJECT_MANAGER))
    session.add(project)
    session.flush()
    return project


def _join(session, project, user, role: MemberRole) -> None:
    session.add(ProjectMemberORM(project=project, user=user, role=role))
    session.flush()


def test_resolve_principal_rejects_missing_unknown_and_inactive(session):
    _make_user(session, "ghost@example.com", active=False)

    with pytest.raises(AccessDenied, match="User not authenticated"):
        resolve_principal(session, None)
    with pytest.raises(AccessDenied, match="User not found"):
        resolve_principal(session, "nobody@example.com")
    with pytest.raises(AccessDenied, match="deactivated"):
        resolve_principal(session, "ghost@example.com")


def test_resolve_principal_ignores_case(session):
    user = _make_user(session, "dev@example.com")
    assert resolve_principal(session, "  DEV@Example.com ").id == user.id


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("ADMIN", UserRole.ADMIN),
        ("role_project_manager", UserRole.PROJECT_MANAGER),
        (" team_lead ", UserRole.TEAM_LEAD),
        (UserRole.QA, UserRole.QA),
    ],
)
def test_parse_user_role_accepts_string_forms(raw, expected):
    assert parse_user_role(raw) is expected


def test_parse_roles_reject_unknown_values():
    with pytest.raises(ValidationFailed):
        parse_user_role("OWNER")
    with pytest.raises(ValidationFailed):
        parse_member_role("ADMIN")


def test_tier_predicates(session):
    admin = _make_user(session, "admin@example.com", role=UserRole.ADMIN)
    manager = _make_user(session, "pm@example.com", role=UserRole.PROJECT_MANAGER)
    developer = _make_user(session, "dev@example.com")
    retired = _make_user(session, "old@example.com", role=UserRole.ADMIN, active=False)

    assert is_administrator(admin)
    assert not is_administrator(manager)
    assert is_project_manager_tier(admin) and is_project_manager_tier(manager)
    assert not is_project_manager_tier(developer)
    assert is_team_member_tier(developer)
    assert not is_team_member_tier(None)
    assert not is_administrator(retired)
    assert not is_team_member_tier(retired)


def test_view_requires_membership_or_admin(session, project):
    admin = _make_user(session, "admin@example.com", role=UserRole.ADMIN)
    outsider = _make_user(session, "outsider@example.com")
    qa = _make_user(session, "qa@example.com", role=UserRole.QA)
    _join(session, project, qa, MemberRole.QA)

    assert can_view_project(session, project, admin)
    assert can_view_project(session, project, qa)
    assert not can_view_project(session, project, outsider)
    assert not can_view_project(session, project, None)
    with pytest.raises(AccessDenied, match="not a member"):
        ensure_can_view_project(session, project, outsider)


def test_edit_depends_on_member_role_not_global_role(session, project):
    global_manager = _make_user(session, "other-pm@example.com", role=UserRole.PROJECT_MANAGER)
    developer = _make_user(session, "dev@example.com")
    _join(session, project, global_manager, MemberRole.DEVELOPER)
    _join(session, project, developer, MemberRole.TEAM_LEAD)

    assert not can_edit_project(session, project, global_manager)
    assert can_edit_project(session, project, developer)
    with pytest.raises(AccessDenied):
        ensure_can_edit_project(session, project, global_manager)


def test_edit_rechecks_membership_after_role_change(session, project):
    developer = _make_user(session, "dev@example.com")
    _join(session, project, developer, MemberRole.DEVELOPER)
    assert not can_edit_project(session, project, developer)

    member = next(item for item in project.members if item.user_id == developer.id)
    member.role = MemberRole.TEAM_LEAD
    session.flush()

    assert find_member_role(session, project.id, developer.id) is MemberRole.TEAM_LEAD
    assert can_edit_project(session, project, developer)


def test_delete_allowed_for_creator_even_without_elevated_role(session, project):
    author = _make_user(session, "author@example.com")
    peer = _make_user(session, "peer@example.com")
    _join(session, project, author, MemberRole.DEVELOPER)
    _join(session, project, peer, MemberRole.DEVELOPER)
    owner = project.created_by

    assert can_delete_resource(session, project, author.id, author)
    assert not can_delete_resource(session, project, author.id, peer)
    assert can_delete_resource(session, project, author.id, owner)


def test_global_role_decisions(session):
    lead = _make_user(session, "lead@example.com", role=UserRole.TEAM_LEAD)
    developer = _make_user(session, "dev@example.com")
    qa = _make_user(session, "qa@example.com", role=UserRole.QA)

    assert can_create_project(lead)
    assert not can_create_project(developer)
    assert can_assign_task(lead)
    assert not can_assign_task(qa)
    assert can_create_or_update_resource(qa)
    assert not can_create_or_update_resource(None)


def test_self_or_administrator(session):
    admin = _make_user(session, "admin@example.com", role=UserRole.ADMIN)
    developer = _make_user(session, "dev@example.com")

    ensure_self_or_administrator(developer, developer.id)
    ensure_self_or_administrator(admin, developer.id)
    with pytest.raises(AccessDenied):
        ensure_self_or_administrator(developer, admin.id)
