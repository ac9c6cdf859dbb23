from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from backend.app.config import settings
from backend.app.database import Base
from backend.app.orm_models import RevokedTokenORM, UserRole, utcnow
from backend.app.services import auth, revocation
from backend.app.services.errors import AccessDenied, Conflict, InvalidToken, ValidationFailed
from backend.app.services.revocation import is_token_revoked, purge_expired_tokens, revoke_token
from backend.app.services.users import (
    active_users,
    assignable_users,
    count_active,
    count_by_role,
    get_preferences,
    get_visible_user,
    list_users,
    update_preferences,
    update_user,
    users_by_role,
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


@pytest.fixture()
def user(session):
    return auth.create_user(session, email="Dev@Example.com", password="secret1", full_name="Dev One")


def test_register_normalizes_email_and_defaults_role(session, user):
    assert user.email == "dev@example.com"
    assert user.role == UserRole.DEVELOPER
    assert user.password_hash != "secret1"

    with pytest.raises(Conflict):
        auth.create_user(session, email="dev@example.com", password="secret1", full_name="Again")
    with pytest.raises(ValidationFailed):
        auth.create_user(session, email="short@example.com", password="123", full_name="Short")


def test_register_accepts_prefixed_role(session):
    lead = auth.create_user(
        session,
        email="lead@example.com",
        password="secret1",
        full_name="Lead",
        role="ROLE_TEAM_LEAD",
    )
    assert lead.role == UserRole.TEAM_LEAD


def test_login_returns_token_pair(session, user):
    tokens = auth.login(session, "dev@example.com", "secret1")

    assert tokens["tokenType"] == "bearer"
    assert auth.decode_token(tokens["accessToken"])["sub"] == "dev@example.com"
    assert auth.decode_token(tokens["refreshToken"], expected_type=auth.REFRESH_TOKEN)["type"] == "refresh"
    assert tokens["user"].email == "dev@example.com"


def test_login_rejects_bad_credentials_and_inactive_users(session, user):
    with pytest.raises(AccessDenied, match="Invalid email or password"):
        auth.login(session, "dev@example.com", "wrong")

    user.is_active = False
    session.flush()
    with pytest.raises(AccessDenied, match="deactivated"):
        auth.login(session, "dev@example.com", "secret1")


def test_access_token_cannot_be_used_as_refresh(session, user):
    tokens = auth.login(session, "dev@example.com", "secret1")
    with pytest.raises(InvalidToken):
        auth.refresh_tokens(session, tokens["accessToken"])
    with pytest.raises(InvalidToken, match="expired"):
        auth.decode_token(auth.create_access_token(user.email, timedelta(seconds=-5)))


def test_refresh_rotates_and_rejects_reuse(session, user):
    tokens = auth.login(session, "dev@example.com", "secret1")

    rotated = auth.refresh_tokens(session, tokens["refreshToken"])
    assert rotated["refreshToken"] != tokens["refreshToken"]

    with pytest.raises(AccessDenied, match="revoked"):
        auth.refresh_tokens(session, tokens["refreshToken"])


def test_refresh_race_loser_is_rejected(tmp_path, monkeypatch):
    engine = create_engine(f"sqlite:///{tmp_path / 'tokens.db'}", future=True)
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)

    with factory() as setup:
        auth.create_user(setup, email="dev@example.com", password="secret1", full_name="Dev One")
        refresh = auth.login(setup, "dev@example.com", "secret1")["refreshToken"]
        setup.commit()

    with factory() as first:
        auth.refresh_tokens(first, refresh)
        first.commit()

    # The second request read the store before the first one wrote to it.
    monkeypatch.setattr(auth, "is_token_revoked", lambda session, jti: False)
    monkeypatch.setattr(revocation, "is_token_revoked", lambda session, jti: False)
    with factory() as second:
        with pytest.raises(AccessDenied, match="revoked"):
            auth.refresh_tokens(second, refresh)
        second.rollback()

    engine.dispose()


def test_revocation_is_persisted(session, user):
    tokens = auth.login(session, "dev@example.com", "secret1")
    jti = auth.decode_token(tokens["refreshToken"], expected_type=auth.REFRESH_TOKEN)["jti"]

    auth.logout(session, tokens["refreshToken"])
    auth.logout(session, tokens["refreshToken"])
    auth.logout(session, "not-a-token")

    row = session.get(RevokedTokenORM, jti)
    assert row is not None
    assert row.user_id == user.id
    assert is_token_revoked(session, jti)


def test_purge_expired_tokens(session):
    now = utcnow()
    revoke_token(session, "old", expires_at=now - timedelta(hours=1))
    revoke_token(session, "fresh", expires_at=now + timedelta(hours=1))
    assert not revoke_token(session, "fresh", expires_at=now + timedelta(hours=1))

    assert purge_expired_tokens(session, now) == 1
    assert not is_token_revoked(session, "old")
    assert is_token_revoked(session, "fresh")


def test_change_password(session, user):
    with pytest.raises(ValidationFailed, match="incorrect"):
        auth.change_password(session, user, "nope", "another1")
    with pytest.raises(ValidationFailed, match="different"):
        auth.change_password(session, user, "secret1", "secret1")

    auth.change_password(session, user, "secret1", "another1")
    assert auth.authenticate_user(session, "dev@example.com", "another1") is not None


def test_ensure_default_admin_is_idempotent(session):
    auth.ensure_default_admin(session)
    auth.ensure_default_admin(session)
    admin = auth.get_user_by_email(session, settings.default_admin_email)

    assert count_by_role(session, admin, UserRole.ADMIN) == 1


# === Users ==================================================================

def test_update_user_rules(session, user):
    admin = auth.create_user(
        session, email="root@example.com", password="secret1", full_name="Root", role=UserRole.ADMIN
    )

    update_user(session, user, user.id, full_name="Renamed")
    assert user.full_name == "Renamed"

    with pytest.raises(AccessDenied):
        update_user(session, user, user.id, role="ADMIN")
    with pytest.raises(AccessDenied):
        update_user(session, user, admin.id, full_name="Hijack")
    with pytest.raises(Conflict):
        update_user(session, user, user.id, email="root@example.com")

    update_user(session, admin, user.id, role="qa", is_active=False)
    assert user.role == UserRole.QA
    assert not user.is_active


def test_user_listing_and_assignable(session, user):
    manager = auth.create_user(
        session, email="pm@example.com", password="secret1", full_name="Manager", role=UserRole.PROJECT_MANAGER
    )
    auth.create_user(session, email="root@example.com", password="secret1", full_name="Root", role=UserRole.ADMIN)

    items, total = list_users(session, manager, search="DEV")
    assert [item.id for item in items] == [user.id]
    assert [item.id for item in assignable_users(session)] == [user.id, manager.id]
    assert list_users(session, manager, role="ADMIN")[1] == 1
    assert count_active(session, manager) == 3
    assert [item.email for item in users_by_role(session, manager, "developer")] == ["dev@example.com"]


def test_user_directory_is_limited_to_managers(session, user):
    other = auth.create_user(session, email="qa@example.com", password="secret1", full_name="Tester")

    with pytest.raises(AccessDenied):
        list_users(session, user)
    with pytest.raises(AccessDenied):
        active_users(session, user)
    with pytest.raises(AccessDenied):
        users_by_role(session, user, "QA")
    with pytest.raises(AccessDenied):
        count_by_role(session, user, "QA")
    with pytest.raises(AccessDenied):
        count_active(session, user)
    with pytest.raises(AccessDenied):
        get_visible_user(session, user, other.id)

    assert get_visible_user(session, user, user.id).id == user.id


def test_preferences_merge(session, user):
    defaults = get_preferences(session, user, user.id)
    assert defaults["theme"] == "light"

    merged = update_preferences(session, user, user.id, {"notifications": {"push": False}})
    assert merged["notifications"]["push"] is False
    assert merged["notifications"]["email"] is True
    assert merged["theme"] == "light"
