from __future__ import annotations

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from backend.app.config import settings
from backend.app.database import Base, get_session
from backend.app.main import app
from backend.app.orm_models import UserRole
from backend.app.services.auth import create_user


@pytest.fixture()
def client():
    engine = create_engine(
        "sqlite://",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)

    def _override_session():
        session = factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    with factory() as session:
        create_user(session, email="pm@example.com", password="secret1", full_name="Manager", role=UserRole.PROJECT_MANAGER)
        create_user(session, email="dev@example.com", password="secret1", full_name="Developer")
        create_user(session, email="out@example.com", password="secret1", full_name="Outsider")
        session.commit()

    app.dependency_overrides[get_session] = _override_session
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def _login(client, email: str) -> dict:
    response = client.post("/auth/login", json={"email": email, "password": "secret1"})
    assert response.status_code == 200, response.text
    return response.json()


def _auth(client, email: str) -> dict:
    return {"Authorization": f"Bearer {_login(client, email)['accessToken']}"}


def _user_id(client, headers: dict) -> str:
    return client.get("/auth/me", headers=headers).json()["id"]


def test_health(client):
    assert client.get("/health").json()["status"] == "ok"


def test_missing_or_bad_token_is_401(client):
    assert client.get("/auth/me").status_code == 401

    response = client.get("/auth/me", headers={"Authorization": "Bearer garbage"})
    assert response.status_code == 401
    assert response.json()["detail"]["code"] == "invalid_token"


def test_register_and_duplicate_conflict(client):
    payload = {"email": "new@example.com", "password": "secret1", "fullName": "New Person"}
    created = client.post("/auth/register", json=payload)
    assert created.status_code == 201
    assert created.json()["role"] == "DEVELOPER"

    duplicate = client.post("/auth/register", json=payload)
    assert duplicate.status_code == 409
    assert duplicate.json()["detail"]["code"] == "unique_violation"


def test_login_failure_is_403(client):
    response = client.post("/auth/login", json={"email": "dev@example.com", "password": "wrong"})
    assert response.status_code == 403
    assert response.json()["detail"]["message"] == "Invalid email or password"


def test_refresh_and_logout_flow(client):
    tokens = _login(client, "dev@example.com")

    rotated = client.post("/auth/refresh", json={"refreshToken": tokens["refreshToken"]})
    assert rotated.status_code == 200
    reused = client.post("/auth/refresh", json={"refreshToken": tokens["refreshToken"]})
    assert reused.status_code == 403

    new_refresh = rotated.json()["refreshToken"]
    assert client.post("/auth/logout", json={"refreshToken": new_refresh}).status_code == 204
    assert client.post("/auth/refresh", json={"refreshToken": new_refresh}).status_code == 403


def test_project_lifecycle_over_http(client):
    pm = _auth(client, "pm@example.com")
    dev = _auth(client, "dev@example.com")
    outsider = _auth(client, "out@example.com")
    dev_id = _user_id(client, dev)

    created = client.post(
        "/projects",
        json={"name": "Apollo", "members": [{"userId": dev_id, "role": "DEVELOPER"}]},
        headers=pm,
    )
    assert created.status_code == 201, created.text
    project = created.json()
    assert project["memberCount"] == 2

    assert client.post("/projects", json={"name": "Nope"}, headers=dev).status_code == 403
    assert client.post("/projects", json={"name": "Apollo"}, headers=pm).status_code == 409
    assert client.get(f"/projects/{project['id']}", headers=outsider).status_code == 403
    assert client.get("/projects/missing", headers=pm).status_code == 404
    assert client.get("/projects", headers=pm).status_code == 403
    assert [item["name"] for item in client.get("/projects/my-projects", headers=dev).json()] == ["Apollo"]

    duplicate_member = client.post(
        f"/projects/{project['id']}/members",
        json={"userId": dev_id, "role": "QA"},
        headers=pm,
    )
    assert duplicate_member.status_code == 409


def test_task_flow_over_http(client):
    pm = _auth(client, "pm@example.com")
    dev = _auth(client, "dev@example.com")
    dev_id = _user_id(client, dev)
    project = client.post(
        "/projects",
        json={"name": "Apollo", "members": [{"userId": dev_id, "role": "DEVELOPER"}]},
        headers=pm,
    ).json()

    task = client.post(f"/projects/{project['id']}/tasks", json={"title": "Ship"}, headers=dev)
    assert task.status_code == 201
    task_id = task.json()["id"]

    bad = client.post(f"/projects/{project['id']}/tasks", json={"title": "Bad", "priority": "SOMEDAY"}, headers=dev)
    assert bad.status_code == 400
    assert bad.json()["detail"]["code"] == "validation_failed"

    done = client.patch(f"/tasks/{task_id}/status", json={"status": "DONE"}, headers=dev)
    assert done.json()["completedAt"] is not None

    page = client.get(f"/projects/{project['id']}/tasks", params={"size": 500}, headers=dev).json()
    assert page["size"] == 100
    assert page["total"] == 1

    board = client.get(f"/projects/{project['id']}/board", params={"groupBy": "PRIORITY"}, headers=dev).json()
    assert [column["key"] for column in board["columns"]] == ["LOW", "MEDIUM", "HIGH", "URGENT"]

    comment = client.post(f"/tasks/{task_id}/comments", json={"content": "done!"}, headers=dev)
    assert comment.status_code == 201
    assert client.get(f"/tasks/{task_id}/comments/count", headers=pm).json() == {"count": 1}

    upload = client.post(
        f"/tasks/{task_id}/attachments",
        files={"file": ("notes.pdf", b"%PDF-1.4", "application/pdf")},
        headers=dev,
    )
    assert upload.status_code == 201, upload.text
    download = client.get(f"/attachments/{upload.json()['id']}/download", headers=pm)
    assert download.content == b"%PDF-1.4"
    assert "notes.pdf" in download.headers["content-disposition"]

    assert client.delete(f"/tasks/{task_id}", headers=dev).status_code == 204
    assert client.get(f"/tasks/{task_id}", headers=dev).status_code == 404


def test_analytics_endpoints(client):
    pm = _auth(client, "pm@example.com")
    project = client.post("/projects", json={"name": "Apollo"}, headers=pm).json()

    analytics = client.get(f"/projects/{project['id']}/analytics", params={"period": "MONTH"}, headers=pm)
    assert analytics.status_code == 200
    assert analytics.json()["period"] == "MONTH"

    dashboard = client.get("/analytics", headers=pm).json()
    assert [dataset["label"] for dataset in dashboard["timeTracking"]["datasets"]] == ["Hours Logged"]
    assert client.get("/analytics/performance", headers=pm).status_code == 200
    assert "productivityScore" in dashboard["performance"]


def test_extended_analytics_endpoints(client):
    pm = _auth(client, "pm@example.com")
    dev = _auth(client, "dev@example.com")
    project = client.post("/projects", json={"name": "Apollo"}, headers=pm).json()

    week = client.get("/analytics", params={"dateRange": "WEEK"}, headers=pm).json()
    assert week["days"] == 8
    assert client.get("/analytics", params={"dateRange": "YEAR"}, headers=pm).status_code == 400

    scoped = client.get(f"/analytics/projects/{project['id']}", params={"dateRange": "MONTH"}, headers=pm)
    assert scoped.json()["days"] == 31
    assert client.get(f"/analytics/projects/{project['id']}", headers=dev).status_code == 403

    assert client.get("/analytics/daily-performance", headers=pm).json() == []
    tracking = client.get("/analytics/time-tracking", headers=pm).json()
    assert tracking["datasets"][0]["label"] == "Hours Logged"
    completion = client.get("/analytics/task-completion", headers=pm).json()
    assert completion["datasets"][0]["label"] == "Tasks Completed"


def test_user_directory_requires_manager_role(client):
    pm = _auth(client, "pm@example.com")
    dev = _auth(client, "dev@example.com")
    dev_id = _user_id(client, dev)
    pm_id = _user_id(client, pm)

    for path in ("/users", "/users/active", "/users/role/QA", "/users/count/role/QA", "/users/count/active"):
        assert client.get(path, headers=dev).status_code == 403, path
        assert client.get(path, headers=pm).status_code == 200, path

    assert client.get(f"/users/{pm_id}", headers=dev).status_code == 403
    assert client.get(f"/users/{dev_id}", headers=dev).status_code == 200
    assert client.get(f"/users/{dev_id}", headers=pm).status_code == 200
    assert client.get("/users/assignable", headers=dev).status_code == 200


def test_oversized_upload_is_rejected(client, monkeypatch):
    pm = _auth(client, "pm@example.com")
    project = client.post("/projects", json={"name": "Apollo"}, headers=pm).json()
    task = client.post(f"/projects/{project['id']}/tasks", json={"title": "Ship"}, headers=pm).json()
    monkeypatch.setattr(settings, "max_upload_size_bytes", 16)

    response = client.post(
        f"/tasks/{task['id']}/attachments",
        files={"file": ("notes.pdf", b"%PDF" * 100, "application/pdf")},
        headers=pm,
    )
    assert response.status_code == 400
    assert "maximum allowed size" in response.json()["detail"]["message"]
