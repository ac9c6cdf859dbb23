from __future__ import annotations

import logging
from datetime import date
from typing import List, Optional
from urllib.parse import quote

from fastapi import Depends, FastAPI, File, HTTPException, Query, Request, UploadFile, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session

from . import __version__, orm_models
from .config import settings
from .database import get_session, init_db
from .file_rules import read_limited
from .schemas import (
    Attachment,
    AttachmentPage,
    ChangePasswordRequest,
    ChartData,
    Comment,
    CommentCreate,
    CountResponse,
    DailyPerformance,
    DashboardAnalytics,
    LoginRequest,
    Milestone,
    MilestoneCreate,
    MilestoneUpdate,
    Page,
    PerformanceSummary,
    PreferencesPayload,
    Project,
    ProjectAnalytics,
    ProjectCreate,
    ProjectMember,
    ProjectMemberRequest,
    ProjectUpdate,
    RefreshRequest,
    Task,
    TaskBoard,
    TaskCreate,
    TaskStatusUpdate,
    TaskUpdate,
    TimeLog,
    TimeLogCreate,
    TimeLogPage,
    TokenResponse,
    UserCreate,
    UserPerformance,
    UserPublic,
    UserUpdate,
)
from .services import analytics as analytics_service
from .services import attachments as attachment_service
from .services import auth as auth_service
from .services import comments as comment_service
from .services import milestones as milestone_service
from .services import projects as project_service
from .services import tasks as task_service
from .services import timelogs as timelog_service
from .services import users as user_service
from .services.access import resolve_principal
from .services.board import build_task_board
from .services.errors import InvalidToken, ServiceError
from .services.paging import build_page

logger = logging.getLogger(__name__)

app = FastAPI(title="Project Management Backend", version=__version__)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")

ERROR_STATUS = {
    "unauthorized": status.HTTP_403_FORBIDDEN,
    "not_found": status.HTTP_404_NOT_FOUND,
    "validation_failed": status.HTTP_400_BAD_REQUEST,
    "unique_violation": status.HTTP_409_CONFLICT,
    "invalid_token": status.HTTP_401_UNAUTHORIZED,
}


@app.on_event("startup")
def startup_event() -> None:  # pragma: no cover - side effect
    logging.basicConfig(level=settings.log_level.upper())
    logger.info("Starting project management backend %s", __version__)
    init_db()


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ServiceError)
def handle_service_error(request: Request, exc: ServiceError) -> JSONResponse:
    status_code = ERROR_STATUS.get(exc.code, status.HTTP_400_BAD_REQUEST)
    headers = {"WWW-Authenticate": "Bearer"} if status_code == status.HTTP_401_UNAUTHORIZED else None
    return JSONResponse(status_code=status_code, content={"detail": exc.to_dict()}, headers=headers)


def get_current_user(
    token: str = Depends(oauth2_scheme),
    session: Session = Depends(get_session),
) -> orm_models.UserORM:
    try:
        payload = auth_service.decode_token(token)
    except InvalidToken as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=exc.to_dict(),
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc
    return resolve_principal(session, payload["sub"])


@app.get("/health", tags=["system"])
def api_health() -> dict:
    return {"status": "ok", "version": __version__}


# === Auth ===================================================================

@app.post("/auth/register", response_model=UserPublic, status_code=201, tags=["auth"])
def api_register(payload: UserCreate, session: Session = Depends(get_session)) -> UserPublic:
    user = auth_service.create_user(
        session,
        email=payload.email,
        password=payload.password,
        full_name=payload.fullName,
        role=payload.role,
    )
    return auth_service.serialize_user(user)


@app.post("/auth/login", response_model=TokenResponse, tags=["auth"])
def api_login(payload: LoginRequest, session: Session = Depends(get_session)) -> TokenResponse:
    return TokenResponse(**auth_service.login(session, payload.email, payload.password))


@app.post("/auth/refresh", response_model=TokenResponse, tags=["auth"])
def api_refresh(payload: RefreshRequest, session: Session = Depends(get_session)) -> TokenResponse:
    return TokenResponse(**auth_service.refresh_tokens(session, payload.refreshToken))


@app.post("/auth/logout", status_code=204, tags=["auth"])
def api_logout(payload: RefreshRequest, session: Session = Depends(get_session)) -> Response:
    auth_service.logout(session, payload.refreshToken)
    return Response(status_code=204)


@app.get("/auth/me", response_model=UserPublic, tags=["auth"])
def api_me(current_user: orm_models.UserORM = Depends(get_current_user)) -> UserPublic:
    return auth_service.serialize_user(current_user)


@app.post("/auth/change-password", status_code=204, tags=["auth"])
def api_change_password(
    payload: ChangePasswordRequest,
    session: Session = Depends(get_session),
    current_user: orm_models.UserORM = Depends(get_current_user),
) -> Response:
    auth_service.change_password(session, current_user, payload.currentPassword, payload.newPassword)
    return Response(status_code=204)


# === Users ==================================================================

@app.get("/users", response_model=Page[UserPublic], tags=["users"])
def api_list_users(
    role: Optional[str] = None,
    search: Optional[str] = None,
    page: int = 0,
    size: int = 20,
    session: Session = Depends(get_session),
    current_user: orm_models.UserORM = Depends(get_current_user),
) -> dict:
    items, total = user_service.list_users(session, current_user, role=role, search=search, page=page, size=size)
    return build_page(items, total, page, size, auth_service.serialize_user)


@app.get("/users/assignable", response_model=List[UserPublic], tags=["users"])
def api_assignable_users(
    session: Session = Depends(get_session),
    _current_user: orm_models.UserORM = Depends(get_current_user),
) -> List[UserPublic]:
    return [auth_service.serialize_user(user) for user in user_service.assignable_users(session)]


@app.get("/users/active", response_model=List[UserPublic], tags=["users"])
def api_active_users(
    session: Session = Depends(get_session),
    current_user: orm_models.UserORM = Depends(get_current_user),
) -> List[UserPublic]:
    return [auth_service.serialize_user(user) for user in user_service.active_users(session, current_user)]


@app.get("/users/role/{role}", response_model=List[UserPublic], tags=["users"])
def api_users_by_role(
    role: str,
    session: Session = Depends(get_session),
    current_user: orm_models.UserORM = Depends(get_current_user),
) -> List[UserPublic]:
    return [auth_service.serialize_user(user) for user in user_service.users_by_role(session, current_user, role)]


@app.get("/users/count/role/{role}", response_model=CountResponse, tags=["users"])
def api_count_by_role(
    role: str,
    session: Session = Depends(get_session),
    current_user: orm_models.UserORM = Depends(get_current_user),
) -> CountResponse:
    return CountResponse(count=user_service.count_by_role(session, current_user, role))


@app.get("/users/count/active", response_model=CountResponse, tags=["users"])
def api_count_active(
    session: Session = Depends(get_session),
    current_user: orm_models.UserORM = Depends(get_current_user),
) -> CountResponse:
    return CountResponse(count=user_service.count_active(session, current_user))


@app.get("/users/{user_id}", response_model=UserPublic, tags=["users"])
def api_get_user(
    user_id: str,
    session: Session = Depends(get_session),
    current_user: orm_models.UserORM = Depends(get_current_user),
) -> UserPublic:
    return auth_service.serialize_user(user_service.get_visible_user(session, current_user, user_id))


@app.put("/users/{user_id}", response_model=UserPublic, tags=["users"])
def api_update_user(
    user_id: str,
    payload: UserUpdate,
    session: Session = Depends(get_session),
    current_user: orm_models.UserORM = Depends(get_current_user),
) -> UserPublic:
    user = user_service.update_user(
        session,
        current_user,
        user_id,
        email=payload.email,
        full_name=payload.fullName,
        role=payload.role,
        is_active=payload.isActive,
    )
    return auth_service.serialize_user(user)


@app.get("/users/{user_id}/preferences", response_model=PreferencesPayload, tags=["users"])
def api_get_preferences(
    user_id: str,
    session: Session = Depends(get_session),
    current_user: orm_models.UserORM = Depends(get_current_user),
) -> PreferencesPayload:
    return PreferencesPayload(preferences=user_service.get_preferences(session, current_user, user_id))


@app.put("/users/{user_id}/preferences", response_model=PreferencesPayload, tags=["users"])
def api_update_preferences(
    user_id: str,
    payload: PreferencesPayload,
    session: Session = Depends(get_session),
    current_user: orm_models.UserORM = Depends(get_current_user),
) -> PreferencesPayload:
    merged = user_service.update_preferences(session, current_user, user_id, payload.preferences)
    return PreferencesPayload(preferences=merged)


# === Projects ===============================================================

@app.post("/projects", response_model=Project, status_code=201, tags=["projects"])
def api_create_project(
    payload: ProjectCreate,
    session: Session = Depends(get_session),
    current_user: orm_models.UserORM = Depends(get_current_user),
) -> Project:
    project = project_service.create_project(session, current_user, payload)
    return project_service.serialize_project(project)


@app.get("/projects", response_model=Page[Project], tags=["projects"])
def api_list_projects(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    search: Optional[str] = None,
    member_id: Optional[str] = Query(default=None, alias="memberId"),
    page: int = 0,
    size: int = 20,
    session: Session = Depends(get_session),
    current_user: orm_models.UserORM = Depends(get_current_user),
) -> dict:
    items, total = project_service.list_projects(
        session,
        current_user,
        status=status_filter,
        search=search,
        member_id=member_id,
        page=page,
        size=size,
    )
    return build_page(items, total, page, size, project_service.serialize_project)


@app.get("/projects/my-projects", response_model=List[Project], tags=["projects"])
def api_my_projects(
    session: Session = Depends(get_session),
    current_user: orm_models.UserORM = Depends(get_current_user),
) -> List[Project]:
    projects = project_service.list_projects_for_user(session, current_user)
    return [project_service.serialize_project(project) for project in projects]


@app.get("/projects/{project_id}", response_model=Project, tags=["projects"])
def api_get_project(
    project_id: str,
    session: Session = Depends(get_session),
    current_user: orm_models.UserORM = Depends(get_current_user),
) -> Project:
    project = project_service.get_visible_project(session, current_user, project_id)
    return project_service.serialize_project(project)


@app.put("/projects/{project_id}", response_model=Project, tags=["projects"])
def api_update_project(
    project_id: str,
    payload: ProjectUpdate,
    session: Session = Depends(get_session),
    current_user: orm_models.UserORM = Depends(get_current_user),
) -> Project:
    project = project_service.update_project(session, current_user, project_id, payload)
    return project_service.serialize_project(project)


@app.patch("/projects/{project_id}/archive", response_model=Project, tags=["projects"])
def api_archive_project(
    project_id: str,
    session: Session = Depends(get_session),
    current_user: orm_models.UserORM = Depends(get_current_user),
) -> Project:
    project = project_service.archive_project(session, current_user, project_id)
    return project_service.serialize_project(project)


@app.delete("/projects/{project_id}", status_code=204, tags=["projects"])
def api_delete_project(
    project_id: str,
    session: Session = Depends(get_session),
    current_user: orm_models.UserORM = Depends(get_current_user),
) -> Response:
    project_service.delete_project(session, current_user, project_id)
    return Response(status_code=204)


@app.get("/projects/{project_id}/members", response_model=List[ProjectMember], tags=["projects"])
def api_list_project_members(
    project_id: str,
    session: Session = Depends(get_session),
    current_user: orm_models.UserORM = Depends(get_current_user),
) -> List[ProjectMember]:
    members = project_service.list_project_members(session, current_user, project_id)
    return [project_service.serialize_member(member) for member in members]


@app.post("/projects/{project_id}/members", response_model=ProjectMember, status_code=201, tags=["projects"])
def api_add_project_member(
    project_id: str,
    payload: ProjectMemberRequest,
    session: Session = Depends(get_session),
    current_user: orm_models.UserORM = Depends(get_current_user),
) -> ProjectMember:
    member = project_service.add_project_member(session, current_user, project_id, payload)
    return project_service.serialize_member(member)


@app.delete("/projects/{project_id}/members/{user_id}", status_code=204, tags=["projects"])
def api_remove_project_member(
    project_id: str,
    user_id: str,
    session: Session = Depends(get_session),
    current_user: orm_models.UserORM = Depends(get_current_user),
) -> Response:
    project_service.remove_project_member(session, current_user, project_id, user_id)
    return Response(status_code=204)


# === Milestones =============================================================

@app.post("/projects/{project_id}/milestones", response_model=Milestone, status_code=201, tags=["milestones"])
def api_create_milestone(
    project_id: str,
    payload: MilestoneCreate,
    session: Session = Depends(get_session),
    current_user: orm_models.UserORM = Depends(get_current_user),
) -> Milestone:
    milestone = milestone_service.create_milestone(session, current_user, project_id, payload)
    return milestone_service.serialize_milestone(session, milestone)


@app.get("/projects/{project_id}/milestones", response_model=Page[Milestone], tags=["milestones"])
def api_list_milestones(
    project_id: str,
    status_filter: Optional[str] = Query(default=None, alias="status"),
    page: int = 0,
    size: int = 20,
    session: Session = Depends(get_session),
    current_user: orm_models.UserORM = Depends(get_current_user),
) -> dict:
    items, total = milestone_service.list_milestones(
        session, current_user, project_id, status=status_filter, page=page, size=size
    )
    return build_page(items, total, page, size, lambda item: milestone_service.serialize_milestone(session, item))


@app.get("/projects/{project_id}/milestones/overdue", response_model=List[Milestone], tags=["milestones"])
def api_overdue_milestones(
    project_id: str,
    session: Session = Depends(get_session),
    current_user: orm_models.UserORM = Depends(get_current_user),
) -> List[Milestone]:
    milestones = milestone_service.overdue_milestones(session, current_user, project_id)
    return [milestone_service.serialize_milestone(session, item) for item in milestones]


@app.get("/projects/{project_id}/milestones/upcoming", response_model=List[Milestone], tags=["milestones"])
def api_upcoming_milestones(
    project_id: str,
    days: int = 7,
    session: Session = Depends(get_session),
    current_user: orm_models.UserORM = Depends(get_current_user),
) -> List[Milestone]:
    milestones = milestone_service.upcoming_milestones(session, current_user, project_id, days)
    return [milestone_service.serialize_milestone(session, item) for item in milestones]


@app.get("/projects/{project_id}/milestones/{milestone_id}", response_model=Milestone, tags=["milestones"])
def api_get_milestone(
    project_id: str,
    milestone_id: str,
    session: Session = Depends(get_session),
    current_user: orm_models.UserORM = Depends(get_current_user),
) -> Milestone:
    milestone = milestone_service.get_visible_milestone(session, current_user, project_id, milestone_id)
    return milestone_service.serialize_milestone(session, milestone)


@app.put("/projects/{project_id}/milestones/{milestone_id}", response_model=Milestone, tags=["milestones"])
def api_update_milestone(
    project_id: str,
    milestone_id: str,
    payload: MilestoneUpdate,
    session: Session = Depends(get_session),
    current_user: orm_models.UserORM = Depends(get_current_user),
) -> Milestone:
    milestone = milestone_service.update_milestone(session, current_user, project_id, milestone_id, payload)
    return milestone_service.serialize_milestone(session, milestone)


@app.delete("/projects/{project_id}/milestones/{milestone_id}", status_code=204, tags=["milestones"])
def api_delete_milestone(
    project_id: str,
    milestone_id: str,
    session: Session = Depends(get_session),
    current_user: orm_models.UserORM = Depends(get_current_user),
) -> Response:
    milestone_service.delete_milestone(session, current_user, project_id, milestone_id)
    return Response(status_code=204)


# === Tasks ==================================================================

@app.post("/projects/{project_id}/tasks", response_model=Task, status_code=201, tags=["tasks"])
def api_create_task(
    project_id: str,
    payload: TaskCreate,
    session: Session = Depends(get_session),
    current_user: orm_models.UserORM = Depends(get_current_user),
) -> Task:
    task = task_service.create_task(session, current_user, project_id, payload)
    return task_service.serialize_task(session, task)


@app.get("/projects/{project_id}/tasks", response_model=Page[Task], tags=["tasks"])
def api_list_tasks(
    project_id: str,
    search: Optional[str] = None,
    status_filter: Optional[str] = Query(default=None, alias="status"),
    priority: Optional[str] = None,
    assignee_id: Optional[str] = Query(default=None, alias="assigneeId"),
    milestone_id: Optional[str] = Query(default=None, alias="milestoneId"),
    page: int = 0,
    size: int = 20,
    session: Session = Depends(get_session),
    current_user: orm_models.UserORM = Depends(get_current_user),
) -> dict:
    items, total, page, size = task_service.list_tasks(
        session,
        current_user,
        project_id,
        search=search,
        status=status_filter,
        priority=priority,
        assignee_id=assignee_id,
        milestone_id=milestone_id,
        page=page,
        size=size,
    )
    return build_page(items, total, page, size, lambda item: task_service.serialize_task(session, item))


@app.get("/projects/{project_id}/tasks/overdue", response_model=List[Task], tags=["tasks"])
def api_overdue_tasks(
    project_id: str,
    session: Session = Depends(get_session),
    current_user: orm_models.UserORM = Depends(get_current_user),
) -> List[Task]:
    tasks = task_service.overdue_tasks(session, current_user, project_id)
    return [task_service.serialize_task(session, task) for task in tasks]


@app.get("/projects/{project_id}/tasks/high-priority", response_model=List[Task], tags=["tasks"])
def api_high_priority_tasks(
    project_id: str,
    session: Session = Depends(get_session),
    current_user: orm_models.UserORM = Depends(get_current_user),
) -> List[Task]:
    tasks = task_service.high_priority_tasks(session, current_user, project_id)
    return [task_service.serialize_task(session, task) for task in tasks]


@app.get("/projects/{project_id}/board", response_model=TaskBoard, tags=["tasks"])
def api_task_board(
    project_id: str,
    group_by: Optional[str] = Query(default=None, alias="groupBy"),
    milestone_id: Optional[str] = Query(default=None, alias="milestoneId"),
    session: Session = Depends(get_session),
    current_user: orm_models.UserORM = Depends(get_current_user),
) -> TaskBoard:
    return build_task_board(session, current_user, project_id, group_by=group_by, milestone_id=milestone_id)


@app.get("/tasks/{task_id}", response_model=Task, tags=["tasks"])
def api_get_task(
    task_id: str,
    session: Session = Depends(get_session),
    current_user: orm_models.UserORM = Depends(get_current_user),
) -> Task:
    task = task_service.get_visible_task(session, current_user, task_id)
    return task_service.serialize_task(session, task)


@app.put("/tasks/{task_id}", response_model=Task, tags=["tasks"])
def api_update_task(
    task_id: str,
    payload: TaskUpdate,
    session: Session = Depends(get_session),
    current_user: orm_models.UserORM = Depends(get_current_user),
) -> Task:
    task = task_service.update_task(session, current_user, task_id, payload)
    return task_service.serialize_task(session, task)


@app.patch("/tasks/{task_id}/status", response_model=Task, tags=["tasks"])
def api_update_task_status(
    task_id: str,
    payload: TaskStatusUpdate,
    session: Session = Depends(get_session),
    current_user: orm_models.UserORM = Depends(get_current_user),
) -> Task:
    task = task_service.update_task_status(session, current_user, task_id, payload.status)
    return task_service.serialize_task(session, task)


@app.delete("/tasks/{task_id}", status_code=204, tags=["tasks"])
def api_delete_task(
    task_id: str,
    session: Session = Depends(get_session),
    current_user: orm_models.UserORM = Depends(get_current_user),
) -> Response:
    task_service.delete_task(session, current_user, task_id)
    return Response(status_code=204)


# === Comments ===============================================================

@app.post("/tasks/{task_id}/comments", response_model=Comment, status_code=201, tags=["comments"])
def api_create_comment(
    task_id: str,
    payload: CommentCreate,
    session: Session = Depends(get_session),
    current_user: orm_models.UserORM = Depends(get_current_user),
) -> Comment:
    comment = comment_service.create_comment(session, current_user, task_id, payload.content)
    return comment_service.serialize_comment(comment)


@app.get("/tasks/{task_id}/comments", response_model=Page[Comment], tags=["comments"])
def api_list_comments(
    task_id: str,
    page: int = 0,
    size: int = 20,
    session: Session = Depends(get_session),
    current_user: orm_models.UserORM = Depends(get_current_user),
) -> dict:
    items, total = comment_service.list_comments(session, current_user, task_id, page=page, size=size)
    return build_page(items, total, page, size, comment_service.serialize_comment)


@app.get("/tasks/{task_id}/comments/all", response_model=List[Comment], tags=["comments"])
def api_list_all_comments(
    task_id: str,
    session: Session = Depends(get_session),
    current_user: orm_models.UserORM = Depends(get_current_user),
) -> List[Comment]:
    comments = comment_service.list_all_comments(session, current_user, task_id)
    return [comment_service.serialize_comment(comment) for comment in comments]


@app.get("/tasks/{task_id}/comments/count", response_model=CountResponse, tags=["comments"])
def api_count_comments(
    task_id: str,
    session: Session = Depends(get_session),
    current_user: orm_models.UserORM = Depends(get_current_user),
) -> CountResponse:
    return CountResponse(count=comment_service.count_comments(session, current_user, task_id))


@app.get("/comments/recent", response_model=List[Comment], tags=["comments"])
def api_recent_comments(
    limit: int = 10,
    session: Session = Depends(get_session),
    current_user: orm_models.UserORM = Depends(get_current_user),
) -> List[Comment]:
    comments = comment_service.recent_comments(session, current_user, limit)
    return [comment_service.serialize_comment(comment) for comment in comments]


@app.get("/comments/{comment_id}", response_model=Comment, tags=["comments"])
def api_get_comment(
    comment_id: str,
    session: Session = Depends(get_session),
    current_user: orm_models.UserORM = Depends(get_current_user),
) -> Comment:
    return comment_service.serialize_comment(comment_service.get_comment(session, current_user, comment_id))


@app.delete("/comments/{comment_id}", status_code=204, tags=["comments"])
def api_delete_comment(
    comment_id: str,
    session: Session = Depends(get_session),
    current_user: orm_models.UserORM = Depends(get_current_user),
) -> Response:
    comment_service.delete_comment(session, current_user, comment_id)
    return Response(status_code=204)


# === Attachments ============================================================

@app.post("/tasks/{task_id}/attachments", response_model=Attachment, status_code=201, tags=["attachments"])
def api_upload_attachment(
    task_id: str,
    file: UploadFile = File(...),
    session: Session = Depends(get_session),
    current_user: orm_models.UserORM = Depends(get_current_user),
) -> Attachment:
    data = read_limited(file.file, settings.max_upload_size_bytes)
    attachment = attachment_service.upload_attachment(
        session,
        current_user,
        task_id,
        filename=file.filename,
        data=data,
    )
    return attachment_service.serialize_attachment(attachment)


@app.get("/tasks/{task_id}/attachments", response_model=AttachmentPage, tags=["attachments"])
def api_list_attachments(
    task_id: str,
    page: int = 0,
    size: int = 20,
    session: Session = Depends(get_session),
    current_user: orm_models.UserORM = Depends(get_current_user),
) -> dict:
    items, total, total_size = attachment_service.list_attachments(
        session, current_user, task_id, page=page, size=size
    )
    result = build_page(items, total, page, size, attachment_service.serialize_attachment)
    result["totalSize"] = total_size
    return result


@app.get("/tasks/{task_id}/attachments/all", response_model=List[Attachment], tags=["attachments"])
def api_list_all_attachments(
    task_id: str,
    session: Session = Depends(get_session),
    current_user: orm_models.UserORM = Depends(get_current_user),
) -> List[Attachment]:
    attachments = attachment_service.list_all_attachments(session, current_user, task_id)
    return [attachment_service.serialize_attachment(item) for item in attachments]


@app.get("/attachments/recent", response_model=List[Attachment], tags=["attachments"])
def api_recent_attachments(
    limit: int = 10,
    session: Session = Depends(get_session),
    current_user: orm_models.UserORM = Depends(get_current_user),
) -> List[Attachment]:
    attachments = attachment_service.recent_attachments(session, current_user, limit)
    return [attachment_service.serialize_attachment(item) for item in attachments]


@app.get("/attachments/{attachment_id}/download", tags=["attachments"])
def api_download_attachment(
    attachment_id: str,
    session: Session = Depends(get_session),
    current_user: orm_models.UserORM = Depends(get_current_user),
) -> Response:
    download = attachment_service.download_attachment(session, current_user, attachment_id)
    disposition = f"attachment; filename*=UTF-8''{quote(download.filename)}"
    return Response(
        content=download.data,
        media_type=download.content_type,
        headers={"Content-Disposition": disposition},
    )


@app.delete("/attachments/{attachment_id}", status_code=204, tags=["attachments"])
def api_delete_attachment(
    attachment_id: str,
    session: Session = Depends(get_session),
    current_user: orm_models.UserORM = Depends(get_current_user),
) -> Response:
    attachment_service.delete_attachment(session, current_user, attachment_id)
    return Response(status_code=204)


# === Time logs ==============================================================

@app.post("/tasks/{task_id}/time-logs", response_model=TimeLog, status_code=201, tags=["time-logs"])
def api_create_time_log(
    task_id: str,
    payload: TimeLogCreate,
    session: Session = Depends(get_session),
    current_user: orm_models.UserORM = Depends(get_current_user),
) -> TimeLog:
    log = timelog_service.create_time_log(
        session, current_user, task_id, hours=payload.hours, log_date=payload.date
    )
    return timelog_service.serialize_time_log(log)


@app.get("/tasks/{task_id}/time-logs", response_model=TimeLogPage, tags=["time-logs"])
def api_list_task_time_logs(
    task_id: str,
    start_date: Optional[date] = Query(default=None, alias="startDate"),
    end_date: Optional[date] = Query(default=None, alias="endDate"),
    page: int = 0,
    size: int = 20,
    session: Session = Depends(get_session),
    current_user: orm_models.UserORM = Depends(get_current_user),
) -> dict:
    items, total, total_hours = timelog_service.list_task_time_logs(
        session,
        current_user,
        task_id,
        start_date=start_date,
        end_date=end_date,
        page=page,
        size=size,
    )
    result = build_page(items, total, page, size, timelog_service.serialize_time_log)
    result["totalHours"] = float(total_hours)
    return result


@app.get("/users/{user_id}/time-logs", response_model=TimeLogPage, tags=["time-logs"])
def api_list_user_time_logs(
    user_id: str,
    project_id: Optional[str] = Query(default=None, alias="projectId"),
    start_date: Optional[date] = Query(default=None, alias="startDate"),
    end_date: Optional[date] = Query(default=None, alias="endDate"),
    page: int = 0,
    size: int = 20,
    session: Session = Depends(get_session),
    current_user: orm_models.UserORM = Depends(get_current_user),
) -> dict:
    items, total, total_hours = timelog_service.list_user_time_logs(
        session,
        current_user,
        user_id,
        project_id=project_id,
        start_date=start_date,
        end_date=end_date,
        page=page,
        size=size,
    )
    result = build_page(items, total, page, size, timelog_service.serialize_time_log)
    result["totalHours"] = float(total_hours)
    return result


@app.get("/time-logs/{log_id}", response_model=TimeLog, tags=["time-logs"])
def api_get_time_log(
    log_id: str,
    session: Session = Depends(get_session),
    current_user: orm_models.UserORM = Depends(get_current_user),
) -> TimeLog:
    return timelog_service.serialize_time_log(timelog_service.get_time_log(session, current_user, log_id))


@app.delete("/time-logs/{log_id}", status_code=204, tags=["time-logs"])
def api_delete_time_log(
    log_id: str,
    session: Session = Depends(get_session),
    current_user: orm_models.UserORM = Depends(get_current_user),
) -> Response:
    timelog_service.delete_time_log(session, current_user, log_id)
    return Response(status_code=204)


# === Analytics ==============================================================

@app.get("/projects/{project_id}/analytics", response_model=ProjectAnalytics, tags=["analytics"])
def api_project_analytics(
    project_id: str,
    period: Optional[str] = None,
    session: Session = Depends(get_session),
    current_user: orm_models.UserORM = Depends(get_current_user),
) -> ProjectAnalytics:
    return analytics_service.project_analytics(session, current_user, project_id, period)


@app.get("/users/{user_id}/performance", response_model=UserPerformance, tags=["analytics"])
def api_user_performance(
    user_id: str,
    start_date: Optional[date] = Query(default=None, alias="startDate"),
    end_date: Optional[date] = Query(default=None, alias="endDate"),
    project_id: Optional[str] = Query(default=None, alias="projectId"),
    session: Session = Depends(get_session),
    current_user: orm_models.UserORM = Depends(get_current_user),
) -> UserPerformance:
    return analytics_service.user_performance(
        session,
        current_user,
        user_id,
        start_date=start_date,
        end_date=end_date,
        project_id=project_id,
    )


@app.get("/analytics", response_model=DashboardAnalytics, tags=["analytics"])
def api_dashboard_analytics(
    start_date: Optional[date] = Query(default=None, alias="startDate"),
    end_date: Optional[date] = Query(default=None, alias="endDate"),
    project_id: Optional[str] = Query(default=None, alias="projectId"),
    date_range: Optional[str] = Query(default=None, alias="dateRange"),
    session: Session = Depends(get_session),
    current_user: orm_models.UserORM = Depends(get_current_user),
) -> DashboardAnalytics:
    return analytics_service.dashboard_analytics(
        session,
        current_user,
        start_date=start_date,
        end_date=end_date,
        project_id=project_id,
        date_range=date_range,
    )


@app.get("/analytics/performance", response_model=PerformanceSummary, tags=["analytics"])
def api_performance_summary(
    start_date: Optional[date] = Query(default=None, alias="startDate"),
    end_date: Optional[date] = Query(default=None, alias="endDate"),
    project_id: Optional[str] = Query(default=None, alias="projectId"),
    session: Session = Depends(get_session),
    current_user: orm_models.UserORM = Depends(get_current_user),
) -> PerformanceSummary:
    return analytics_service.performance_summary(
        session,
        current_user,
        start_date=start_date,
        end_date=end_date,
        project_id=project_id,
    )


@app.get("/analytics/projects/{project_id}", response_model=DashboardAnalytics, tags=["analytics"])
def api_project_dashboard(
    project_id: str,
    date_range: Optional[str] = Query(default=None, alias="dateRange"),
    session: Session = Depends(get_session),
    current_user: orm_models.UserORM = Depends(get_current_user),
) -> DashboardAnalytics:
    return analytics_service.project_dashboard(session, current_user, project_id, date_range)


@app.get("/analytics/daily-performance", response_model=List[DailyPerformance], tags=["analytics"])
def api_daily_performance(
    start_date: Optional[date] = Query(default=None, alias="startDate"),
    end_date: Optional[date] = Query(default=None, alias="endDate"),
    project_id: Optional[str] = Query(default=None, alias="projectId"),
    session: Session = Depends(get_session),
    current_user: orm_models.UserORM = Depends(get_current_user),
) -> List[DailyPerformance]:
    return analytics_service.daily_performance(
        session,
        current_user,
        start_date=start_date,
        end_date=end_date,
        project_id=project_id,
    )


@app.get("/analytics/time-tracking", response_model=ChartData, tags=["analytics"])
def api_time_tracking(
    start_date: Optional[date] = Query(default=None, alias="startDate"),
    end_date: Optional[date] = Query(default=None, alias="endDate"),
    project_id: Optional[str] = Query(default=None, alias="projectId"),
    session: Session = Depends(get_session),
    current_user: orm_models.UserORM = Depends(get_current_user),
) -> ChartData:
    return analytics_service.time_tracking_data(
        session,
        current_user,
        start_date=start_date,
        end_date=end_date,
        project_id=project_id,
    )


@app.get("/analytics/task-completion", response_model=ChartData, tags=["analytics"])
def api_task_completion(
    start_date: Optional[date] = Query(default=None, alias="startDate"),
    end_date: Optional[date] = Query(default=None, alias="endDate"),
    project_id: Optional[str] = Query(default=None, alias="projectId"),
    session: Session = Depends(get_session),
    current_user: orm_models.UserORM = Depends(get_current_user),
) -> ChartData:
    return analytics_service.task_completion_data(
        session,
        current_user,
        start_date=start_date,
        end_date=end_date,
        project_id=project_id,
    )
