from __future__ import annotations

import datetime as dt
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Generic, List, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from .orm_models import MemberRole, MilestoneStatus, ProjectStatus, TaskPriority, TaskStatus, UserRole


ItemT = TypeVar("ItemT")


class Page(BaseModel, Generic[ItemT]):
    items: List[ItemT]
    total: int
    page: int
    size: int
    totalPages: int


class CountResponse(BaseModel):
    count: int


# === Users & auth ===========================================================

class UserSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: str
    email: str
    fullName: str = Field(validation_alias="full_name")


class UserPublic(UserSummary):
    role: UserRole
    isActive: bool = Field(validation_alias="is_active")
    createdAt: Optional[datetime] = Field(default=None, validation_alias="created_at")


class UserCreate(BaseModel):
    email: EmailStr
    password: str = Field(min_length=6)
    fullName: str = Field(min_length=1, max_length=255)
    role: Optional[str] = None

    @field_validator("fullName")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("Full name is required")
        return stripped


class UserUpdate(BaseModel):
    email: Optional[EmailStr] = None
    fullName: Optional[str] = Field(default=None, max_length=255)
    role: Optional[str] = None
    isActive: Optional[bool] = None


class LoginRequest(BaseModel):
    email: str
    password: str


class RefreshRequest(BaseModel):
    refreshToken: str


class ChangePasswordRequest(BaseModel):
    currentPassword: str
    newPassword: str


class TokenResponse(BaseModel):
    accessToken: str
    refreshToken: str
    tokenType: str = "bearer"
    expiresIn: int
    user: UserPublic


class PreferencesPayload(BaseModel):
    preferences: Dict[str, Any]


# === Projects ===============================================================

class ProjectMemberRequest(BaseModel):
    userId: str
    role: str


class ProjectCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    status: Optional[str] = None
    startDate: Optional[date] = None
    endDate: Optional[date] = None
    members: List[ProjectMemberRequest] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("Project name is required")
        return stripped


class ProjectUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = None
    status: Optional[str] = None
    startDate: Optional[date] = None
    endDate: Optional[date] = None
    members: Optional[List[ProjectMemberRequest]] = None


class ProjectMember(BaseModel):
    userId: str
    email: str
    fullName: str
    role: MemberRole
    joinedAt: datetime


class Project(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    status: ProjectStatus
    startDate: Optional[date] = None
    endDate: Optional[date] = None
    createdBy: UserSummary
    createdAt: datetime
    updatedAt: datetime
    members: List[ProjectMember] = Field(default_factory=list)
    memberCount: int = 0


# === Milestones =============================================================

class MilestoneCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    status: Optional[str] = None
    dueDate: Optional[date] = None


class MilestoneUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = None
    status: Optional[str] = None
    dueDate: Optional[date] = None


class Milestone(BaseModel):
    id: str
    projectId: str
    name: str
    description: Optional[str] = None
    status: MilestoneStatus
    dueDate: Optional[date] = None
    taskCount: int = 0
    isOverdue: bool = False
    createdAt: datetime
    updatedAt: datetime


# === Tasks ==================================================================

class TaskCreate(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    status: Optional[str] = None
    priority: Optional[str] = None
    deadline: Optional[date] = None
    assigneeId: Optional[str] = None
    milestoneId: Optional[str] = None


class TaskUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = None
    status: Optional[str] = None
    priority: Optional[str] = None
    deadline: Optional[date] = None
    assigneeId: Optional[str] = None
    milestoneId: Optional[str] = None


class TaskStatusUpdate(BaseModel):
    status: str


class Task(BaseModel):
    id: str
    projectId: str
    projectName: str
    milestoneId: Optional[str] = None
    milestoneName: Optional[str] = None
    title: str
    description: Optional[str] = None
    status: TaskStatus
    priority: TaskPriority
    deadline: Optional[date] = None
    assignee: Optional[UserSummary] = None
    createdBy: UserSummary
    createdAt: datetime
    updatedAt: datetime
    completedAt: Optional[datetime] = None
    isOverdue: bool = False
    commentCount: int = 0
    attachmentCount: int = 0
    totalTimeLogged: float = 0.0


class TaskBoardItem(BaseModel):
    id: str
    title: str
    status: TaskStatus
    priority: TaskPriority
    deadline: Optional[date] = None
    assignee: Optional[UserSummary] = None
    milestoneName: Optional[str] = None
    isOverdue: bool = False


class TaskBoardColumn(BaseModel):
    key: str
    title: str
    count: int
    tasks: List[TaskBoardItem] = Field(default_factory=list)


class TaskBoard(BaseModel):
    projectId: str
    projectName: str
    groupBy: str
    totalTasks: int
    columns: List[TaskBoardColumn] = Field(default_factory=list)


# === Comments ===============================================================

class CommentCreate(BaseModel):
    content: str = Field(max_length=2000)


class Comment(BaseModel):
    id: str
    taskId: str
    content: str
    author: UserSummary
    createdAt: datetime


# === Attachments ============================================================

class Attachment(BaseModel):
    id: str
    taskId: str
    fileName: str
    originalName: str
    fileType: str
    fileSize: int
    uploadedBy: UserSummary
    uploadedAt: datetime


class AttachmentPage(Page[Attachment]):
    totalSize: int = 0


# === Time logs ==============================================================

class TimeLogCreate(BaseModel):
    hours: Decimal
    date: dt.date


class TimeLog(BaseModel):
    id: str
    taskId: str
    taskTitle: str
    projectId: str
    user: UserSummary
    hours: float
    date: dt.date
    createdAt: datetime


class TimeLogPage(Page[TimeLog]):
    totalHours: float = 0.0


# === Analytics ==============================================================

class MemberPerformance(BaseModel):
    userId: str
    fullName: str
    hoursLogged: float
    tasksAssigned: int
    tasksCompleted: int


class ProjectAnalytics(BaseModel):
    projectId: str
    projectName: str
    period: str
    startDate: date
    endDate: date
    totalTasks: int
    completedTasks: int
    inProgressTasks: int
    overdueTasks: int
    completionRate: float
    hoursLogged: float
    averageHoursPerDay: float
    members: List[MemberPerformance] = Field(default_factory=list)


class DailyHours(BaseModel):
    date: dt.date
    hours: float
    tasksCompleted: int = 0


class DailyPerformance(BaseModel):
    date: dt.date
    hoursLogged: float
    tasksCompleted: int
    tasksAssigned: int


class ProjectBreakdown(BaseModel):
    projectId: str
    projectName: str
    hours: float
    tasksCompleted: int


class UserPerformance(BaseModel):
    userId: str
    fullName: str
    startDate: date
    endDate: date
    tasksAssigned: int
    tasksCompleted: int
    completionRate: float
    totalHours: float
    daily: List[DailyHours] = Field(default_factory=list)
    projects: List[ProjectBreakdown] = Field(default_factory=list)


class ChartDataset(BaseModel):
    label: str
    data: List[float]
    backgroundColor: str
    borderColor: str


class ChartData(BaseModel):
    labels: List[str]
    datasets: List[ChartDataset]


class PerformanceSummary(BaseModel):
    totalHours: float
    completedTasks: int
    averageCompletionHours: float
    completionRate: float
    productivityScore: float = 0.0


class DashboardAnalytics(BaseModel):
    days: int
    timeTracking: ChartData
    taskCompletion: ChartData
    performance: PerformanceSummary
