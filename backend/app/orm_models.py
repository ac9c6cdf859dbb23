from __future__ import annotations

import uuid
from datetime import date, datetime, timezone

from enum import Enum as PyEnum

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    JSON,
    LargeBinary,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .database import Base


def generate_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:8]}"


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what the DateTime columns store."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def today() -> date:
    return utcnow().date()


class UserRole(str, PyEnum):
    ADMIN = "ADMIN"
    PROJECT_MANAGER = "PROJECT_MANAGER"
    TEAM_LEAD = "TEAM_LEAD"
    DEVELOPER = "DEVELOPER"
    QA = "QA"


class MemberRole(str, PyEnum):
    PROJECT_MANAGER = "PROJECT_MANAGER"
    TEAM_LEAD = "TEAM_LEAD"
    DEVELOPER = "DEVELOPER"
    QA = "QA"


class ProjectStatus(str, PyEnum):
    PLANNING = "PLANNING"
    ACTIVE = "ACTIVE"
    ON_HOLD = "ON_HOLD"
    COMPLETED = "COMPLETED"
    ARCHIVED = "ARCHIVED"


class MilestoneStatus(str, PyEnum):
    PLANNED = "PLANNED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class TaskStatus(str, PyEnum):
    TODO = "TODO"
    IN_PROGRESS = "IN_PROGRESS"
    REVIEW = "REVIEW"
    DONE = "DONE"
    CANCELLED = "CANCELLED"


class TaskPriority(str, PyEnum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    URGENT = "URGENT"


# DONE is the only status that counts as "completed" anywhere in the app.
TASK_TERMINAL_STATUSES = (TaskStatus.DONE, TaskStatus.CANCELLED)

ELEVATED_MEMBER_ROLES = frozenset({MemberRole.PROJECT_MANAGER, MemberRole.TEAM_LEAD})


def _enum_column(enum_cls: type[PyEnum]) -> Enum:
    return Enum(enum_cls, native_enum=False, length=32, validate_strings=True)


DEFAULT_PREFERENCES = {
    "theme": "light",
    "notifications": {
        "email": True,
        "push": True,
        "taskUpdates": True,
    },
}


class UserORM(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=lambda: generate_id("user"))
    email = Column(String, nullable=False, unique=True, index=True)
    full_name = Column(String, nullable=False, default="")
    role = Column(_enum_column(UserRole), nullable=False, default=UserRole.DEVELOPER)
    password_hash = Column(String, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    preferences = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    memberships = relationship("ProjectMemberORM", back_populates="user")


class ProjectORM(Base):
    __tablename__ = "projects"

    id = Column(String, primary_key=True, default=lambda: generate_id("proj"))
    name = Column(String(255), nullable=False, unique=True)
    description = Column(Text, nullable=True)
    status = Column(_enum_column(ProjectStatus), nullable=False, default=ProjectStatus.ACTIVE)
    start_date = Column(Date, nullable=True)
    end_date = Column(Date, nullable=True)
    created_by_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    created_by = relationship("UserORM")
    members = relationship(
        "ProjectMemberORM",
        back_populates="project",
        cascade="all, delete-orphan",
    )
    milestones = relationship(
        "MilestoneORM",
        back_populates="project",
        cascade="all, delete-orphan",
    )
    tasks = relationship(
        "TaskORM",
        back_populates="project",
        cascade="all, delete-orphan",
    )


class ProjectMemberORM(Base):
    __tablename__ = "project_members"
    __table_args__ = (
        UniqueConstraint("project_id", "user_id", name="uq_project_member"),
    )

    id = Column(String, primary_key=True, default=lambda: generate_id("pm"))
    project_id = Column(String, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    role = Column(_enum_column(MemberRole), nullable=False)
    joined_at = Column(DateTime, default=utcnow, nullable=False)

    project = relationship("ProjectORM", back_populates="members")
    user = relationship("UserORM", back_populates="memberships")


class MilestoneORM(Base):
    __tablename__ = "milestones"
    __table_args__ = (
        UniqueConstraint("project_id", "name", name="uq_milestone_project_name"),
    )

    id = Column(String, primary_key=True, default=lambda: generate_id("ms"))
    project_id = Column(String, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    status = Column(_enum_column(MilestoneStatus), nullable=False, default=MilestoneStatus.PLANNED)
    due_date = Column(Date, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    project = relationship("ProjectORM", back_populates="milestones")
    tasks = relationship("TaskORM", back_populates="milestone")

    @property
    def is_overdue(self) -> bool:
        return (
            self.due_date is not None
            and self.due_date < today()
            and self.status != MilestoneStatus.COMPLETED
        )


class TaskORM(Base):
    __tablename__ = "tasks"
    __table_args__ = (
        UniqueConstraint("project_id", "title", name="uq_task_project_title"),
    )

    id = Column(String, primary_key=True, default=lambda: generate_id("task"))
    project_id = Column(String, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    milestone_id = Column(String, ForeignKey("milestones.id", ondelete="SET NULL"), nullable=True, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    status = Column(_enum_column(TaskStatus), nullable=False, default=TaskStatus.TODO)
    priority = Column(_enum_column(TaskPriority), nullable=False, default=TaskPriority.MEDIUM)
    deadline = Column(Date, nullable=True)
    assignee_id = Column(String, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    created_by_id = Column(String, ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)

    project = relationship("ProjectORM", back_populates="tasks")
    milestone = relationship("MilestoneORM", back_populates="tasks")
    assignee = relationship("UserORM", foreign_keys=[assignee_id])
    created_by = relationship("UserORM", foreign_keys=[created_by_id])
    comments = relationship("CommentORM", back_populates="task", cascade="all, delete-orphan")
    attachments = relationship("AttachmentORM", back_populates="task", cascade="all, delete-orphan")
    time_logs = relationship("TimeLogORM", back_populates="task", cascade="all, delete-orphan")

    @property
    def is_overdue(self) -> bool:
        return (
            self.deadline is not None
            and self.deadline < today()
            and self.status not in TASK_TERMINAL_STATUSES
        )

    def set_status(self, status: TaskStatus) -> None:
        if status == TaskStatus.DONE and self.status != TaskStatus.DONE:
            self.completed_at = utcnow()
        elif status != TaskStatus.DONE:
            self.completed_at = None
        self.status = status


class CommentORM(Base):
    __tablename__ = "comments"

    id = Column(String, primary_key=True, default=lambda: generate_id("cmt"))
    task_id = Column(String, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    content = Column(Text, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    task = relationship("TaskORM", back_populates="comments")
    user = relationship("UserORM")


class AttachmentORM(Base):
    __tablename__ = "attachments"

    id = Column(String, primary_key=True, default=lambda: generate_id("att"))
    task_id = Column(String, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True)
    uploaded_by_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    file_name = Column(String, nullable=False)
    original_name = Column(String, nullable=False)
    file_type = Column(String, nullable=False)
    file_size = Column(Integer, nullable=False)
    file_data = Column(LargeBinary, nullable=False)
    uploaded_at = Column(DateTime, default=utcnow, nullable=False)

    task = relationship("TaskORM", back_populates="attachments")
    uploaded_by = relationship("UserORM")


class TimeLogORM(Base):
    __tablename__ = "time_logs"
    __table_args__ = (
        UniqueConstraint("task_id", "user_id", "date", name="uq_time_log_task_user_date"),
    )

    id = Column(String, primary_key=True, default=lambda: generate_id("tl"))
    task_id = Column(String, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    hours = Column(Numeric(5, 2), nullable=False)
    date = Column(Date, nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    task = relationship("TaskORM", back_populates="time_logs")
    user = relationship("UserORM")


class RevokedTokenORM(Base):
    __tablename__ = "revoked_tokens"

    jti = Column(String, primary_key=True)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=True, index=True)
    expires_at = Column(DateTime, nullable=False, index=True)
    revoked_at = Column(DateTime, default=utcnow, nullable=False)
