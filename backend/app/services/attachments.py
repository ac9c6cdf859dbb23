from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .. import orm_models
from ..config import settings
from ..file_rules import content_type_for, unique_filename, validate_upload
from ..orm_models import UserORM
from ..schemas import Attachment, UserSummary
from .access import (
    ensure_can_create_or_update_resource,
    ensure_can_delete_resource,
    ensure_can_view_project,
    is_administrator,
)
from .errors import ResourceNotFound, ValidationFailed
from .paging import paginate, validate_page
from .tasks import get_visible_task

logger = logging.getLogger(__name__)


@dataclass
class AttachmentDownload:
    filename: str
    content_type: str
    data: bytes


def serialize_attachment(attachment: orm_models.AttachmentORM) -> Attachment:
    return Attachment(
        id=attachment.id,
        taskId=attachment.task_id,
        fileName=attachment.file_name,
        originalName=attachment.original_name,
        fileType=attachment.file_type,
        fileSize=attachment.file_size,
        uploadedBy=UserSummary.model_validate(attachment.uploaded_by),
        uploadedAt=attachment.uploaded_at,
    )


def upload_attachment(
    session: Session,
    actor: UserORM,
    task_id: str,
    *,
    filename: Optional[str],
    data: bytes,
    max_size: Optional[int] = None,
) -> orm_models.AttachmentORM:
    task = get_visible_task(session, actor, task_id)
    ensure_can_create_or_update_resource(actor, resource="attachments")
    validate_upload(filename, len(data), max_size or settings.max_upload_size_bytes)

    original = filename.strip()
    attachment = orm_models.AttachmentORM(
        task=task,
        uploaded_by=actor,
        file_name=unique_filename(original),
        original_name=original,
        file_type=content_type_for(original),
        file_size=len(data),
        file_data=data,
    )
    session.add(attachment)
    session.flush()
    logger.info("Stored attachment %s (%s bytes) on task %s", attachment.file_name, attachment.file_size, task.id)
    return attachment


def get_attachment(session: Session, actor: UserORM, attachment_id: str) -> orm_models.AttachmentORM:
    attachment = session.get(orm_models.AttachmentORM, attachment_id)
    if attachment is None:
        raise ResourceNotFound(f"Attachment not found with ID: {attachment_id}")
    ensure_can_view_project(session, attachment.task.project, actor)
    return attachment


def download_attachment(session: Session, actor: UserORM, attachment_id: str) -> AttachmentDownload:
    attachment = get_attachment(session, actor, attachment_id)
    return AttachmentDownload(
        filename=attachment.original_name,
        content_type=attachment.file_type,
        data=attachment.file_data,
    )


def _task_attachments_stmt(task_id: str):
    return (
        select(orm_models.AttachmentORM)
        .where(orm_models.AttachmentORM.task_id == task_id)
        .order_by(orm_models.AttachmentORM.uploaded_at.desc(), orm_models.AttachmentORM.id.desc())
    )


def task_storage_size(session: Session, task_id: str) -> int:
    return session.execute(
        select(func.coalesce(func.sum(orm_models.AttachmentORM.file_size), 0)).where(
            orm_models.AttachmentORM.task_id == task_id
        )
    ).scalar_one()


def list_attachments(
    session: Session,
    actor: UserORM,
    task_id: str,
    *,
    page: int = 0,
    size: int = 20,
) -> tuple[List[orm_models.AttachmentORM], int, int]:
    task = get_visible_task(session, actor, task_id)
    page, size = validate_page(page, size)
    items, total = paginate(session, _task_attachments_stmt(task.id), page, size)
    return items, total, task_storage_size(session, task.id)


def list_all_attachments(session: Session, actor: UserORM, task_id: str) -> List[orm_models.AttachmentORM]:
    task = get_visible_task(session, actor, task_id)
    return list(session.execute(_task_attachments_stmt(task.id)).scalars())


def recent_attachments(session: Session, actor: UserORM, limit: int = 10) -> List[orm_models.AttachmentORM]:
    if limit < 1 or limit > 100:
        raise ValidationFailed("Limit must be between 1 and 100")
    stmt = (
        select(orm_models.AttachmentORM)
        .order_by(orm_models.AttachmentORM.uploaded_at.desc(), orm_models.AttachmentORM.id.desc())
        .limit(limit)
    )
    if not is_administrator(actor):
        stmt = stmt.join(orm_models.TaskORM, orm_models.TaskORM.id == orm_models.AttachmentORM.task_id).where(
            orm_models.TaskORM.project.has(
                orm_models.ProjectORM.members.any(orm_models.ProjectMemberORM.user_id == actor.id)
            )
        )
    return list(session.execute(stmt).scalars())


def delete_attachment(session: Session, actor: UserORM, attachment_id: str) -> None:
    attachment = session.get(orm_models.AttachmentORM, attachment_id)
    if attachment is None:
        raise ResourceNotFound(f"Attachment not found with ID: {attachment_id}")
    ensure_can_delete_resource(
        session,
        attachment.task.project,
        attachment.uploaded_by_id,
        actor,
        resource="attachment",
    )
    session.delete(attachment)
    session.flush()
    logger.info("Deleted attachment %s", attachment_id)
