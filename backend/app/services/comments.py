from __future__ import annotations

import logging
from typing import List

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .. import orm_models
from ..orm_models import UserORM
from ..schemas import Comment, UserSummary
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

MAX_COMMENT_LENGTH = 2000


def serialize_comment(comment: orm_models.CommentORM) -> Comment:
    return Comment(
        id=comment.id,
        taskId=comment.task_id,
        content=comment.content,
        author=UserSummary.model_validate(comment.user),
        createdAt=comment.created_at,
    )


def create_comment(session: Session, actor: UserORM, task_id: str, content: str) -> orm_models.CommentORM:
    task = get_visible_task(session, actor, task_id)
    ensure_can_create_or_update_resource(actor, resource="comments")

    text = (content or "").strip()
    if not text:
        raise ValidationFailed("Comment content is required")
    if len(text) > MAX_COMMENT_LENGTH:
        raise ValidationFailed(f"Comment cannot exceed {MAX_COMMENT_LENGTH} characters")

    comment = orm_models.CommentORM(task=task, user=actor, content=text)
    session.add(comment)
    session.flush()
    logger.info("Comment %s added to task %s by %s", comment.id, task.id, actor.email)
    return comment


def _task_comments_stmt(task_id: str):
    return (
        select(orm_models.CommentORM)
        .where(orm_models.CommentORM.task_id == task_id)
        .order_by(orm_models.CommentORM.created_at.desc(), orm_models.CommentORM.id.desc())
    )


def list_comments(
    session: Session,
    actor: UserORM,
    task_id: str,
    *,
    page: int = 0,
    size: int = 20,
) -> tuple[List[orm_models.CommentORM], int]:
    task = get_visible_task(session, actor, task_id)
    page, size = validate_page(page, size)
    return paginate(session, _task_comments_stmt(task.id), page, size)


def list_all_comments(session: Session, actor: UserORM, task_id: str) -> List[orm_models.CommentORM]:
    task = get_visible_task(session, actor, task_id)
    return list(session.execute(_task_comments_stmt(task.id)).scalars())


def get_comment(session: Session, actor: UserORM, comment_id: str) -> orm_models.CommentORM:
    comment = session.get(orm_models.CommentORM, comment_id)
    if comment is None:
        raise ResourceNotFound(f"Comment not found with ID: {comment_id}")
    ensure_can_view_project(session, comment.task.project, actor)
    return comment


def count_comments(session: Session, actor: UserORM, task_id: str) -> int:
    task = get_visible_task(session, actor, task_id)
    return session.execute(
        select(func.count(orm_models.CommentORM.id)).where(orm_models.CommentORM.task_id == task.id)
    ).scalar_one()


def recent_comments(session: Session, actor: UserORM, limit: int = 10) -> List[orm_models.CommentORM]:
    if limit < 1 or limit > 100:
        raise ValidationFailed("Limit must be between 1 and 100")
    stmt = (
        select(orm_models.CommentORM)
        .order_by(orm_models.CommentORM.created_at.desc(), orm_models.CommentORM.id.desc())
        .limit(limit)
    )
    if not is_administrator(actor):
        stmt = stmt.join(orm_models.TaskORM, orm_models.TaskORM.id == orm_models.CommentORM.task_id).where(
            orm_models.TaskORM.project.has(
                orm_models.ProjectORM.members.any(orm_models.ProjectMemberORM.user_id == actor.id)
            )
        )
    return list(session.execute(stmt).scalars())


def delete_comment(session: Session, actor: UserORM, comment_id: str) -> None:
    comment = session.get(orm_models.CommentORM, comment_id)
    if comment is None:
        raise ResourceNotFound(f"Comment not found with ID: {comment_id}")
    ensure_can_delete_resource(session, comment.task.project, comment.user_id, actor, resource="comment")
    session.delete(comment)
    session.flush()
    logger.info("Deleted comment %s", comment_id)
