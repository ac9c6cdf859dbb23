"""Persisted store of revoked refresh tokens, keyed by JWT id."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..orm_models import RevokedTokenORM, utcnow

logger = logging.getLogger(__name__)


def revoke_token(
    session: Session,
    jti: str,
    *,
    expires_at: datetime,
    user_id: Optional[str] = None,
) -> bool:
    """Record ``jti`` as revoked. Returns False when it already was.

    A concurrent writer that got there first surfaces as a primary key
    violation inside the savepoint and is reported the same way.
    """
    if is_token_revoked(session, jti):
        return False
    try:
        with session.begin_nested():
            session.add(RevokedTokenORM(jti=jti, user_id=user_id, expires_at=expires_at))
            session.flush()
    except IntegrityError as exc:
        logger.warning("Refresh token %s was revoked concurrently: %s", jti, exc.orig)
        return False
    logger.info("Revoked refresh token %s for user %s", jti, user_id)
    return True


def is_token_revoked(session: Session, jti: str) -> bool:
    return session.execute(
        select(RevokedTokenORM.jti).where(RevokedTokenORM.jti == jti)
    ).first() is not None


def purge_expired_tokens(session: Session, now: Optional[datetime] = None) -> int:
    cutoff = now or utcnow()
    result = session.execute(delete(RevokedTokenORM).where(RevokedTokenORM.expires_at < cutoff))
    return result.rowcount or 0
