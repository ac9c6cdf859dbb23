from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .config import settings

logger = logging.getLogger(__name__)

DATABASE_URL = settings.database_url


def normalize_database_url(url: str) -> str:
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+psycopg://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+psycopg://", 1)
    return url


connect_args: dict[str, object] = {}
engine_url = normalize_database_url(DATABASE_URL)

if engine_url.startswith("sqlite"):
    connect_args = {"check_same_thread": False}
    if ":memory:" not in engine_url:
        # Ensure directory exists for SQLite db
        db_path = engine_url.replace("sqlite:///", "")
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

engine = create_engine(engine_url, connect_args=connect_args, future=True)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
    future=True,
)

Base = declarative_base()


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    session: Session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def get_session() -> Generator[Session, None, None]:
    with session_scope() as session:
        yield session


def init_db() -> None:
    from . import orm_models  # noqa: F401
    from .services.auth import ensure_default_admin
    from .services.revocation import purge_expired_tokens

    Base.metadata.create_all(bind=engine)

    with session_scope() as session:
        ensure_default_admin(session)
        purged = purge_expired_tokens(session)
        if purged:
            logger.info("Purged %s expired revoked tokens", purged)
