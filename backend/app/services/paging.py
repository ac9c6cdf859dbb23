from __future__ import annotations

import math
from typing import Callable, Sequence, TypeVar

from sqlalchemy import Select, func, select
from sqlalchemy.orm import Session

from .errors import ValidationFailed

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100

T = TypeVar("T")
R = TypeVar("R")


def clamp_page(page: int, size: int) -> tuple[int, int]:
    """Coerce out-of-range paging values instead of rejecting them."""
    if page < 0:
        page = 0
    if size < 1:
        size = DEFAULT_PAGE_SIZE
    elif size > MAX_PAGE_SIZE:
        size = MAX_PAGE_SIZE
    return page, size


def validate_page(page: int, size: int) -> tuple[int, int]:
    if page < 0:
        raise ValidationFailed("Page number must be non-negative")
    if size < 1 or size > MAX_PAGE_SIZE:
        raise ValidationFailed(f"Page size must be between 1 and {MAX_PAGE_SIZE}")
    return page, size


def paginate(session: Session, stmt: Select, page: int, size: int) -> tuple[list, int]:
    total = session.execute(
        select(func.count()).select_from(stmt.order_by(None).subquery())
    ).scalar_one()
    rows = session.execute(stmt.offset(page * size).limit(size)).scalars().all()
    return list(rows), total


def build_page(
    items: Sequence[T],
    total: int,
    page: int,
    size: int,
    mapper: Callable[[T], R],
) -> dict:
    return {
        "items": [mapper(item) for item in items],
        "total": total,
        "page": page,
        "size": size,
        "totalPages": math.ceil(total / size) if size else 0,
    }
