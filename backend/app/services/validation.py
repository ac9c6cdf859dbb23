from __future__ import annotations

from datetime import date
from enum import Enum
from typing import Optional, TypeVar

from ..orm_models import today
from .errors import ValidationFailed

E = TypeVar("E", bound=Enum)


def parse_choice(enum_cls: type[E], value: E | str | None, label: str, default: Optional[E] = None) -> E:
    if value is None or (isinstance(value, str) and not value.strip()):
        if default is None:
            raise ValidationFailed(f"{label.capitalize()} is required")
        return default
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().upper())
    except ValueError:
        raise ValidationFailed(
            f"Invalid {label}: {value}",
            details={"allowed": [item.value for item in enum_cls]},
        ) from None


def ensure_date_order(start: Optional[date], end: Optional[date]) -> None:
    if start and end and start > end:
        raise ValidationFailed("Start date cannot be after end date")


def ensure_not_in_past(value: Optional[date], label: str) -> None:
    if value is not None and value < today():
        raise ValidationFailed(f"{label} cannot be in the past")
