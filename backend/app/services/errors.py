from __future__ import annotations

from dataclasses import dataclass


@dataclass
class ServiceError(Exception):
    code: str
    message: str
    details: dict | None = None

    def __str__(self) -> str:
        return self.message

    def to_dict(self) -> dict:
        payload = {
            "code": self.code,
            "message": self.message,
        }
        if self.details:
            payload["details"] = self.details
        return payload


class AccessDenied(ServiceError):
    """The principal lacks the role or membership the operation needs."""

    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__("unauthorized", message, details)


class ResourceNotFound(ServiceError):
    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__("not_found", message, details)


class ValidationFailed(ServiceError):
    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__("validation_failed", message, details)


class Conflict(ServiceError):
    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__("unique_violation", message, details)


class InvalidToken(ServiceError):
    """Bearer or refresh token that cannot be trusted."""

    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__("invalid_token", message, details)
