from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from passlib.context import CryptContext
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..config import settings
from ..orm_models import UserORM, UserRole
from ..schemas import UserPublic
from .access import parse_user_role
from .errors import AccessDenied, Conflict, InvalidToken, ValidationFailed
from .revocation import is_token_revoked, revoke_token

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
ALGORITHM = "HS256"

ACCESS_TOKEN = "access"
REFRESH_TOKEN = "refresh"

MIN_PASSWORD_LENGTH = 6


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return pwd_context.verify(password, password_hash)
    except ValueError:
        return False


def get_user_by_email(session: Session, email: str) -> Optional[UserORM]:
    normalized = email.strip().lower()
    return session.execute(select(UserORM).where(UserORM.email == normalized)).scalars().first()


def serialize_user(user: UserORM) -> UserPublic:
    return UserPublic.model_validate(user)


def _validate_password(password: str) -> None:
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationFailed(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")


def create_user(
    session: Session,
    *,
    email: str,
    password: str,
    full_name: str,
    role: UserRole | str | None = None,
) -> UserORM:
    normalized_email = email.strip().lower()
    if get_user_by_email(session, normalized_email):
        raise Conflict("Email is already registered", details={"email": normalized_email})
    _validate_password(password)
    resolved_role = parse_user_role(role) if role else UserRole.DEVELOPER

    user = UserORM(
        email=normalized_email,
        full_name=full_name.strip(),
        role=resolved_role,
        password_hash=hash_password(password),
        is_active=True,
    )
    session.add(user)
    session.flush()
    logger.info("Registered user %s with role %s", user.email, user.role.value)
    return user


def authenticate_user(session: Session, email: str, password: str) -> Optional[UserORM]:
    user = get_user_by_email(session, email)
    if not user:
        return None
    if not verify_password(password, user.password_hash):
        return None
    return user


# === Tokens =================================================================

def _encode_token(subject: str, token_type: str, expires_delta: timedelta) -> str:
    issued_at = datetime.now(timezone.utc)
    payload = {
        "sub": subject,
        "type": token_type,
        "jti": uuid.uuid4().hex,
        "iat": issued_at,
        "exp": issued_at + expires_delta,
    }
    return jwt.encode(payload, settings.auth_secret_key, algorithm=ALGORITHM)


def create_access_token(subject: str, expires_delta: Optional[timedelta] = None) -> str:
    return _encode_token(
        subject,
        ACCESS_TOKEN,
        expires_delta or timedelta(minutes=settings.auth_access_token_expire_minutes),
    )


def create_refresh_token(subject: str, expires_delta: Optional[timedelta] = None) -> str:
    return _encode_token(
        subject,
        REFRESH_TOKEN,
        expires_delta or timedelta(days=settings.auth_refresh_token_expire_days),
    )


def decode_token(token: str, expected_type: str = ACCESS_TOKEN) -> dict:
    try:
        payload = jwt.decode(token, settings.auth_secret_key, algorithms=[ALGORITHM])
    except jwt.ExpiredSignatureError as exc:
        raise InvalidToken("Token has expired") from exc
    except jwt.PyJWTError as exc:
        raise InvalidToken("Invalid token") from exc
    if payload.get("type") != expected_type:
        raise InvalidToken("Invalid token type")
    if not payload.get("sub") or not payload.get("jti"):
        raise InvalidToken("Invalid token")
    return payload


def _expiry_of(payload: dict) -> datetime:
    return datetime.fromtimestamp(payload["exp"], tz=timezone.utc).replace(tzinfo=None)


def issue_tokens(user: UserORM) -> dict:
    return {
        "accessToken": create_access_token(user.email),
        "refreshToken": create_refresh_token(user.email),
        "tokenType": "bearer",
        "expiresIn": settings.auth_access_token_expire_minutes * 60,
        "user": serialize_user(user),
    }


# === Flows ==================================================================

def login(session: Session, email: str, password: str) -> dict:
    user = authenticate_user(session, email, password)
    if user is None:
        logger.warning("Failed login attempt for %s", email)
        raise AccessDenied("Invalid email or password")
    if not user.is_active:
        raise AccessDenied("User account is deactivated")
    logger.info("User %s logged in", user.email)
    return issue_tokens(user)


def refresh_tokens(session: Session, refresh_token: str) -> dict:
    payload = decode_token(refresh_token, expected_type=REFRESH_TOKEN)
    if is_token_revoked(session, payload["jti"]):
        logger.warning("Revoked refresh token %s presented for %s", payload["jti"], payload["sub"])
        raise AccessDenied("Refresh token has been revoked")

    user = get_user_by_email(session, payload["sub"])
    if user is None:
        raise AccessDenied("User not found")
    if not user.is_active:
        raise AccessDenied("User account is deactivated")

    if not revoke_token(session, payload["jti"], expires_at=_expiry_of(payload), user_id=user.id):
        logger.warning("Refresh token %s was already rotated for %s", payload["jti"], user.email)
        raise AccessDenied("Refresh token has been revoked")
    return issue_tokens(user)


def logout(session: Session, refresh_token: str) -> None:
    try:
        payload = decode_token(refresh_token, expected_type=REFRESH_TOKEN)
    except InvalidToken:
        # An expired or garbled token cannot be replayed, nothing to record.
        return
    user = get_user_by_email(session, payload["sub"])
    revoke_token(
        session,
        payload["jti"],
        expires_at=_expiry_of(payload),
        user_id=user.id if user else None,
    )


def change_password(session: Session, user: UserORM, current_password: str, new_password: str) -> None:
    if not verify_password(current_password, user.password_hash):
        raise ValidationFailed("Current password is incorrect")
    if current_password == new_password:
        raise ValidationFailed("New password must be different from the current password")
    _validate_password(new_password)
    user.password_hash = hash_password(new_password)
    session.flush()
    logger.info("Password changed for user %s", user.email)


def ensure_default_admin(session: Session) -> None:
    email = settings.default_admin_email.strip().lower()
    if not email or get_user_by_email(session, email):
        return
    create_user(
        session,
        email=email,
        password=settings.default_admin_password,
        full_name="Administrator",
        role=UserRole.ADMIN,
    )
