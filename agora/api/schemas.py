from __future__ import annotations

import re
import unicodedata
from datetime import date, datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from agora.storage.models import Gender, Session, User, UserStatus

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
    "configuration_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_CODE_PATTERN = re.compile(r"^[0-9]{4,12}$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


def _validate_code(value: str) -> str:
    value = value.strip()
    if not _CODE_PATTERN.match(value):
        raise ValueError("code must be numeric")
    return value


class RegisterRequest(BaseModel):
    email: str
    password: str
    display_name: str = Field(..., min_length=1, max_length=64)
    birthday: Optional[date] = None
    gender: Optional[Gender] = None

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("birthday")
    @classmethod
    def _validate_birthday(cls, value: Optional[date]) -> Optional[date]:
        if value and value >= date.today():
            raise ValueError("birthday must be in the past")
        return value


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class LogoutRequest(BaseModel):
    session_id: Optional[str] = Field(default=None, max_length=64)


class RefreshRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=4096)
    session_id: Optional[str] = Field(default=None, max_length=64)


class PasswordChangeRequest(BaseModel):
    """Request to change password (requires current password)."""
    old_password: str = Field(..., min_length=1, max_length=128)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class EmailRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_request_email(cls, value: str) -> str:
        return _validate_email(value)


class RecoveryConfirmRequest(EmailRequest):
    code: str
    new_password: str

    @field_validator("code")
    @classmethod
    def _validate_recovery_code(cls, value: str) -> str:
        return _validate_code(value)

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class ForgotPasswordVerifyRequest(EmailRequest):
    user_id: str = Field(..., min_length=1, max_length=64)
    token: str
    new_password: str

    @field_validator("token")
    @classmethod
    def _validate_token(cls, value: str) -> str:
        return _validate_code(value)

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class UserResponse(BaseModel):
    id: str
    profile_id: str
    email: str
    secondary_emails: List[str] = Field(default_factory=list)
    display_name: str
    birthday: Optional[date] = None
    gender: Optional[Gender] = None
    status: UserStatus
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            profile_id=user.profile_id,
            email=user.primary_email,
            secondary_emails=list(user.secondary_emails),
            display_name=user.display_name,
            birthday=user.birthday,
            gender=user.gender,
            status=user.status,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


class SessionResponse(BaseModel):
    id: str
    device_name: Optional[str] = None
    ip_address: Optional[str] = None
    revoked: bool
    created_at: datetime
    last_login_at: datetime
    expires_at: datetime

    @classmethod
    def from_session(cls, session: Session) -> "SessionResponse":
        return cls(
            id=session.id,
            device_name=session.device_name,
            ip_address=session.ip_address,
            revoked=session.revoked,
            created_at=session.created_at,
            last_login_at=session.last_login_at,
            expires_at=session.expires_at,
        )


class AuthResponse(BaseModel):
    user: UserResponse
    session: SessionResponse
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    access_expires_at: datetime
    refresh_expires_at: datetime


class MessageResponse(BaseModel):
    message: str
