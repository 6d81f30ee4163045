from __future__ import annotations

import re
import unicodedata
from typing import Any, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from shopgate.service.notifications import NotificationType
from shopgate.storage.models import AccountStatus


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after stripping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset(
    {
        "INVALID_CREDENTIALS",
        "TOKEN_EXPIRED",
        "TOKEN_INVALID",
        "SESSION_NOT_FOUND",
        "SESSION_REVOKED",
        "ACCOUNT_LOCKED",
        "ACCOUNT_SUSPENDED",
        "ACCOUNT_BANNED",
        "CSRF_MISSING",
        "CSRF_INVALID",
        "TWO_FACTOR_REQUIRED",
        "TWO_FACTOR_INVALID_CODE",
        "TWO_FACTOR_ALREADY_ENABLED",
        "TWO_FACTOR_NOT_ENABLED",
        "RATE_LIMITED",
        "UNAUTHENTICATED",
        "FORBIDDEN",
        "NOT_FOUND",
        "CONFLICT",
        "VALIDATION_ERROR",
        "SERVER_ERROR",
    }
)


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """Uniform response envelope; clients branch on ``status``."""

    status: str = Field(..., pattern="^(success|error)$")
    message: Optional[str] = None
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def validate_email(value: str) -> str:
    """Return the normalized address or raise ``ValueError``."""
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_ ]+$")
_PASSWORD_CLASSES = (
    (re.compile(r"[a-z]"), "one lowercase letter"),
    (re.compile(r"[A-Z]"), "one uppercase letter"),
    (re.compile(r"\d"), "one number"),
    (re.compile(r"[@$!%*?&]"), "one special character (@$!%*?&)"),
)


def validate_username(value: str) -> str:
    value = _normalize_unicode(value).strip()
    if not 3 <= len(value) <= 30:
        raise ValueError("Username must be between 3 and 30 characters")
    if not _USERNAME_PATTERN.match(value):
        raise ValueError("Username can only contain letters, numbers, and underscores")
    return value


def validate_password_strength(value: str) -> str:
    """Enforce length and character-class rules; raises ``ValueError``."""
    if len(value) < 8:
        raise ValueError("Password must be at least 8 characters long")
    if len(value) > 128:
        raise ValueError("Password must be at most 128 characters")
    if " " in value:
        raise ValueError("Password must not contain spaces")
    missing = [label for pattern, label in _PASSWORD_CLASSES if not pattern.search(value)]
    if missing:
        raise ValueError("Password must contain at least " + ", ".join(missing))
    return value


class RegisterRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    username: str = Field(..., max_length=64)
    email: str
    password: str
    confirm_password: str = Field(..., alias="confirmPassword")

    @field_validator("username")
    @classmethod
    def _validate_register_username(cls, value: str) -> str:
        return validate_username(value)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return validate_password_strength(value)

    @model_validator(mode="after")
    def _passwords_match(self):
        if self.confirm_password != self.password:
            raise ValueError("Password confirmation does not match password")
        return self


class LoginRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    email: str
    password: str = Field(..., min_length=1, max_length=128)
    remember_me: bool = Field(default=False, alias="rememberMe")

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return validate_email(value)


class TwoFactorLoginRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    email: str
    otp: str = Field(..., min_length=6, max_length=6, pattern=r"^\d{6}$")
    method: Literal["app", "email"]
    challenge_token: str = Field(..., max_length=2048)
    remember_me: bool = Field(default=False, alias="rememberMe")

    @field_validator("email")
    @classmethod
    def _validate_two_factor_email(cls, value: str) -> str:
        return validate_email(value)


class TwoFactorSetupRequest(BaseModel):
    method: Literal["app", "email"]


class TwoFactorEnableRequest(BaseModel):
    method: Literal["app", "email"]
    otp: str = Field(..., min_length=6, max_length=6, pattern=r"^\d{6}$")


class EmailRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_request_email(cls, value: str) -> str:
        return validate_email(value)


class EmailVerifyRequest(EmailRequest):
    otp: str = Field(..., min_length=6, max_length=6, pattern=r"^\d{6}$")



class PasswordResetRequest(EmailVerifyRequest):
    model_config = ConfigDict(populate_by_name=True)

    password: str
    confirm_password: str = Field(..., alias="confirmPassword")

    @field_validator("password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return validate_password_strength(value)

    @model_validator(mode="after")
    def _passwords_match(self):
        if self.confirm_password != self.password:
            raise ValueError("Password confirmation does not match password")
        return self


class ProfileUpdateRequest(BaseModel):
    username: str = Field(..., max_length=64)

    @field_validator("username")
    @classmethod
    def _validate_profile_username(cls, value: str) -> str:
        return validate_username(value)


class AccountStatusRequest(BaseModel):
    status: AccountStatus
    reason: Optional[str] = Field(default=None, max_length=500)
    duration_days: Optional[int] = Field(default=None, ge=0, le=3650)


class BroadcastNotificationRequest(BaseModel):
    type: Literal["coupon", "announcement"]
    message: str = Field(..., min_length=1, max_length=500)

    @property
    def notification_type(self) -> NotificationType:
        return NotificationType(self.type)


class UserResponse(BaseModel):
    id: str
    email: str
    username: str
    role: str
    email_verified: bool
    two_factor_enabled: bool
    two_factor_method: str
    account_status: str


class LoginResponse(BaseModel):
    user: UserResponse
    csrf_token: Optional[str] = None
    session_id: Optional[str] = None
    remember_me: bool = False


class TwoFactorChallengeResponse(BaseModel):
    two_factor_required: bool = True
    method: str
    challenge_token: str


class SessionResponse(BaseModel):
    id: str
    device_info: dict
    ip_address: Optional[str] = None
    remember_me: bool
    created_at: str
    expires_at: str
    last_activity: str
    is_current_session: bool


class ActivityResponse(BaseModel):
    event_type: str
    description: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: str


class NotificationResponse(BaseModel):
    id: str
    type: str
    title: str
    message: str
    icon_class: str
    icon_background: str
    viewed: bool
    created_at: str
    time_ago: str
