from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    ADMIN = "admin"
    STAFF = "staff"
    CUSTOMER = "customer"


class AccountStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    BANNED = "banned"
    LOCKED = "locked"


class TwoFactorMethod(str, Enum):
    NONE = "none"
    APP = "app"
    EMAIL = "email"


class OtpPurpose(str, Enum):
    EMAIL_VERIFICATION = "email_verification"
    TWO_FACTOR = "two_factor"
    TWO_FACTOR_DISABLE = "2fa_disable"
    PASSWORD_RESET = "password_reset"


class ActivityType(str, Enum):
    AUTH_CHECK = "auth_check"
    REFRESH = "refresh"
    LOGOUT = "logout"
    REVOKED = "revoked"


class AuditEventType(str, Enum):
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILURE = "login_failure"
    LOGOUT = "logout"
    PASSWORD_RESET_REQUEST = "password_reset_request"
    PASSWORD_RESET_SUCCESS = "password_reset_success"
    ACCOUNT_LOCKED = "account_locked"
    ACCOUNT_UNLOCKED = "account_unlocked"
    EMAIL_VERIFICATION = "email_verification"
    TWO_FACTOR_ENABLED = "2fa_enabled"
    TWO_FACTOR_DISABLED = "2fa_disabled"
    TWO_FACTOR_VERIFICATION_SUCCESS = "2fa_verification_success"
    TWO_FACTOR_VERIFICATION_FAILURE = "2fa_verification_failure"
    ACCOUNT_STATUS_CHANGE = "account_status_change"
    PROFILE_UPDATE = "profile_update"


@dataclass
class User:
    id: str
    email: str
    username: str
    role: Role = Role.CUSTOMER
    email_verified: bool = False
    two_factor_enabled: bool = False
    two_factor_method: TwoFactorMethod = TwoFactorMethod.NONE
    login_attempts: int = 0
    last_login_attempt: Optional[datetime] = None
    account_status: AccountStatus = AccountStatus.ACTIVE
    status_reason: Optional[str] = None
    status_expires_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_restricted(self) -> bool:
        return self.account_status != AccountStatus.ACTIVE

    def restriction_lapsed(self, now: datetime) -> bool:
        """True when a timed restriction has run out and may be lifted."""
        return (
            self.is_restricted
            and self.status_expires_at is not None
            and self.status_expires_at <= now
        )

    def public_dict(self) -> Dict:
        return {
            "id": self.id,
            "email": self.email,
            "username": self.username,
            "role": self.role.value,
            "email_verified": self.email_verified,
            "two_factor_enabled": self.two_factor_enabled,
            "two_factor_method": self.two_factor_method.value,
            "account_status": self.account_status.value,
        }


@dataclass
class PasswordRecord:
    user_id: str
    password_hash: str
    password_algo: str = "argon2id"


@dataclass
class DeviceInfo:
    device_type: str = "desktop"
    browser: Optional[str] = None
    os: Optional[str] = None

    @classmethod
    def from_headers(
        cls, user_agent: str | None, platform_hint: str | None
    ) -> "DeviceInfo":
        ua = (user_agent or "").lower()
        if "ipad" in ua or "tablet" in ua:
            device_type = "tablet"
        elif "mobi" in ua or "android" in ua or "iphone" in ua:
            device_type = "mobile"
        else:
            device_type = "desktop"
        platform = platform_hint.strip('"') if platform_hint else None
        return cls(device_type=device_type, browser=user_agent, os=platform)

    def to_dict(self) -> Dict:
        return {"deviceType": self.device_type, "browser": self.browser, "os": self.os}

    @classmethod
    def from_dict(cls, data: Dict | None) -> "DeviceInfo":
        data = data or {}
        return cls(
            device_type=data.get("deviceType", "desktop"),
            browser=data.get("browser"),
            os=data.get("os"),
        )


@dataclass
class Session:
    id: str
    user_id: str
    refresh_token_hash: str
    created_at: datetime
    expires_at: datetime
    last_activity: datetime
    device_info: DeviceInfo = field(default_factory=DeviceInfo)
    ip_address: Optional[str] = None
    browser_session_id: Optional[str] = None
    remember_me: bool = False
    is_active: bool = True

    @classmethod
    def new(
        cls,
        user_id: str,
        refresh_token_hash: str,
        ttl: timedelta,
        *,
        device_info: DeviceInfo | None = None,
        ip_address: str | None = None,
        browser_session_id: str | None = None,
        remember_me: bool = False,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            refresh_token_hash=refresh_token_hash,
            created_at=now,
            expires_at=now + ttl,
            last_activity=now,
            device_info=device_info or DeviceInfo(),
            ip_address=ip_address,
            browser_session_id=browser_session_id,
            remember_me=remember_me,
        )

    def usable(self, now: datetime) -> bool:
        return self.is_active and self.expires_at > now


@dataclass
class SessionActivity:
    session_id: str
    activity_type: ActivityType
    ip_address: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class CsrfToken:
    token: str
    expires_at: datetime
    user_id: Optional[str] = None
    browser_session_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class OneTimeCode:
    id: str
    user_id: str
    email: str
    code: str
    purpose: OtpPurpose
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class AuditEvent:
    id: str
    event_type: AuditEventType
    user_id: Optional[str] = None
    description: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Notification:
    id: str
    user_id: str
    type: str
    title: str
    message: str
    icon_class: str
    icon_background: str
    viewed: bool = False
    created_at: datetime = field(default_factory=utcnow)
