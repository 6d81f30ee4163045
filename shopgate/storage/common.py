"""Contract and helpers shared between the memory and postgres stores.

Both backends implement :class:`AuthStore`; services depend on the protocol
only, so the runtime can swap stores without touching call sites.
"""

from __future__ import annotations

import base64
import hashlib
import os
import secrets
from datetime import datetime, timedelta
from pathlib import Path
from typing import List, Optional, Protocol

from cryptography.fernet import Fernet

from shopgate.storage.models import (
    AccountStatus,
    ActivityType,
    AuditEvent,
    AuditEventType,
    CsrfToken,
    DeviceInfo,
    Notification,
    OneTimeCode,
    OtpPurpose,
    PasswordRecord,
    Role,
    Session,
    SessionActivity,
    TwoFactorMethod,
    User,
)


class AuthStore(Protocol):
    def ping(self) -> bool: ...

    def close(self) -> None: ...

    def create_user(
        self,
        email: str,
        username: str,
        *,
        role: Role = Role.CUSTOMER,
        email_verified: bool = False,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def list_user_ids(self) -> List[str]: ...

    def update_user_role(self, user_id: str, role: Role) -> Optional[User]: ...

    def update_username(self, user_id: str, username: str) -> Optional[User]: ...

    def mark_email_verified(self, user_id: str) -> Optional[User]: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[PasswordRecord]: ...

    def register_failed_login(
        self, user_id: str, at: datetime, *, window_start: datetime
    ) -> Optional[User]: ...

    def reset_login_attempts(self, user_id: str) -> Optional[User]: ...

    def set_account_status(
        self,
        user_id: str,
        status: AccountStatus,
        *,
        reason: str | None = None,
        expires_at: datetime | None = None,
    ) -> Optional[User]: ...

    def reactivate_if_lapsed(self, user_id: str, now: datetime) -> bool: ...

    def set_totp_secret(self, user_id: str, secret: str | None) -> None: ...

    def get_totp_secret(self, user_id: str) -> Optional[str]: ...

    def set_two_factor(
        self, user_id: str, *, enabled: bool, method: TwoFactorMethod
    ) -> Optional[User]: ...

    def create_session(
        self,
        user_id: str,
        refresh_token_hash: str,
        ttl: timedelta,
        *,
        device_info: DeviceInfo | None = None,
        ip_address: str | None = None,
        browser_session_id: str | None = None,
        remember_me: bool = False,
    ) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def get_session_by_refresh_hash(
        self, refresh_token_hash: str
    ) -> Optional[Session]: ...

    def list_active_sessions(self, user_id: str, now: datetime) -> List[Session]: ...

    def deactivate_session(self, session_id: str) -> bool: ...

    def deactivate_user_sessions(
        self, user_id: str, *, keep_session_id: str | None = None
    ) -> List[str]: ...

    def record_session_activity(
        self,
        session_id: str,
        activity_type: ActivityType,
        ip_address: str | None = None,
        at: datetime | None = None,
    ) -> None: ...

    def list_session_activity(self, session_id: str) -> List[SessionActivity]: ...

    def replace_csrf_token(self, token: CsrfToken) -> CsrfToken: ...

    def get_csrf_token(self, token: str) -> Optional[CsrfToken]: ...

    def delete_csrf_tokens(self, *, user_id: str) -> int: ...

    def create_otp(
        self,
        user_id: str,
        email: str,
        code: str,
        purpose: OtpPurpose,
        expires_at: datetime,
    ) -> OneTimeCode: ...

    def find_otp(
        self, user_id: str, code: str, purpose: OtpPurpose
    ) -> Optional[OneTimeCode]: ...

    def delete_otps(self, user_id: str, purpose: OtpPurpose) -> int: ...

    def append_audit_event(
        self,
        event_type: AuditEventType,
        *,
        user_id: str | None = None,
        description: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AuditEvent: ...

    def list_audit_events(
        self,
        *,
        user_id: str | None = None,
        event_type: AuditEventType | None = None,
        limit: int = 100,
    ) -> List[AuditEvent]: ...

    def create_notifications(
        self,
        user_ids: List[str],
        *,
        type: str,
        title: str,
        message: str,
        icon_class: str,
        icon_background: str,
    ) -> List[Notification]: ...

    def list_notifications(self, user_id: str, limit: int = 50) -> List[Notification]: ...

    def mark_notifications_viewed(self, user_id: str) -> int: ...

    def delete_notifications_before(self, cutoff: datetime) -> int: ...


def derive_cipher_key(key_material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())


def build_mfa_cipher(key_material: str | None, fs_root: Path) -> Fernet:
    """Fernet cipher for TOTP secrets at rest.

    Key material comes from the argument, ``MFA_SECRET_KEY`` or ``JWT_SECRET``;
    failing those a random key is generated once and kept under ``fs_root``.
    """
    material = key_material or os.getenv("MFA_SECRET_KEY") or os.getenv("JWT_SECRET")
    if not material:
        secret_path = fs_root / ".mfa_secret"
        if secret_path.exists() and not secret_path.is_symlink():
            material = secret_path.read_text().strip()
        if not material:
            generated = secrets.token_urlsafe(64)
            try:
                secret_path.write_text(generated)
                os.chmod(secret_path, 0o600)
            except OSError as exc:
                raise RuntimeError("Unable to persist MFA encryption key") from exc
            material = generated
    return Fernet(derive_cipher_key(material))
