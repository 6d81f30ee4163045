from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from shopgate.config import Settings
from shopgate.logging import get_logger
from shopgate.storage.common import AuthStore
from shopgate.storage.models import AccountStatus, AuditEvent, AuditEventType, User

logger = get_logger(__name__)

LOCKOUT_REASON = "Too many failed login attempts"


class AuditRecorder:
    """Append-only security audit log plus the failed-login lockout counter."""

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.max_attempts = settings.max_login_attempts
        self.lock_duration = timedelta(seconds=settings.account_lock_seconds)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def record(
        self,
        event_type: AuditEventType,
        *,
        user_id: str | None = None,
        description: str | None = None,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> AuditEvent:
        event = self.store.append_audit_event(
            event_type,
            user_id=user_id,
            description=description,
            ip_address=ip,
            user_agent=user_agent,
        )
        logger.info(
            "audit_event",
            event_type=event_type.value,
            user_id=user_id,
            ip=ip,
        )
        return event

    def record_login_attempt(
        self,
        email: str,
        success: bool,
        reason: str | None = None,
        *,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> Optional[User]:
        """Log a login attempt and maintain the lockout counter.

        Failures increment ``login_attempts``; reaching ``max_login_attempts``
        locks the account for ``account_lock_seconds``. A success resets the
        counter. Returns the refreshed user, or None for unknown emails.
        """
        user = self.store.get_user_by_email(email)
        if success:
            if user is None:
                return None
            self.record(
                AuditEventType.LOGIN_SUCCESS,
                user_id=user.id,
                description="Successful login",
                ip=ip,
                user_agent=user_agent,
            )
            return self.store.reset_login_attempts(user.id)

        self.record(
            AuditEventType.LOGIN_FAILURE,
            user_id=user.id if user else None,
            description=f"Failed login attempt: {reason or 'invalid credentials'}",
            ip=ip,
            user_agent=user_agent,
        )
        if user is None:
            return None

        now = self._clock()
        updated = self.store.register_failed_login(
            user.id, now, window_start=now - self.lock_duration
        )
        if updated is None:
            return None
        if (
            updated.login_attempts >= self.max_attempts
            and updated.account_status == AccountStatus.ACTIVE
        ):
            updated = self.store.set_account_status(
                user.id,
                AccountStatus.LOCKED,
                reason=LOCKOUT_REASON,
                expires_at=now + self.lock_duration,
            )
            self.record(
                AuditEventType.ACCOUNT_LOCKED,
                user_id=user.id,
                description=f"Account locked after {self.max_attempts} failed login attempts",
                ip=ip,
                user_agent=user_agent,
            )
            logger.warning(
                "account_locked",
                user_id=user.id,
                attempts=self.max_attempts,
                lock_seconds=int(self.lock_duration.total_seconds()),
            )
        return updated

    def record_status_change(
        self,
        user_id: str,
        old_status: AccountStatus,
        new_status: AccountStatus,
        reason: str | None,
        admin_id: str | None,
        *,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> AuditEvent:
        return self.record(
            AuditEventType.ACCOUNT_STATUS_CHANGE,
            user_id=user_id,
            description=(
                f"Account status changed from {old_status.value} to {new_status.value}"
                f" - Reason: {reason or 'No reason provided'}"
                f" - By admin ID: {admin_id or 'system'}"
            ),
            ip=ip,
            user_agent=user_agent,
        )

    def record_reactivation(self, user_id: str, previous: AccountStatus) -> AuditEvent:
        return self.record(
            AuditEventType.ACCOUNT_UNLOCKED,
            user_id=user_id,
            description=f"Account automatically reactivated after {previous.value} period expired",
        )

    def record_profile_update(
        self,
        user_id: str,
        field: str,
        *,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> AuditEvent:
        return self.record(
            AuditEventType.PROFILE_UPDATE,
            user_id=user_id,
            description=f"Profile updated: {field}",
            ip=ip,
            user_agent=user_agent,
        )
