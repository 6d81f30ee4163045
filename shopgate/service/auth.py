from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from shopgate.config import Settings
from shopgate.logging import get_logger
from shopgate.service.audit import AuditRecorder
from shopgate.service.codec import REFRESH, CredentialCodec, identity_for
from shopgate.service.csrf import CsrfGuard
from shopgate.service.email import EmailService
from shopgate.service.errors import (
    ConflictError,
    ForbiddenError,
    InvalidCredentialsError,
    NotFoundError,
    SessionNotFoundError,
    TokenExpiredError,
    TokenInvalidError,
    ValidationError,
)
from shopgate.service.gate import ACCESS_COOKIE, REFRESH_COOKIE, AuthGate, CallerContext
from shopgate.service.notifications import NotificationService, NotificationType
from shopgate.service.sessions import LoginResult, SessionService
from shopgate.service.two_factor import TwoFactorEngine, generate_otp
from shopgate.storage.common import AuthStore
from shopgate.storage.errors import ConstraintViolation
from shopgate.storage.models import (
    AccountStatus,
    ActivityType,
    AuditEvent,
    AuditEventType,
    DeviceInfo,
    OtpPurpose,
    Role,
    Session,
    User,
)
from shopgate.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


@dataclass
class LoginOutcome:
    """Outcome of a password login: credentials or a pending follow-up step."""

    user: User
    result: Optional[LoginResult] = None
    two_factor: Optional[dict] = None
    email_verification_required: bool = False

    @property
    def two_factor_required(self) -> bool:
        return self.two_factor is not None


class AuthService:
    """Account-level flows: registration, password login, logout, email
    verification, refresh and admin status changes.

    Credential issuance is delegated to ``SessionService.start_login`` so the
    password path and the second-factor path mint identical credentials.
    """

    def __init__(
        self,
        store: AuthStore,
        codec: CredentialCodec,
        sessions: SessionService,
        csrf: CsrfGuard,
        audit: AuditRecorder,
        gate: AuthGate,
        two_factor: TwoFactorEngine,
        notifications: NotificationService,
        email: EmailService,
        settings: Settings,
        *,
        cache: Optional[RedisCache | SyncRedisCache] = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.codec = codec
        self.sessions = sessions
        self.csrf = csrf
        self.audit = audit
        self.gate = gate
        self.two_factor = two_factor
        self.notifications = notifications
        self.email = email
        self.settings = settings
        self.cache = cache
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._pwd_hasher = PasswordHasher(type=Type.ID)

    # -- passwords --------------------------------------------------------

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def save_password(self, user_id: str, password: str) -> None:
        """Hash and save a new password for a user."""
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    def verify_password(self, user_id: str, password: str) -> bool:
        """Verify a user's password against stored hash."""
        record = self.store.get_password_record(user_id)
        if not record:
            logger.warning("password_record_missing", user_id=user_id)
            return False
        if record.password_algo != PASSWORD_ALGO:
            logger.warning(
                "password_algo_mismatch", user_id=user_id, algo=record.password_algo
            )
            return False
        try:
            return self._pwd_hasher.verify(record.password_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    # -- registration and email verification -------------------------------

    def register(
        self,
        email: str,
        username: str,
        password: str,
        *,
        role: Role = Role.CUSTOMER,
        email_verified: bool = False,
    ) -> User:
        if self.store.get_user_by_email(email):
            raise ConflictError(
                "Email already registered", status_code=200, detail={"field": "email"}
            )
        try:
            user = self.store.create_user(
                email, username, role=role, email_verified=email_verified
            )
        except ConstraintViolation as exc:
            raise ConflictError(
                "Email already registered", status_code=200, detail=exc.detail
            )
        self.save_password(user.id, password)
        logger.info("user_registered", user_id=user.id, role=user.role.value)
        if not user.email_verified:
            self._send_verification_code(user)
        return user

    def _send_verification_code(self, user: User) -> None:
        ttl = timedelta(seconds=self.settings.email_verification_otp_ttl_seconds)
        code = generate_otp()
        self.store.delete_otps(user.id, OtpPurpose.EMAIL_VERIFICATION)
        self.store.create_otp(
            user.id, user.email, code, OtpPurpose.EMAIL_VERIFICATION, self._clock() + ttl
        )
        self.email.send_verification_code(
            user.email, code, max(1, int(ttl.total_seconds() // 60))
        )

    def resend_verification(self, email: str) -> None:
        user = self.store.get_user_by_email(email)
        if user is None:
            raise NotFoundError("User not found", status_code=200)
        if user.email_verified:
            raise ValidationError("Email is already verified", status_code=200)
        self._send_verification_code(user)
        logger.info("email_verification_resent", user_id=user.id)

    def verify_email(
        self,
        email: str,
        code: str,
        *,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> User:
        user = self.store.get_user_by_email(email)
        record = (
            self.store.find_otp(user.id, code, OtpPurpose.EMAIL_VERIFICATION)
            if user
            else None
        )
        if user is None or record is None or record.expires_at <= self._clock():
            raise TokenInvalidError("Invalid or expired OTP", status_code=200)
        self.store.delete_otps(user.id, OtpPurpose.EMAIL_VERIFICATION)
        updated = self.store.mark_email_verified(user.id) or user
        self.audit.record(
            AuditEventType.EMAIL_VERIFICATION,
            user_id=user.id,
            description="Email verified successfully",
            ip=ip,
            user_agent=user_agent,
        )
        return updated

    # -- password reset -------------------------------------------------

    def request_password_reset(
        self,
        email: str,
        *,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        """Mail a reset code. Unknown addresses get the same silent success."""
        user = self.store.get_user_by_email(email)
        if user is None:
            logger.info("password_reset_unknown_email")
            return
        ttl = timedelta(seconds=self.settings.password_reset_otp_ttl_seconds)
        code = generate_otp()
        self.store.delete_otps(user.id, OtpPurpose.PASSWORD_RESET)
        self.store.create_otp(
            user.id, user.email, code, OtpPurpose.PASSWORD_RESET, self._clock() + ttl
        )
        self.email.send_password_reset_code(
            user.email, code, max(1, int(ttl.total_seconds() // 60))
        )
        self.audit.record(
            AuditEventType.PASSWORD_RESET_REQUEST,
            user_id=user.id,
            description="Password reset requested",
            ip=ip,
            user_agent=user_agent,
        )

    def _live_reset_code(self, email: str, code: str) -> User:
        user = self.store.get_user_by_email(email)
        record = (
            self.store.find_otp(user.id, code, OtpPurpose.PASSWORD_RESET)
            if user
            else None
        )
        if user is None or record is None or record.expires_at <= self._clock():
            raise TokenInvalidError("Invalid or expired OTP", status_code=200)
        return user

    def verify_password_reset(self, email: str, code: str) -> None:
        """Check a reset code without consuming it."""
        self._live_reset_code(email, code)

    def reset_password(
        self,
        email: str,
        code: str,
        new_password: str,
        *,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> User:
        """Set a new password and sign the account out everywhere."""
        user = self._live_reset_code(email, code)
        self.store.delete_otps(user.id, OtpPurpose.PASSWORD_RESET)
        self.save_password(user.id, new_password)
        self.store.reset_login_attempts(user.id)
        revoked = self.sessions.revoke_all_except(user.id, None, ip)
        self.csrf.revoke_for_user(user.id)
        self.audit.record(
            AuditEventType.PASSWORD_RESET_SUCCESS,
            user_id=user.id,
            description="Password reset successfully",
            ip=ip,
            user_agent=user_agent,
        )
        self.notifications.push(NotificationType.PASSWORD_RESET, user_id=user.id)
        logger.info("password_reset", user_id=user.id, revoked_sessions=revoked)
        return user

    # -- activity ---------------------------------------------------------

    def recent_activity(self, user_id: str, *, limit: int = 20) -> list[AuditEvent]:
        """The caller's own audit trail, newest first."""
        return self.store.list_audit_events(user_id=user_id, limit=limit)

    # -- login / logout ---------------------------------------------------

    def login(
        self,
        email: str,
        password: str,
        *,
        remember_me: bool = False,
        device_info: DeviceInfo | None = None,
        ip: str | None = None,
        user_agent: str | None = None,
        browser_session_id: str | None = None,
    ) -> LoginOutcome:
        user = self.store.get_user_by_email(email)
        if user is None:
            self.audit.record_login_attempt(
                email, False, "unknown email", ip=ip, user_agent=user_agent
            )
            raise InvalidCredentialsError("Invalid email or password")

        # A live restriction wins over the password check; a lapsed one is lifted.
        user = self.gate.check_account_status(user, status_code=200)

        if not self.verify_password(user.id, password):
            updated = self.audit.record_login_attempt(
                email, False, "invalid password", ip=ip, user_agent=user_agent
            )
            logger.info(
                "login_failed",
                user_id=user.id,
                attempts=updated.login_attempts if updated else None,
            )
            raise InvalidCredentialsError("Invalid email or password")

        if not user.email_verified:
            self._send_verification_code(user)
            logger.info("login_email_unverified", user_id=user.id)
            return LoginOutcome(user=user, email_verification_required=True)

        if user.two_factor_enabled:
            challenge = self.two_factor.start_login_challenge(user)
            logger.info("login_two_factor_required", user_id=user.id)
            return LoginOutcome(user=user, two_factor=challenge)

        result = self.sessions.start_login(
            user,
            remember_me=remember_me,
            device_info=device_info,
            ip=ip,
            browser_session_id=browser_session_id,
        )
        user = self.audit.record_login_attempt(
            email, True, ip=ip, user_agent=user_agent
        ) or user
        result.user = user
        logger.info("login_succeeded", user_id=user.id, remember_me=remember_me)
        return LoginOutcome(user=user, result=result)

    async def logout(
        self,
        caller: CallerContext,
        *,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        """Sign the current device out and invalidate the caller's CSRF tokens."""
        session_id = caller.session_id
        if session_id is None and caller.refresh_token:
            try:
                session, _ = self.sessions.find_active_by_refresh_token(
                    caller.refresh_token
                )
                session_id = session.id
            except SessionNotFoundError:
                session_id = None
        if session_id:
            self.sessions.revoke(session_id, ip, activity_type=ActivityType.LOGOUT)
        self.csrf.revoke_for_user(caller.user_id)
        jti = caller.access_claims.get("jti")
        if self.cache is not None and jti:
            await self.cache.denylist_access_token(
                jti, self.codec.seconds_until_expiry(caller.access_claims)
            )
        self.audit.record(
            AuditEventType.LOGOUT,
            user_id=caller.user_id,
            description="User logged out",
            ip=ip,
            user_agent=user_agent,
        )

    def refresh(
        self, refresh_token: str | None, *, ip: str | None = None
    ) -> Tuple[str, Session, User]:
        """Mint a new access credential from the refresh cookie alone."""
        both = (ACCESS_COOKIE, REFRESH_COOKIE)
        if not refresh_token:
            raise TokenInvalidError("Refresh token is required", status_code=200)
        try:
            self.codec.verify(refresh_token, REFRESH)
        except (TokenExpiredError, TokenInvalidError) as exc:
            logger.info("refresh_token_rejected", reason=exc.message)
            raise SessionNotFoundError("Invalid or expired session", clear_cookies=both)
        try:
            session, user = self.sessions.find_active_by_refresh_token(refresh_token)
        except SessionNotFoundError:
            raise SessionNotFoundError("Invalid or expired session", clear_cookies=both)
        user = self.gate.check_account_status(user, status_code=200)
        self.sessions.touch(session.id, ActivityType.REFRESH, ip)
        access_token = self.codec.issue_access(identity_for(user, session.id))
        logger.info("access_token_refreshed", user_id=user.id, session_id=session.id)
        return access_token, session, user

    # -- profile and administration --------------------------------------

    def update_profile(
        self,
        user: User,
        *,
        username: str,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> User:
        updated = self.store.update_username(user.id, username)
        if updated is None:
            raise NotFoundError("User not found")
        self.audit.record_profile_update(user.id, "username", ip=ip, user_agent=user_agent)
        self.notifications.push(NotificationType.PROFILE, user_id=user.id)
        return updated

    def change_account_status(
        self,
        actor: User,
        target_user_id: str,
        status: AccountStatus,
        *,
        reason: str | None = None,
        duration_days: int | None = None,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> User:
        if actor.role not in (Role.ADMIN, Role.STAFF):
            raise ForbiddenError("Admin or staff role required")
        target = self.store.get_user(target_user_id)
        if target is None:
            raise NotFoundError("User not found", status_code=200)
        if target.id == actor.id:
            raise ValidationError("Cannot change your own account status", status_code=200)
        if target.role == Role.ADMIN and actor.role != Role.ADMIN:
            raise ForbiddenError("Only admins can change another admin's status")

        expires_at = None
        if status != AccountStatus.ACTIVE and duration_days and duration_days > 0:
            expires_at = self._clock() + timedelta(days=duration_days)
        if status == AccountStatus.ACTIVE:
            reason = None
            self.store.reset_login_attempts(target.id)
        updated = self.store.set_account_status(
            target.id, status, reason=reason, expires_at=expires_at
        ) or target
        self.audit.record_status_change(
            target.id,
            target.account_status,
            status,
            reason,
            actor.id,
            ip=ip,
            user_agent=user_agent,
        )
        self.email.send_account_status(
            target.email, status.value, reason=reason, duration_days=duration_days
        )
        logger.info(
            "account_status_changed",
            user_id=target.id,
            admin_id=actor.id,
            old_status=target.account_status.value,
            new_status=status.value,
        )
        return updated
