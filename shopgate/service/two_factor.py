from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import os
import secrets
import time
from datetime import datetime, timedelta, timezone
from typing import Callable
from urllib.parse import quote, urlencode

from shopgate.config import Settings
from shopgate.logging import get_logger
from shopgate.service.audit import AuditRecorder
from shopgate.service.codec import CHALLENGE, CredentialCodec
from shopgate.service.email import EmailService
from shopgate.service.errors import (
    TokenExpiredError,
    TokenInvalidError,
    TwoFactorAlreadyEnabledError,
    TwoFactorInvalidCodeError,
    TwoFactorNotEnabledError,
    ValidationError,
)
from shopgate.service.notifications import NotificationService, NotificationType
from shopgate.service.sessions import LoginResult, SessionService
from shopgate.storage.common import AuthStore
from shopgate.storage.models import (
    AuditEventType,
    DeviceInfo,
    OtpPurpose,
    TwoFactorMethod,
    User,
)

logger = get_logger(__name__)

TOTP_INTERVAL = 30
TOTP_DIGITS = 6


def new_totp_secret() -> str:
    return base64.b32encode(os.urandom(20)).decode("utf-8").rstrip("=")


def generate_otp(digits: int = 6) -> str:
    return str(secrets.randbelow(10**digits)).zfill(digits)


def generate_totp(
    secret: str, timestamp: float, *, interval: int = TOTP_INTERVAL, digits: int = TOTP_DIGITS
) -> str:
    """RFC 6238 code (HMAC-SHA1) for ``timestamp``; empty string for a bad secret."""
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, True)
    except (binascii.Error, ValueError):
        logger.warning("totp_secret_invalid")
        return ""
    counter = int(timestamp // interval).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


def verify_totp(
    secret: str,
    code: str,
    *,
    at: float | None = None,
    window: int = 1,
    interval: int = TOTP_INTERVAL,
) -> bool:
    """Accept the current step and ``window`` steps either side for clock drift."""
    if not code or not code.isdigit():
        return False
    now = time.time() if at is None else at
    for offset in range(-window, window + 1):
        generated = generate_totp(secret, now + offset * interval, interval=interval)
        if generated and hmac.compare_digest(generated, code):
            return True
    return False


def provisioning_uri(secret: str, account: str, issuer: str) -> str:
    label = quote(f"{issuer}:{account}")
    query = urlencode(
        {
            "secret": secret,
            "issuer": issuer,
            "algorithm": "SHA1",
            "digits": TOTP_DIGITS,
            "period": TOTP_INTERVAL,
        }
    )
    return f"otpauth://totp/{label}?{query}"


def parse_method(method: str | TwoFactorMethod) -> TwoFactorMethod:
    try:
        parsed = TwoFactorMethod(method)
    except ValueError:
        parsed = TwoFactorMethod.NONE
    if parsed == TwoFactorMethod.NONE:
        raise ValidationError("Invalid 2FA method", detail={"method": str(method)})
    return parsed


class TwoFactorEngine:
    """Enrollment, login-time verification and email-confirmed removal of 2FA.

    Per user: DISABLED -> ENROLLING -> ENABLED -> DISABLE_REQUESTED -> DISABLED.
    Enrolling leaves an unconfirmed TOTP secret (``app``) or a pending
    ``two_factor`` OTP (``email``); only ``verify_and_enable`` flips the flag.
    """

    def __init__(
        self,
        store: AuthStore,
        sessions: SessionService,
        audit: AuditRecorder,
        notifications: NotificationService,
        email: EmailService,
        codec: CredentialCodec,
        settings: Settings,
        *,
        clock: Callable[[], datetime] | None = None,
        totp_clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.audit = audit
        self.notifications = notifications
        self.email = email
        self.codec = codec
        self.settings = settings
        self.otp_ttl = timedelta(seconds=settings.two_factor_otp_ttl_seconds)
        self.disable_ttl = timedelta(seconds=settings.two_factor_disable_ttl_seconds)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._totp_clock = totp_clock

    def _issue_otp(self, user: User, purpose: OtpPurpose, ttl: timedelta, code: str) -> None:
        self.store.delete_otps(user.id, purpose)
        self.store.create_otp(user.id, user.email, code, purpose, self._clock() + ttl)

    def _consume_otp(self, user_id: str, code: str, purpose: OtpPurpose) -> bool:
        record = self.store.find_otp(user_id, code, purpose)
        if record is None or record.expires_at <= self._clock():
            return False
        self.store.delete_otps(user_id, purpose)
        return True

    def _send_email_code(self, user: User) -> None:
        code = generate_otp()
        self._issue_otp(user, OtpPurpose.TWO_FACTOR, self.otp_ttl, code)
        self.email.send_two_factor_code(
            user.email, code, int(self.otp_ttl.total_seconds() // 60)
        )

    def _code_matches(self, user: User, method: TwoFactorMethod, code: str) -> bool:
        if method == TwoFactorMethod.APP:
            secret = self.store.get_totp_secret(user.id)
            return bool(secret) and verify_totp(secret, code, at=self._totp_clock())
        return self._consume_otp(user.id, code, OtpPurpose.TWO_FACTOR)

    def setup(self, user: User, method: str | TwoFactorMethod) -> dict:
        if user.two_factor_enabled:
            raise TwoFactorAlreadyEnabledError("2FA is already enabled")
        chosen = parse_method(method)
        if chosen == TwoFactorMethod.APP:
            secret = new_totp_secret()
            self.store.set_totp_secret(user.id, secret)
            logger.info("two_factor_setup_started", user_id=user.id, method=chosen.value)
            return {
                "method": chosen.value,
                "secret": secret,
                "otpauth_uri": provisioning_uri(
                    secret, user.email, self.settings.totp_issuer
                ),
            }
        self._send_email_code(user)
        logger.info("two_factor_setup_started", user_id=user.id, method=chosen.value)
        return {
            "method": chosen.value,
            "expires_in": int(self.otp_ttl.total_seconds()),
        }

    def verify_and_enable(
        self,
        user: User,
        method: str | TwoFactorMethod,
        code: str,
        *,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> User:
        if user.two_factor_enabled:
            raise TwoFactorAlreadyEnabledError("2FA is already enabled")
        chosen = parse_method(method)
        if not self._code_matches(user, chosen, code):
            logger.info("two_factor_enable_rejected", user_id=user.id, method=chosen.value)
            raise TwoFactorInvalidCodeError("Invalid verification code")

        if chosen == TwoFactorMethod.EMAIL:
            self.store.set_totp_secret(user.id, None)
        updated = self.store.set_two_factor(user.id, enabled=True, method=chosen) or user
        self.audit.record(
            AuditEventType.TWO_FACTOR_ENABLED,
            user_id=user.id,
            description=f"2FA enabled with {chosen.value} method",
            ip=ip,
            user_agent=user_agent,
        )
        self.notifications.push(NotificationType.TWO_FACTOR_ENABLE, user_id=user.id)
        self.email.send_two_factor_enabled(user.email, chosen.value)
        return updated

    def start_login_challenge(self, user: User) -> dict:
        """Second step of a password login; returns what the client must echo back."""
        method = user.two_factor_method
        if method == TwoFactorMethod.EMAIL:
            self._send_email_code(user)
        logger.info("two_factor_challenge_issued", user_id=user.id, method=method.value)
        return {
            "method": method.value,
            "challenge_token": self.codec.issue_challenge(user.id),
        }

    def verify_login(
        self,
        email: str,
        code: str,
        method: str | TwoFactorMethod,
        *,
        challenge_token: str,
        remember_me: bool = False,
        device_info: DeviceInfo | None = None,
        ip: str | None = None,
        user_agent: str | None = None,
        browser_session_id: str | None = None,
    ) -> LoginResult:
        """Finish a login that answered ``two_factor_required``.

        The challenge token proves the password step passed for this user, so
        a second factor alone never yields credentials.
        """
        chosen = parse_method(method)
        try:
            claims = self.codec.verify(challenge_token, CHALLENGE)
        except (TokenExpiredError, TokenInvalidError) as exc:
            logger.info("two_factor_challenge_rejected", reason=exc.message)
            raise TokenInvalidError(
                "Verification session expired, please sign in again", status_code=200
            )
        user = self.store.get_user_by_email(email)
        if user is None or claims["sub"] != user.id:
            raise TokenInvalidError(
                "Verification session expired, please sign in again", status_code=200
            )
        if not user.two_factor_enabled or user.two_factor_method != chosen:
            raise TwoFactorInvalidCodeError("Invalid verification code")

        if not self._code_matches(user, chosen, code):
            self.audit.record(
                AuditEventType.TWO_FACTOR_VERIFICATION_FAILURE,
                user_id=user.id,
                description="Invalid 2FA token",
                ip=ip,
                user_agent=user_agent,
            )
            raise TwoFactorInvalidCodeError("Invalid verification code")

        self.audit.record(
            AuditEventType.TWO_FACTOR_VERIFICATION_SUCCESS,
            user_id=user.id,
            description=f"2FA verification successful with {chosen.value} method",
            ip=ip,
            user_agent=user_agent,
        )
        self.audit.record_login_attempt(
            user.email, True, ip=ip, user_agent=user_agent
        )
        self.store.delete_otps(user.id, OtpPurpose.TWO_FACTOR)
        return self.sessions.start_login(
            user,
            remember_me=remember_me,
            device_info=device_info,
            ip=ip,
            browser_session_id=browser_session_id,
        )

    def request_disable(self, user: User) -> None:
        if not user.two_factor_enabled:
            raise TwoFactorNotEnabledError("2FA is not enabled")
        token = secrets.token_hex(32)
        self._issue_otp(user, OtpPurpose.TWO_FACTOR_DISABLE, self.disable_ttl, token)
        self.email.send_two_factor_disable_link(
            user.email,
            user.id,
            token,
            max(1, int(self.disable_ttl.total_seconds() // 60)),
        )
        logger.info("two_factor_disable_requested", user_id=user.id)

    def confirm_disable(
        self,
        user_id: str,
        token: str,
        *,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> User:
        user = self.store.get_user(user_id)
        if user is None or not self._consume_otp(
            user_id, token, OtpPurpose.TWO_FACTOR_DISABLE
        ):
            raise TokenInvalidError("Invalid or expired OTP", status_code=200)
        if not user.two_factor_enabled:
            raise TwoFactorNotEnabledError("2FA is not enabled")
        self.store.set_totp_secret(user_id, None)
        updated = (
            self.store.set_two_factor(user_id, enabled=False, method=TwoFactorMethod.NONE)
            or user
        )
        self.audit.record(
            AuditEventType.TWO_FACTOR_DISABLED,
            user_id=user_id,
            description="2FA disabled",
            ip=ip,
            user_agent=user_agent,
        )
        self.notifications.push(NotificationType.TWO_FACTOR_DISABLE, user_id=user_id)
        return updated
