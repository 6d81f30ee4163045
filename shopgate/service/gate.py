from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

from shopgate.config import Settings
from shopgate.logging import get_logger
from shopgate.service.audit import AuditRecorder
from shopgate.service.codec import ACCESS, REFRESH, CredentialCodec, identity_for
from shopgate.service.errors import (
    AccountRestrictedError,
    AuthenticationError,
    SessionNotFoundError,
    SessionRevokedError,
    TokenExpiredError,
    TokenInvalidError,
)
from shopgate.service.sessions import SessionService
from shopgate.storage.common import AuthStore
from shopgate.storage.models import ActivityType, User
from shopgate.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

ACCESS_COOKIE = "accessToken"
REFRESH_COOKIE = "refreshToken"
BROWSER_SESSION_COOKIE = "SSID"


class CredentialState(str, Enum):
    NO_CREDENTIAL = "no_credential"
    ACCESS_VALID = "access_valid"
    # Also covers an absent access cookie alongside a usable refresh cookie
    ACCESS_EXPIRED_REFRESH_VALID = "access_expired_refresh_valid"
    ALL_INVALID = "all_invalid"


@dataclass
class CallerContext:
    user_id: str
    role: str
    user: User
    credential_state: CredentialState
    session_id: Optional[str] = None
    refresh_token: Optional[str] = None
    access_claims: dict[str, Any] = field(default_factory=dict)


@dataclass
class GateOutcome:
    caller: CallerContext
    new_access_token: Optional[str] = None


class AuthGate:
    """Resolve request cookies into a caller or a typed rejection.

    Rejections raise ``AuthenticationError`` subclasses carrying the cookies
    the response must clear, or ``AccountRestrictedError`` when the account
    is restricted and the restriction has not lapsed.
    """

    def __init__(
        self,
        store: AuthStore,
        codec: CredentialCodec,
        sessions: SessionService,
        audit: AuditRecorder,
        settings: Settings,
        *,
        cache: Optional[RedisCache | SyncRedisCache] = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.codec = codec
        self.sessions = sessions
        self.audit = audit
        self.settings = settings
        self.cache = cache
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @staticmethod
    def classify(access_token: str | None, refresh_token: str | None) -> CredentialState:
        """Initial state before any verification; refined by ``authenticate``."""
        if not access_token and not refresh_token:
            return CredentialState.NO_CREDENTIAL
        if access_token:
            return CredentialState.ACCESS_VALID
        return CredentialState.ACCESS_EXPIRED_REFRESH_VALID

    async def authenticate(
        self,
        access_token: str | None,
        refresh_token: str | None,
        *,
        ip: str | None = None,
    ) -> GateOutcome:
        state = self.classify(access_token, refresh_token)
        if state == CredentialState.NO_CREDENTIAL:
            raise AuthenticationError("Authentication required")

        claims: dict[str, Any] = {}
        session_id: Optional[str] = None
        new_access: Optional[str] = None

        if access_token:
            try:
                claims = self.codec.verify(access_token, ACCESS)
            except TokenExpiredError:
                if not refresh_token:
                    logger.info("gate_access_expired_no_refresh")
                    raise TokenExpiredError(
                        "Access token expired", clear_cookies=(ACCESS_COOKIE,)
                    )
                state = CredentialState.ACCESS_EXPIRED_REFRESH_VALID
            except TokenInvalidError as exc:
                logger.warning("gate_access_invalid", reason=exc.message)
                raise TokenInvalidError(
                    "Invalid access token", clear_cookies=(ACCESS_COOKIE,)
                )
            else:
                await self._reject_if_denylisted(claims)
                session_id = claims.get("sid")
                if session_id:
                    if self.sessions.get_active(session_id) is None:
                        logger.info("gate_session_revoked", session_id=session_id)
                        raise SessionRevokedError(
                            "Session has been revoked",
                            clear_cookies=(ACCESS_COOKIE, REFRESH_COOKIE),
                        )
                    self.sessions.touch(session_id, ActivityType.AUTH_CHECK, ip)

        if state == CredentialState.ACCESS_EXPIRED_REFRESH_VALID:
            claims, session_id, new_access = self._refresh(refresh_token or "", ip)

        user = self.store.get_user(claims["sub"])
        if user is None:
            logger.warning("gate_user_missing", user_id=claims.get("sub"))
            raise AuthenticationError(
                "Authentication required",
                clear_cookies=(ACCESS_COOKIE, REFRESH_COOKIE),
            )

        user = self.check_account_status(user)
        caller = CallerContext(
            user_id=user.id,
            role=user.role.value,
            user=user,
            credential_state=state,
            session_id=session_id,
            refresh_token=refresh_token,
            access_claims=claims,
        )
        return GateOutcome(caller=caller, new_access_token=new_access)

    def _refresh(
        self, refresh_token: str, ip: str | None
    ) -> tuple[dict[str, Any], str, str]:
        both = (ACCESS_COOKIE, REFRESH_COOKIE)
        try:
            refresh_claims = self.codec.verify(refresh_token, REFRESH)
        except (TokenExpiredError, TokenInvalidError) as exc:
            logger.info("gate_refresh_rejected", reason=exc.message)
            raise type(exc)(exc.message, clear_cookies=both)
        try:
            session, user = self.sessions.find_active_by_refresh_token(refresh_token)
        except SessionNotFoundError:
            logger.info("gate_refresh_session_missing", user_id=refresh_claims.get("sub"))
            raise SessionRevokedError("Session has been revoked", clear_cookies=both)
        if session.user_id != refresh_claims.get("sub"):
            logger.warning("gate_refresh_subject_mismatch", session_id=session.id)
            raise TokenInvalidError("Invalid refresh token", clear_cookies=both)

        self.sessions.touch(session.id, ActivityType.REFRESH, ip)
        new_access = self.codec.issue_access(identity_for(user, session.id))
        claims = self.codec.verify(new_access, ACCESS)
        logger.info("gate_access_refreshed", user_id=user.id, session_id=session.id)
        return claims, session.id, new_access

    async def _reject_if_denylisted(self, claims: dict[str, Any]) -> None:
        jti = claims.get("jti")
        if self.cache is None or not jti:
            return
        if await self.cache.is_access_token_denylisted(jti):
            logger.info("gate_access_denylisted", user_id=claims.get("sub"))
            raise TokenInvalidError(
                "Access token has been revoked", clear_cookies=(ACCESS_COOKIE,)
            )

    def check_account_status(self, user: User, *, status_code: int | None = None) -> User:
        """Lift lapsed restrictions, otherwise reject restricted accounts.

        Returns the (possibly reactivated) user.
        """
        if not user.is_restricted:
            return user
        now = self._clock()
        if user.restriction_lapsed(now):
            previous = user.account_status
            if self.store.reactivate_if_lapsed(user.id, now):
                self.audit.record_reactivation(user.id, previous)
                logger.info(
                    "account_reactivated", user_id=user.id, previous_status=previous.value
                )
            refreshed = self.store.get_user(user.id)
            if refreshed is not None and not refreshed.is_restricted:
                return refreshed
            user = refreshed or user
        raise AccountRestrictedError.for_status(
            user.account_status.value,
            reason=user.status_reason,
            expires_at=user.status_expires_at.isoformat() if user.status_expires_at else None,
            support_email=self.settings.support_email,
            status_code=status_code,
        )
