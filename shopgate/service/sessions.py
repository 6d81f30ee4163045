from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Tuple

from shopgate.config import Settings
from shopgate.logging import get_logger
from shopgate.service.codec import CredentialCodec, identity_for
from shopgate.service.errors import SessionNotFoundError
from shopgate.storage.common import AuthStore
from shopgate.storage.models import ActivityType, DeviceInfo, Session, User

logger = get_logger(__name__)


def hash_refresh_token(token: str) -> str:
    """Refresh credentials are only ever stored and compared as SHA-256 digests."""
    return hashlib.sha256(token.encode()).hexdigest()


@dataclass
class LoginResult:
    user: User
    access_token: str
    refresh_token: Optional[str] = None
    session: Optional[Session] = None


class SessionService:
    """Persistent per-device sessions keyed by refresh credential."""

    def __init__(
        self,
        store: AuthStore,
        codec: CredentialCodec,
        settings: Settings,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.codec = codec
        self.ttl = timedelta(days=settings.refresh_token_ttl_days)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def create_session(
        self,
        user_id: str,
        refresh_token: str,
        *,
        device_info: DeviceInfo | None = None,
        ip: str | None = None,
        remember_me: bool = False,
        browser_session_id: str | None = None,
        ttl: timedelta | None = None,
    ) -> Session:
        session = self.store.create_session(
            user_id,
            hash_refresh_token(refresh_token),
            ttl or self.ttl,
            device_info=device_info,
            ip_address=ip,
            browser_session_id=browser_session_id,
            remember_me=remember_me,
        )
        logger.info(
            "session_created",
            user_id=user_id,
            session_id=session.id,
            remember_me=remember_me,
            device_type=session.device_info.device_type,
        )
        return session

    def start_login(
        self,
        user: User,
        *,
        remember_me: bool = False,
        device_info: DeviceInfo | None = None,
        ip: str | None = None,
        browser_session_id: str | None = None,
    ) -> LoginResult:
        """Issue credentials for a fully authenticated user.

        An access credential is always minted. A refresh credential and its
        backing session exist only when the caller asked to be remembered;
        the access credential then carries the session id so revoking the
        session cuts it off too.
        """
        if not remember_me:
            return LoginResult(user=user, access_token=self.codec.issue_access(identity_for(user)))
        refresh_token = self.codec.issue_refresh(user.id)
        session = self.create_session(
            user.id,
            refresh_token,
            device_info=device_info,
            ip=ip,
            remember_me=True,
            browser_session_id=browser_session_id,
        )
        return LoginResult(
            user=user,
            access_token=self.codec.issue_access(identity_for(user, session.id)),
            refresh_token=refresh_token,
            session=session,
        )

    def find_active_by_refresh_token(self, refresh_token: str) -> Tuple[Session, User]:
        session = self.store.get_session_by_refresh_hash(hash_refresh_token(refresh_token))
        if session is None or not session.usable(self._clock()):
            raise SessionNotFoundError("Session not found or expired")
        user = self.store.get_user(session.user_id)
        if user is None:
            raise SessionNotFoundError("Session not found or expired")
        return session, user

    def get_active(self, session_id: str) -> Optional[Session]:
        session = self.store.get_session(session_id)
        if session is None or not session.usable(self._clock()):
            return None
        return session

    def touch(
        self, session_id: str, activity_type: ActivityType, ip: str | None = None
    ) -> None:
        self.store.record_session_activity(
            session_id, activity_type, ip_address=ip, at=self._clock()
        )

    def revoke(
        self,
        session_id: str,
        ip: str | None = None,
        *,
        activity_type: ActivityType = ActivityType.REVOKED,
    ) -> bool:
        """Deactivate one session. Revoking an inactive session is a no-op."""
        revoked = self.store.deactivate_session(session_id)
        if revoked:
            self.touch(session_id, activity_type, ip)
            logger.info("session_revoked", session_id=session_id, activity=activity_type.value)
        return revoked

    def revoke_owned(self, user_id: str, session_id: str, ip: str | None = None) -> bool:
        """Revoke ``session_id`` on behalf of ``user_id``.

        Sessions of other users are reported exactly like missing ones.
        """
        session = self.store.get_session(session_id)
        if session is None or session.user_id != user_id:
            raise SessionNotFoundError("Session not found")
        return self.revoke(session_id, ip)

    def revoke_all_except(
        self, user_id: str, keep_refresh_token: str | None, ip: str | None = None
    ) -> int:
        keep_session_id = None
        if keep_refresh_token:
            current = self.store.get_session_by_refresh_hash(
                hash_refresh_token(keep_refresh_token)
            )
            if current is not None and current.user_id == user_id:
                keep_session_id = current.id
        revoked = self.store.deactivate_user_sessions(
            user_id, keep_session_id=keep_session_id
        )
        for session_id in revoked:
            self.touch(session_id, ActivityType.REVOKED, ip)
        logger.info(
            "sessions_revoked_except_current",
            user_id=user_id,
            kept_session_id=keep_session_id,
            revoked=len(revoked),
        )
        return len(revoked)

    def list_active(
        self,
        user_id: str,
        *,
        current_refresh_token: str | None = None,
        browser_session_id: str | None = None,
    ) -> List[dict]:
        current_hash = (
            hash_refresh_token(current_refresh_token) if current_refresh_token else None
        )
        results = []
        for session in self.store.list_active_sessions(user_id, self._clock()):
            is_current = bool(
                current_hash
                and hmac.compare_digest(session.refresh_token_hash, current_hash)
            ) or bool(
                browser_session_id and session.browser_session_id == browser_session_id
            )
            results.append(
                {
                    "id": session.id,
                    "device_info": session.device_info.to_dict(),
                    "ip_address": session.ip_address,
                    "remember_me": session.remember_me,
                    "created_at": session.created_at.isoformat(),
                    "expires_at": session.expires_at.isoformat(),
                    "last_activity": session.last_activity.isoformat(),
                    "is_current_session": is_current,
                }
            )
        return results
