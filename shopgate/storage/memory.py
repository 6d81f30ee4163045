from __future__ import annotations

import json
import secrets
import threading
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

from cryptography.fernet import InvalidToken

from shopgate.logging import get_logger
from shopgate.storage.common import build_mfa_cipher
from shopgate.storage.errors import ConstraintViolation
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
    utcnow,
)


class MemoryStore:
    """In-process backing store for development and tests.

    Every read and write goes through ``_data_lock``; objects handed back to
    callers are copies so mutations never leak into stored state without an
    explicit store call.
    """

    def __init__(
        self, fs_root: str = "/tmp/shopgate", *, mfa_encryption_key: str | None = None
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, PasswordRecord] = {}
        self.totp_secrets: Dict[str, str] = {}
        self.sessions: Dict[str, Session] = {}
        self.session_activity: List[SessionActivity] = []
        self.csrf_tokens: Dict[str, CsrfToken] = {}
        self.otps: Dict[str, OneTimeCode] = {}
        self.audit_events: List[AuditEvent] = []
        self.notifications: Dict[str, Notification] = {}
        # RLock so helpers can nest acquisitions within the same thread
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._mfa_cipher = build_mfa_cipher(mfa_encryption_key, self.fs_root)
        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def ping(self) -> bool:
        return True

    # -- users -----------------------------------------------------------

    def create_user(
        self,
        email: str,
        username: str,
        *,
        role: Role = Role.CUSTOMER,
        email_verified: bool = False,
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                username=username,
                role=role,
                email_verified=email_verified,
            )
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user) if user else None

    def list_user_ids(self) -> List[str]:
        with self._data_lock:
            return list(self.users.keys())

    def update_user_role(self, user_id: str, role: Role) -> Optional[User]:
        return self._update_user(user_id, role=role)

    def update_username(self, user_id: str, username: str) -> Optional[User]:
        return self._update_user(user_id, username=username)

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        return self._update_user(user_id, email_verified=True)

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = PasswordRecord(
                user_id=user_id, password_hash=password_hash, password_algo=password_algo
            )
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[PasswordRecord]:
        with self._data_lock:
            record = self.credentials.get(user_id)
            return replace(record) if record else None

    def _update_user(self, user_id: str, **changes: Any) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            for key, value in changes.items():
                setattr(user, key, value)
            self._persist_state()
            return replace(user)

    # -- lockout and account status ---------------------------------------

    def register_failed_login(
        self, user_id: str, at: datetime, *, window_start: datetime
    ) -> Optional[User]:
        """Bump the failure counter; failures older than ``window_start`` restart it."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if user.last_login_attempt is None or user.last_login_attempt < window_start:
                user.login_attempts = 1
            else:
                user.login_attempts += 1
            user.last_login_attempt = at
            self._persist_state()
            return replace(user)

    def reset_login_attempts(self, user_id: str) -> Optional[User]:
        return self._update_user(user_id, login_attempts=0, last_login_attempt=None)

    def set_account_status(
        self,
        user_id: str,
        status: AccountStatus,
        *,
        reason: str | None = None,
        expires_at: datetime | None = None,
    ) -> Optional[User]:
        return self._update_user(
            user_id,
            account_status=status,
            status_reason=reason,
            status_expires_at=expires_at,
        )

    def reactivate_if_lapsed(self, user_id: str, now: datetime) -> bool:
        """Conditionally lift an expired restriction; True only for the caller that did it."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or not user.restriction_lapsed(now):
                return False
            user.account_status = AccountStatus.ACTIVE
            user.status_reason = None
            user.status_expires_at = None
            user.login_attempts = 0
            user.last_login_attempt = None
            self._persist_state()
            return True

    # -- two-factor -------------------------------------------------------

    def _encrypt_mfa_secret(self, secret: str) -> str:
        return self._mfa_cipher.encrypt(secret.encode()).decode()

    def _decrypt_mfa_secret(self, secret: str) -> Optional[str]:
        try:
            return self._mfa_cipher.decrypt(secret.encode()).decode()
        except InvalidToken:
            self.logger.warning("mfa_secret_decrypt_failed")
            return None

    def set_totp_secret(self, user_id: str, secret: str | None) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found for mfa", {"user_id": user_id})
            if secret is None:
                self.totp_secrets.pop(user_id, None)
            else:
                self.totp_secrets[user_id] = self._encrypt_mfa_secret(secret)
            self._persist_state()

    def get_totp_secret(self, user_id: str) -> Optional[str]:
        with self._data_lock:
            encrypted = self.totp_secrets.get(user_id)
            if not encrypted:
                return None
            return self._decrypt_mfa_secret(encrypted)

    def set_two_factor(
        self, user_id: str, *, enabled: bool, method: TwoFactorMethod
    ) -> Optional[User]:
        return self._update_user(
            user_id, two_factor_enabled=enabled, two_factor_method=method
        )

    # -- sessions ---------------------------------------------------------

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
    ) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            if any(
                s.refresh_token_hash == refresh_token_hash for s in self.sessions.values()
            ):
                raise ConstraintViolation(
                    "refresh token already bound", {"field": "refresh_token"}
                )
            sess = Session.new(
                user_id=user_id,
                refresh_token_hash=refresh_token_hash,
                ttl=ttl,
                device_info=device_info,
                ip_address=ip_address,
                browser_session_id=browser_session_id,
                remember_me=remember_me,
            )
            self.sessions[sess.id] = sess
            self._persist_state()
            return replace(sess)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def get_session_by_refresh_hash(self, refresh_token_hash: str) -> Optional[Session]:
        with self._data_lock:
            sess = next(
                (
                    s
                    for s in self.sessions.values()
                    if s.refresh_token_hash == refresh_token_hash
                ),
                None,
            )
            return replace(sess) if sess else None

    def list_active_sessions(self, user_id: str, now: datetime) -> List[Session]:
        with self._data_lock:
            active = [
                replace(s)
                for s in self.sessions.values()
                if s.user_id == user_id and s.usable(now)
            ]
        return sorted(active, key=lambda s: s.last_activity, reverse=True)

    def deactivate_session(self, session_id: str) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.is_active:
                return False
            sess.is_active = False
            self._persist_state()
            return True

    def deactivate_user_sessions(
        self, user_id: str, *, keep_session_id: str | None = None
    ) -> List[str]:
        with self._data_lock:
            revoked = []
            for sess in self.sessions.values():
                if sess.user_id != user_id or not sess.is_active:
                    continue
                if keep_session_id and sess.id == keep_session_id:
                    continue
                sess.is_active = False
                revoked.append(sess.id)
            if revoked:
                self._persist_state()
            return revoked

    def record_session_activity(
        self,
        session_id: str,
        activity_type: ActivityType,
        ip_address: str | None = None,
        at: datetime | None = None,
    ) -> None:
        with self._data_lock:
            stamp = at or utcnow()
            self.session_activity.append(
                SessionActivity(
                    session_id=session_id,
                    activity_type=activity_type,
                    ip_address=ip_address,
                    created_at=stamp,
                )
            )
            sess = self.sessions.get(session_id)
            if sess:
                sess.last_activity = stamp
            self._persist_state()

    def list_session_activity(self, session_id: str) -> List[SessionActivity]:
        with self._data_lock:
            return [
                replace(a) for a in self.session_activity if a.session_id == session_id
            ]

    # -- csrf -------------------------------------------------------------

    def replace_csrf_token(self, token: CsrfToken) -> CsrfToken:
        """Drop every token for the same binding, then store ``token``.

        A user token replaces all of that user's tokens and anything else
        bound to the same browser session.
        """
        with self._data_lock:
            for value, existing in list(self.csrf_tokens.items()):
                if token.user_id is not None:
                    same_binding = existing.user_id == token.user_id or (
                        token.browser_session_id is not None
                        and existing.browser_session_id == token.browser_session_id
                    )
                else:
                    same_binding = (
                        existing.user_id is None
                        and existing.browser_session_id == token.browser_session_id
                    )
                if same_binding:
                    self.csrf_tokens.pop(value, None)
            self.csrf_tokens[token.token] = token
            self._persist_state()
            return replace(token)

    def get_csrf_token(self, token: str) -> Optional[CsrfToken]:
        with self._data_lock:
            record = self.csrf_tokens.get(token)
            return replace(record) if record else None

    def delete_csrf_tokens(self, *, user_id: str) -> int:
        with self._data_lock:
            stale = [v for v, t in self.csrf_tokens.items() if t.user_id == user_id]
            for value in stale:
                self.csrf_tokens.pop(value, None)
            if stale:
                self._persist_state()
            return len(stale)

    # -- one-time codes ---------------------------------------------------

    def create_otp(
        self,
        user_id: str,
        email: str,
        code: str,
        purpose: OtpPurpose,
        expires_at: datetime,
    ) -> OneTimeCode:
        with self._data_lock:
            otp = OneTimeCode(
                id=str(uuid.uuid4()),
                user_id=user_id,
                email=email,
                code=code,
                purpose=purpose,
                expires_at=expires_at,
            )
            self.otps[otp.id] = otp
            self._persist_state()
            return replace(otp)

    def find_otp(
        self, user_id: str, code: str, purpose: OtpPurpose
    ) -> Optional[OneTimeCode]:
        with self._data_lock:
            matches = [
                o
                for o in self.otps.values()
                if o.user_id == user_id
                and o.purpose == purpose
                and secrets.compare_digest(o.code, code)
            ]
            if not matches:
                return None
            latest = max(matches, key=lambda o: o.created_at)
            return replace(latest)

    def delete_otps(self, user_id: str, purpose: OtpPurpose) -> int:
        with self._data_lock:
            stale = [
                oid
                for oid, o in self.otps.items()
                if o.user_id == user_id and o.purpose == purpose
            ]
            for oid in stale:
                self.otps.pop(oid, None)
            if stale:
                self._persist_state()
            return len(stale)

    # -- audit ------------------------------------------------------------

    def append_audit_event(
        self,
        event_type: AuditEventType,
        *,
        user_id: str | None = None,
        description: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AuditEvent:
        with self._data_lock:
            event = AuditEvent(
                id=str(uuid.uuid4()),
                event_type=event_type,
                user_id=user_id,
                description=description,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            self.audit_events.append(event)
            self._persist_state()
            return replace(event)

    def list_audit_events(
        self,
        *,
        user_id: str | None = None,
        event_type: AuditEventType | None = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        with self._data_lock:
            results = [
                replace(e)
                for e in reversed(self.audit_events)
                if (user_id is None or e.user_id == user_id)
                and (event_type is None or e.event_type == event_type)
            ]
        results.sort(key=lambda e: e.created_at, reverse=True)
        return results[:limit]

    # -- notifications ----------------------------------------------------

    def create_notifications(
        self,
        user_ids: List[str],
        *,
        type: str,
        title: str,
        message: str,
        icon_class: str,
        icon_background: str,
    ) -> List[Notification]:
        with self._data_lock:
            created = []
            for user_id in user_ids:
                note = Notification(
                    id=str(uuid.uuid4()),
                    user_id=user_id,
                    type=type,
                    title=title,
                    message=message,
                    icon_class=icon_class,
                    icon_background=icon_background,
                )
                self.notifications[note.id] = note
                created.append(replace(note))
            if created:
                self._persist_state()
            return created

    def list_notifications(self, user_id: str, limit: int = 50) -> List[Notification]:
        with self._data_lock:
            results = [
                replace(n) for n in self.notifications.values() if n.user_id == user_id
            ]
        results.sort(key=lambda n: n.created_at, reverse=True)
        return results[:limit]

    def mark_notifications_viewed(self, user_id: str) -> int:
        with self._data_lock:
            count = 0
            for note in self.notifications.values():
                if note.user_id == user_id and not note.viewed:
                    note.viewed = True
                    count += 1
            if count:
                self._persist_state()
            return count

    def delete_notifications_before(self, cutoff: datetime) -> int:
        with self._data_lock:
            stale = [nid for nid, n in self.notifications.items() if n.created_at < cutoff]
            for nid in stale:
                self.notifications.pop(nid, None)
            if stale:
                self._persist_state()
            return len(stale)

    def close(self) -> None:
        return None

    # -- persistence ------------------------------------------------------

    @staticmethod
    def _dt(value: datetime | None) -> str | None:
        return value.isoformat() if value else None

    @staticmethod
    def _parse_dt(raw: str | None) -> datetime | None:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "username": user.username,
            "role": user.role.value,
            "email_verified": user.email_verified,
            "two_factor_enabled": user.two_factor_enabled,
            "two_factor_method": user.two_factor_method.value,
            "login_attempts": user.login_attempts,
            "last_login_attempt": self._dt(user.last_login_attempt),
            "account_status": user.account_status.value,
            "status_reason": user.status_reason,
            "status_expires_at": self._dt(user.status_expires_at),
            "created_at": self._dt(user.created_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=data["id"],
            email=data["email"],
            username=data["username"],
            role=Role(data.get("role", Role.CUSTOMER.value)),
            email_verified=data.get("email_verified", False),
            two_factor_enabled=data.get("two_factor_enabled", False),
            two_factor_method=TwoFactorMethod(
                data.get("two_factor_method", TwoFactorMethod.NONE.value)
            ),
            login_attempts=data.get("login_attempts", 0),
            last_login_attempt=self._parse_dt(data.get("last_login_attempt")),
            account_status=AccountStatus(
                data.get("account_status", AccountStatus.ACTIVE.value)
            ),
            status_reason=data.get("status_reason"),
            status_expires_at=self._parse_dt(data.get("status_expires_at")),
            created_at=self._parse_dt(data.get("created_at")) or utcnow(),
        )

    def _serialize_session(self, sess: Session) -> dict:
        return {
            "id": sess.id,
            "user_id": sess.user_id,
            "refresh_token_hash": sess.refresh_token_hash,
            "created_at": self._dt(sess.created_at),
            "expires_at": self._dt(sess.expires_at),
            "last_activity": self._dt(sess.last_activity),
            "device_info": sess.device_info.to_dict(),
            "ip_address": sess.ip_address,
            "browser_session_id": sess.browser_session_id,
            "remember_me": sess.remember_me,
            "is_active": sess.is_active,
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            refresh_token_hash=data["refresh_token_hash"],
            created_at=self._parse_dt(data["created_at"]),
            expires_at=self._parse_dt(data["expires_at"]),
            last_activity=self._parse_dt(data.get("last_activity"))
            or self._parse_dt(data["created_at"]),
            device_info=DeviceInfo.from_dict(data.get("device_info")),
            ip_address=data.get("ip_address"),
            browser_session_id=data.get("browser_session_id"),
            remember_me=data.get("remember_me", False),
            is_active=data.get("is_active", True),
        )

    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": rec.user_id,
                    "password_hash": rec.password_hash,
                    "password_algo": rec.password_algo,
                }
                for rec in self.credentials.values()
            ],
            "totp_secrets": dict(self.totp_secrets),
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "session_activity": [
                {
                    "session_id": a.session_id,
                    "activity_type": a.activity_type.value,
                    "ip_address": a.ip_address,
                    "created_at": self._dt(a.created_at),
                }
                for a in self.session_activity
            ],
            "csrf_tokens": [
                {
                    "token": t.token,
                    "user_id": t.user_id,
                    "browser_session_id": t.browser_session_id,
                    "expires_at": self._dt(t.expires_at),
                    "created_at": self._dt(t.created_at),
                }
                for t in self.csrf_tokens.values()
            ],
            "otps": [
                {
                    "id": o.id,
                    "user_id": o.user_id,
                    "email": o.email,
                    "code": o.code,
                    "purpose": o.purpose.value,
                    "expires_at": self._dt(o.expires_at),
                    "created_at": self._dt(o.created_at),
                }
                for o in self.otps.values()
            ],
            "audit_events": [
                {
                    "id": e.id,
                    "event_type": e.event_type.value,
                    "user_id": e.user_id,
                    "description": e.description,
                    "ip_address": e.ip_address,
                    "user_agent": e.user_agent,
                    "created_at": self._dt(e.created_at),
                }
                for e in self.audit_events
            ],
            "notifications": [
                {
                    "id": n.id,
                    "user_id": n.user_id,
                    "type": n.type,
                    "title": n.title,
                    "message": n.message,
                    "icon_class": n.icon_class,
                    "icon_background": n.icon_background,
                    "viewed": n.viewed,
                    "created_at": self._dt(n.created_at),
                }
                for n in self.notifications.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        # Use try-except instead of exists() to avoid TOCTOU race condition
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: PasswordRecord(
                user_id=entry["user_id"],
                password_hash=entry["password_hash"],
                password_algo=entry.get("password_algo", "argon2id"),
            )
            for entry in data.get("credentials", [])
        }
        self.totp_secrets = dict(data.get("totp_secrets", {}))
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.session_activity = [
            SessionActivity(
                session_id=a["session_id"],
                activity_type=ActivityType(a["activity_type"]),
                ip_address=a.get("ip_address"),
                created_at=self._parse_dt(a["created_at"]),
            )
            for a in data.get("session_activity", [])
        ]
        self.csrf_tokens = {
            t["token"]: CsrfToken(
                token=t["token"],
                user_id=t.get("user_id"),
                browser_session_id=t.get("browser_session_id"),
                expires_at=self._parse_dt(t["expires_at"]),
                created_at=self._parse_dt(t["created_at"]),
            )
            for t in data.get("csrf_tokens", [])
        }
        self.otps = {
            o["id"]: OneTimeCode(
                id=o["id"],
                user_id=o["user_id"],
                email=o["email"],
                code=o["code"],
                purpose=OtpPurpose(o["purpose"]),
                expires_at=self._parse_dt(o["expires_at"]),
                created_at=self._parse_dt(o["created_at"]),
            )
            for o in data.get("otps", [])
        }
        self.audit_events = [
            AuditEvent(
                id=e["id"],
                event_type=AuditEventType(e["event_type"]),
                user_id=e.get("user_id"),
                description=e.get("description"),
                ip_address=e.get("ip_address"),
                user_agent=e.get("user_agent"),
                created_at=self._parse_dt(e["created_at"]),
            )
            for e in data.get("audit_events", [])
        ]
        self.notifications = {
            n["id"]: Notification(
                id=n["id"],
                user_id=n["user_id"],
                type=n["type"],
                title=n["title"],
                message=n["message"],
                icon_class=n["icon_class"],
                icon_background=n["icon_background"],
                viewed=n.get("viewed", False),
                created_at=self._parse_dt(n["created_at"]),
            )
            for n in data.get("notifications", [])
        }
        return True
