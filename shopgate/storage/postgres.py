from __future__ import annotations

import contextlib
import json
import secrets
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout
from cryptography.fernet import InvalidToken

from shopgate.logging import get_logger
from shopgate.storage.common import build_mfa_cipher
from shopgate.storage.errors import ConstraintViolation, StoreUnavailable
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


class PostgresStore:
    """Postgres-backed store for users, sessions, codes and audit history."""

    def __init__(
        self, dsn: str, fs_root: str, *, mfa_encryption_key: str | None = None
    ) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._mfa_cipher = build_mfa_cipher(mfa_encryption_key, self.fs_root)
        self._verify_required_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (psycopg.OperationalError, PoolTimeout) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailable("database unavailable") from exc

    def _verify_required_schema(self) -> None:
        """Ensure the auth tables exist before serving requests."""

        required_tables = [
            "app_user",
            "user_auth_credential",
            "user_session",
            "session_activity",
            "csrf_token",
            "one_time_code",
            "audit_log",
            "notification",
        ]

        with self._connect() as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

            if missing_tables:
                raise RuntimeError(
                    "Missing required Postgres tables: {}. Apply shopgate/storage/schema.sql first.".format(
                        ", ".join(sorted(missing_tables))
                    )
                )

            citext_ext = conn.execute(
                "SELECT extname FROM pg_extension WHERE extname = 'citext'"
            ).fetchone()
            if not citext_ext:
                raise RuntimeError(
                    "citext extension is missing; case-insensitive email lookup depends on it."
                )

    def ping(self) -> bool:
        with self._connect() as conn:
            row = conn.execute("SELECT 1 AS ok").fetchone()
        return bool(row and row.get("ok") == 1)

    def close(self) -> None:
        self.pool.close()

    # -- row mapping ------------------------------------------------------

    @staticmethod
    def _user_from_row(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            username=row["username"],
            role=Role(row.get("role", Role.CUSTOMER.value)),
            email_verified=row.get("email_verified", False),
            two_factor_enabled=row.get("two_factor_enabled", False),
            two_factor_method=TwoFactorMethod(
                row.get("two_factor_method", TwoFactorMethod.NONE.value)
            ),
            login_attempts=row.get("login_attempts", 0),
            last_login_attempt=row.get("last_login_attempt"),
            account_status=AccountStatus(
                row.get("account_status", AccountStatus.ACTIVE.value)
            ),
            status_reason=row.get("status_reason"),
            status_expires_at=row.get("status_expires_at"),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _session_from_row(row: dict) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            refresh_token_hash=row["refresh_token_hash"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            last_activity=row.get("last_activity") or row["created_at"],
            device_info=DeviceInfo.from_dict(row.get("device_info")),
            ip_address=row.get("ip_address"),
            browser_session_id=row.get("browser_session_id"),
            remember_me=row.get("remember_me", False),
            is_active=row.get("is_active", True),
        )

    @staticmethod
    def _otp_from_row(row: dict) -> OneTimeCode:
        return OneTimeCode(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            email=row["email"],
            code=row["code"],
            purpose=OtpPurpose(row["purpose"]),
            expires_at=row["expires_at"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _audit_from_row(row: dict) -> AuditEvent:
        return AuditEvent(
            id=str(row["id"]),
            event_type=AuditEventType(row["event_type"]),
            user_id=str(row["user_id"]) if row.get("user_id") else None,
            description=row.get("description"),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            created_at=row["created_at"],
        )

    @staticmethod
    def _notification_from_row(row: dict) -> Notification:
        return Notification(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            type=row["type"],
            title=row["title"],
            message=row["message"],
            icon_class=row["icon_class"],
            icon_background=row["icon_background"],
            viewed=row.get("viewed", False),
            created_at=row["created_at"],
        )

    # -- users ------------------------------------------------------------

    def create_user(
        self,
        email: str,
        username: str,
        *,
        role: Role = Role.CUSTOMER,
        email_verified: bool = False,
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, username, role, email_verified)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, email, username, role.value, email_verified),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def list_user_ids(self) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute("SELECT id FROM app_user").fetchall()
        return [str(row["id"]) for row in rows]

    def _update_user(self, user_id: str, assignments: str, params: tuple) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE app_user SET {assignments} WHERE id = %s RETURNING *",
                (*params, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_user_role(self, user_id: str, role: Role) -> Optional[User]:
        return self._update_user(user_id, "role = %s", (role.value,))

    def update_username(self, user_id: str, username: str) -> Optional[User]:
        return self._update_user(user_id, "username = %s", (username,))

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        return self._update_user(user_id, "email_verified = TRUE", ())

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            )

    def get_password_record(self, user_id: str) -> Optional[PasswordRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return PasswordRecord(
            user_id=user_id,
            password_hash=row["password_hash"],
            password_algo=row["password_algo"],
        )

    # -- lockout and account status ---------------------------------------

    def register_failed_login(
        self, user_id: str, at: datetime, *, window_start: datetime
    ) -> Optional[User]:
        return self._update_user(
            user_id,
            """
            login_attempts = CASE
                WHEN last_login_attempt IS NULL OR last_login_attempt < %s THEN 1
                ELSE login_attempts + 1
            END,
            last_login_attempt = %s
            """,
            (window_start, at),
        )

    def reset_login_attempts(self, user_id: str) -> Optional[User]:
        return self._update_user(
            user_id, "login_attempts = 0, last_login_attempt = NULL", ()
        )

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
            "account_status = %s, status_reason = %s, status_expires_at = %s",
            (status.value, reason, expires_at),
        )

    def reactivate_if_lapsed(self, user_id: str, now: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET account_status = 'active', status_reason = NULL, status_expires_at = NULL,
                    login_attempts = 0, last_login_attempt = NULL
                WHERE id = %s
                  AND account_status <> 'active'
                  AND status_expires_at IS NOT NULL
                  AND status_expires_at <= %s
                RETURNING id
                """,
                (user_id, now),
            ).fetchone()
        return row is not None

    # -- two-factor -------------------------------------------------------

    def set_totp_secret(self, user_id: str, secret: str | None) -> None:
        encrypted = self._mfa_cipher.encrypt(secret.encode()).decode() if secret else None
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET two_factor_secret = %s WHERE id = %s",
                (encrypted, user_id),
            )

    def get_totp_secret(self, user_id: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT two_factor_secret FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        if not row or not row.get("two_factor_secret"):
            return None
        try:
            return self._mfa_cipher.decrypt(row["two_factor_secret"].encode()).decode()
        except InvalidToken:
            self.logger.warning("mfa_secret_decrypt_failed", user_id=user_id)
            return None

    def set_two_factor(
        self, user_id: str, *, enabled: bool, method: TwoFactorMethod
    ) -> Optional[User]:
        return self._update_user(
            user_id,
            "two_factor_enabled = %s, two_factor_method = %s",
            (enabled, method.value),
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
        sess = Session.new(
            user_id=user_id,
            refresh_token_hash=refresh_token_hash,
            ttl=ttl,
            device_info=device_info,
            ip_address=ip_address,
            browser_session_id=browser_session_id,
            remember_me=remember_me,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_session (id, user_id, refresh_token_hash, device_info, ip_address,
                        browser_session_id, remember_me, is_active, created_at, expires_at, last_activity)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, TRUE, %s, %s, %s)
                    """,
                    (
                        sess.id,
                        sess.user_id,
                        sess.refresh_token_hash,
                        json.dumps(sess.device_info.to_dict()),
                        sess.ip_address,
                        sess.browser_session_id,
                        sess.remember_me,
                        sess.created_at,
                        sess.expires_at,
                        sess.last_activity,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "refresh token already bound", {"field": "refresh_token"}
            )
        return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def get_session_by_refresh_hash(self, refresh_token_hash: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_session WHERE refresh_token_hash = %s",
                (refresh_token_hash,),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def list_active_sessions(self, user_id: str, now: datetime) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM user_session
                WHERE user_id = %s AND is_active AND expires_at > %s
                ORDER BY last_activity DESC
                """,
                (user_id, now),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def deactivate_session(self, session_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE user_session SET is_active = FALSE WHERE id = %s AND is_active RETURNING id",
                (session_id,),
            ).fetchone()
        return row is not None

    def deactivate_user_sessions(
        self, user_id: str, *, keep_session_id: str | None = None
    ) -> List[str]:
        with self._connect() as conn:
            if keep_session_id:
                rows = conn.execute(
                    """
                    UPDATE user_session SET is_active = FALSE
                    WHERE user_id = %s AND is_active AND id <> %s
                    RETURNING id
                    """,
                    (user_id, keep_session_id),
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    UPDATE user_session SET is_active = FALSE
                    WHERE user_id = %s AND is_active
                    RETURNING id
                    """,
                    (user_id,),
                ).fetchall()
        return [str(row["id"]) for row in rows]

    def record_session_activity(
        self,
        session_id: str,
        activity_type: ActivityType,
        ip_address: str | None = None,
        at: datetime | None = None,
    ) -> None:
        stamp = at or utcnow()
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO session_activity (session_id, activity_type, ip_address, created_at)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (session_id, activity_type.value, ip_address, stamp),
                )
                conn.execute(
                    "UPDATE user_session SET last_activity = %s WHERE id = %s",
                    (stamp, session_id),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session missing", {"session_id": session_id})

    def list_session_activity(self, session_id: str) -> List[SessionActivity]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM session_activity WHERE session_id = %s ORDER BY id",
                (session_id,),
            ).fetchall()
        return [
            SessionActivity(
                session_id=str(row["session_id"]),
                activity_type=ActivityType(row["activity_type"]),
                ip_address=row.get("ip_address"),
                created_at=row["created_at"],
            )
            for row in rows
        ]

    # -- csrf -------------------------------------------------------------

    def replace_csrf_token(self, token: CsrfToken) -> CsrfToken:
        with self._connect() as conn:
            if token.user_id is not None:
                conn.execute(
                    "DELETE FROM csrf_token WHERE user_id = %s OR browser_session_id = %s",
                    (token.user_id, token.browser_session_id),
                )
            else:
                conn.execute(
                    "DELETE FROM csrf_token WHERE user_id IS NULL AND browser_session_id = %s",
                    (token.browser_session_id,),
                )
            conn.execute(
                """
                INSERT INTO csrf_token (token, user_id, browser_session_id, created_at, expires_at)
                VALUES (%s, %s, %s, %s, %s)
                """,
                (
                    token.token,
                    token.user_id,
                    token.browser_session_id,
                    token.created_at,
                    token.expires_at,
                ),
            )
        return token

    def get_csrf_token(self, token: str) -> Optional[CsrfToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM csrf_token WHERE token = %s", (token,)
            ).fetchone()
        if not row:
            return None
        return CsrfToken(
            token=row["token"],
            user_id=str(row["user_id"]) if row.get("user_id") else None,
            browser_session_id=row.get("browser_session_id"),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
        )

    def delete_csrf_tokens(self, *, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM csrf_token WHERE user_id = %s", (user_id,))
            return cur.rowcount

    # -- one-time codes ---------------------------------------------------

    def create_otp(
        self,
        user_id: str,
        email: str,
        code: str,
        purpose: OtpPurpose,
        expires_at: datetime,
    ) -> OneTimeCode:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO one_time_code (id, user_id, email, code, purpose, expires_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), user_id, email, code, purpose.value, expires_at),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("otp user missing", {"user_id": user_id})
        return self._otp_from_row(row)

    def find_otp(
        self, user_id: str, code: str, purpose: OtpPurpose
    ) -> Optional[OneTimeCode]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM one_time_code
                WHERE user_id = %s AND purpose = %s
                ORDER BY created_at DESC
                """,
                (user_id, purpose.value),
            ).fetchall()
        for row in rows:
            if secrets.compare_digest(row["code"], code):
                return self._otp_from_row(row)
        return None

    def delete_otps(self, user_id: str, purpose: OtpPurpose) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM one_time_code WHERE user_id = %s AND purpose = %s",
                (user_id, purpose.value),
            )
            return cur.rowcount

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
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO audit_log (id, user_id, event_type, description, ip_address, user_agent)
                VALUES (%s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    str(uuid.uuid4()),
                    user_id,
                    event_type.value,
                    description,
                    ip_address,
                    user_agent,
                ),
            ).fetchone()
        return self._audit_from_row(row)

    def list_audit_events(
        self,
        *,
        user_id: str | None = None,
        event_type: AuditEventType | None = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        clauses: list[str] = []
        params: list[Any] = []
        if user_id is not None:
            clauses.append("user_id = %s")
            params.append(user_id)
        if event_type is not None:
            clauses.append("event_type = %s")
            params.append(event_type.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM audit_log {where} ORDER BY created_at DESC LIMIT %s",
                (*params, limit),
            ).fetchall()
        return [self._audit_from_row(row) for row in rows]

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
        created: List[Notification] = []
        with self._connect() as conn:
            for user_id in user_ids:
                row = conn.execute(
                    """
                    INSERT INTO notification (id, user_id, type, title, message, icon_class, icon_background)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        str(uuid.uuid4()),
                        user_id,
                        type,
                        title,
                        message,
                        icon_class,
                        icon_background,
                    ),
                ).fetchone()
                created.append(self._notification_from_row(row))
        return created

    def list_notifications(self, user_id: str, limit: int = 50) -> List[Notification]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM notification WHERE user_id = %s
                ORDER BY created_at DESC LIMIT %s
                """,
                (user_id, limit),
            ).fetchall()
        return [self._notification_from_row(row) for row in rows]

    def mark_notifications_viewed(self, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE notification SET viewed = TRUE WHERE user_id = %s AND NOT viewed",
                (user_id,),
            )
            return cur.rowcount

    def delete_notifications_before(self, cutoff: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM notification WHERE created_at < %s", (cutoff,)
            )
            return cur.rowcount
