from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from shopgate.config import Settings
from shopgate.logging import get_logger
from shopgate.storage.common import AuthStore
from shopgate.storage.models import CsrfToken

logger = get_logger(__name__)

CSRF_HEADER = "X-CSRF-Token"
SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})

CSRF_MISSING = "CSRF_MISSING"
CSRF_INVALID = "CSRF_INVALID"


@dataclass
class CsrfCheck:
    ok: bool
    error_code: Optional[str] = None
    message: Optional[str] = None


def parse_csrf_header(header_value: str | None) -> Optional[str]:
    """Extract the raw token from ``bearer <token>`` or a bare ``<token>``."""
    if not header_value:
        return None
    value = header_value.strip()
    scheme, _, rest = value.partition(" ")
    if rest and scheme.lower() == "bearer":
        value = rest.strip()
    return value or None


class CsrfGuard:
    """Database-backed write-intent tokens.

    Tokens are bound either to a user (authenticated callers) or to a browser
    session id with no user (anonymous callers). Issuing a token supersedes
    every earlier token of the same binding, so each user holds exactly one
    live token; a user token also replaces whatever the browser session held.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.ttl = timedelta(hours=settings.csrf_token_ttl_hours)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def issue(
        self, *, user_id: str | None = None, browser_session_id: str | None = None
    ) -> str:
        if user_id is None and not browser_session_id:
            raise ValueError("a csrf token needs a user or browser-session binding")
        now = self._clock()
        token = CsrfToken(
            token=secrets.token_hex(32),
            user_id=user_id,
            browser_session_id=browser_session_id,
            created_at=now,
            expires_at=now + self.ttl,
        )
        self.store.replace_csrf_token(token)
        logger.info(
            "csrf_token_issued",
            user_id=user_id,
            bound_to="user" if user_id else "browser_session",
        )
        return token.token

    def verify(
        self,
        header_value: str | None,
        *,
        user_id: str | None = None,
        browser_session_id: str | None = None,
    ) -> CsrfCheck:
        raw = parse_csrf_header(header_value)
        if not raw:
            return CsrfCheck(False, CSRF_MISSING, "CSRF token missing")
        record = self.store.get_csrf_token(raw)
        if record is None:
            return CsrfCheck(False, CSRF_INVALID, "Invalid CSRF token")
        if record.expires_at <= self._clock():
            return CsrfCheck(False, CSRF_INVALID, "CSRF token expired")
        if user_id is not None:
            bound = record.user_id == user_id
        else:
            bound = (
                record.user_id is None
                and browser_session_id is not None
                and record.browser_session_id == browser_session_id
            )
        if not bound:
            logger.warning(
                "csrf_binding_mismatch",
                user_id=user_id,
                token_user_id=record.user_id,
            )
            return CsrfCheck(False, CSRF_INVALID, "Invalid CSRF token")
        return CsrfCheck(True)

    def revoke_for_user(self, user_id: str) -> int:
        return self.store.delete_csrf_tokens(user_id=user_id)
