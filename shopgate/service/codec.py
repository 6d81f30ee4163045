from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Optional

from shopgate.config import MIN_JWT_SECRET_LENGTH, Settings
from shopgate.logging import get_logger
from shopgate.service.errors import TokenExpiredError, TokenInvalidError
from shopgate.storage.models import User

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"
CHALLENGE = "2fa_challenge"


@dataclass
class Identity:
    """Claims baked into an access credential."""

    user_id: str
    email: str
    username: str
    role: str
    session_id: Optional[str] = None


def identity_for(user: User, session_id: str | None = None) -> Identity:
    return Identity(
        user_id=user.id,
        email=user.email,
        username=user.username,
        role=user.role.value,
        session_id=session_id,
    )


class CredentialCodec:
    """Mint and verify HS256 access/refresh tokens.

    The active key (``jwt_key_id``/``jwt_secret``) signs; retired keys listed in
    ``JWT_RETIRED_KEYS`` still verify so a rotation does not log everyone out.
    No I/O happens here.
    """

    ALGORITHM = "HS256"

    def __init__(
        self, settings: Settings, *, clock: Callable[[], float] = time.time
    ) -> None:
        secret = settings.jwt_secret
        if not secret or (
            len(secret) < MIN_JWT_SECRET_LENGTH and not settings.test_mode
        ):
            raise RuntimeError("JWT signing key missing or too short")
        self.settings = settings
        self._clock = clock
        self._active_kid = settings.jwt_key_id
        self._keys: dict[str, bytes] = {
            kid: value.encode()
            for kid, value in settings.retired_signing_keys().items()
        }
        self._keys[self._active_kid] = secret.encode()
        self.access_ttl_seconds = settings.access_token_ttl_minutes * 60
        self.refresh_ttl_seconds = settings.refresh_token_ttl_days * 24 * 60 * 60

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, key: bytes, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(key, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": self.ALGORITHM, "typ": "JWT", "kid": self._active_kid}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        signature = self._sign(self._keys[self._active_kid], signing_input)
        return f"{signing_input}.{signature}"

    def _base_claims(self, subject: str, token_type: str, ttl_seconds: int) -> dict:
        now = int(self._clock())
        return {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": subject,
            "typ": token_type,
            "iat": now,
            "exp": now + ttl_seconds,
            "jti": str(uuid.uuid4()),
        }

    def issue_access(self, identity: Identity) -> str:
        claims = self._base_claims(identity.user_id, ACCESS, self.access_ttl_seconds)
        claims.update(
            {
                "email": identity.email,
                "username": identity.username,
                "role": identity.role,
            }
        )
        if identity.session_id:
            claims["sid"] = identity.session_id
        return self._encode(claims)

    def issue_refresh(self, user_id: str) -> str:
        return self._encode(
            self._base_claims(user_id, REFRESH, self.refresh_ttl_seconds)
        )

    def issue_challenge(self, user_id: str) -> str:
        """Short-lived proof that the password step succeeded for ``user_id``."""
        return self._encode(
            self._base_claims(
                user_id, CHALLENGE, self.settings.two_factor_otp_ttl_seconds
            )
        )

    def verify(self, token: str, expected_type: str | None = None) -> dict[str, Any]:
        """Return the claims of ``token`` or raise.

        Raises:
            TokenExpiredError: signature is good but ``exp`` has passed.
            TokenInvalidError: anything else is wrong with the token.
        """
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            raise TokenInvalidError("malformed token")

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (binascii.Error, ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            raise TokenInvalidError("malformed token header")
        if not isinstance(header, dict) or header.get("alg") != self.ALGORITHM:
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise TokenInvalidError("unsupported token algorithm")

        kid = header.get("kid", self._active_kid)
        key = self._keys.get(kid)
        if key is None:
            logger.warning("jwt_unknown_kid", kid=kid)
            raise TokenInvalidError("unknown signing key")

        expected_sig = self._sign(key, f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise TokenInvalidError("bad token signature")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (binascii.Error, ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenInvalidError("malformed token payload")
        if not isinstance(payload, dict):
            raise TokenInvalidError("malformed token payload")

        if payload.get("iss") != self.settings.jwt_issuer:
            raise TokenInvalidError("unexpected token issuer")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise TokenInvalidError("unexpected token audience")
        if expected_type and payload.get("typ") != expected_type:
            raise TokenInvalidError("unexpected token type")
        if not payload.get("sub"):
            raise TokenInvalidError("token subject missing")

        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            raise TokenInvalidError("token expiry missing")
        if exp_ts <= self._clock():
            raise TokenExpiredError("token expired")
        return payload

    def seconds_until_expiry(self, claims: dict[str, Any]) -> int:
        return max(0, int(float(claims.get("exp", 0)) - self._clock()))
