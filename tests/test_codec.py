"""Unit tests for the credential codec (signed access/refresh/challenge tokens)."""

import base64
import json

import pytest

from shopgate.config import Settings
from shopgate.service.codec import ACCESS, CHALLENGE, REFRESH, CredentialCodec, Identity
from shopgate.service.errors import TokenExpiredError, TokenInvalidError

SECRET = "Codec-Test-Secret-Key_for-Automation-Only-123456!"


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def settings(tmp_path):
    return Settings(jwt_secret=SECRET, shared_fs_root=str(tmp_path))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def codec(settings, clock):
    return CredentialCodec(settings, clock=clock)


def _identity(session_id=None):
    return Identity(
        user_id="user-1",
        email="shopper@example.com",
        username="shopper",
        role="customer",
        session_id=session_id,
    )


def _tamper_payload(token: str, **changes) -> str:
    header, payload, sig = token.split(".")
    padded = payload + "=" * (-len(payload) % 4)
    claims = json.loads(base64.urlsafe_b64decode(padded))
    claims.update(changes)
    forged = base64.urlsafe_b64encode(json.dumps(claims).encode()).decode().rstrip("=")
    return f"{header}.{forged}.{sig}"


class TestIssueAndVerify:
    def test_access_token_carries_identity_claims(self, codec):
        claims = codec.verify(codec.issue_access(_identity()), ACCESS)

        assert claims["sub"] == "user-1"
        assert claims["email"] == "shopper@example.com"
        assert claims["role"] == "customer"
        assert claims["typ"] == ACCESS
        assert "sid" not in claims

    def test_access_token_carries_session_id_when_bound(self, codec):
        claims = codec.verify(codec.issue_access(_identity("sess-9")), ACCESS)
        assert claims["sid"] == "sess-9"

    def test_each_token_has_unique_jti(self, codec):
        first = codec.verify(codec.issue_access(_identity()))
        second = codec.verify(codec.issue_access(_identity()))
        assert first["jti"] != second["jti"]

    def test_refresh_lifetime_follows_settings(self, codec, settings, clock):
        claims = codec.verify(codec.issue_refresh("user-1"), REFRESH)
        assert claims["exp"] - clock.now == settings.refresh_token_ttl_days * 86400

    def test_challenge_lifetime_follows_two_factor_ttl(self, codec, settings, clock):
        claims = codec.verify(codec.issue_challenge("user-1"), CHALLENGE)
        assert claims["exp"] - clock.now == settings.two_factor_otp_ttl_seconds


class TestRejections:
    def test_expired_token_raises_expired(self, codec, clock):
        token = codec.issue_access(_identity())
        clock.now += codec.access_ttl_seconds + 1

        with pytest.raises(TokenExpiredError):
            codec.verify(token, ACCESS)

    def test_wrong_type_is_invalid(self, codec):
        refresh = codec.issue_refresh("user-1")
        with pytest.raises(TokenInvalidError):
            codec.verify(refresh, ACCESS)

    def test_challenge_is_not_an_access_credential(self, codec):
        with pytest.raises(TokenInvalidError):
            codec.verify(codec.issue_challenge("user-1"), ACCESS)

    def test_tampered_payload_fails_signature(self, codec):
        token = codec.issue_access(_identity())
        forged = _tamper_payload(token, role="admin")

        with pytest.raises(TokenInvalidError):
            codec.verify(forged, ACCESS)

    @pytest.mark.parametrize("garbage", ["", "abc", "a.b", "a.b.c.d", "not.a.token"])
    def test_malformed_tokens_are_invalid(self, codec, garbage):
        with pytest.raises(TokenInvalidError):
            codec.verify(garbage)

    def test_other_secret_is_rejected(self, codec, tmp_path):
        other = CredentialCodec(
            Settings(
                jwt_secret="Another-Secret-Key_for-Automation-Only-654321!",
                shared_fs_root=str(tmp_path),
            )
        )
        with pytest.raises(TokenInvalidError):
            codec.verify(other.issue_access(_identity()))


class TestKeyRotation:
    def test_retired_key_still_verifies(self, tmp_path):
        old = CredentialCodec(
            Settings(jwt_secret=SECRET, jwt_key_id="k1", shared_fs_root=str(tmp_path))
        )
        token = old.issue_access(_identity())

        rotated = CredentialCodec(
            Settings(
                jwt_secret="Rotated-Secret-Key_for-Automation-Only-000000!",
                jwt_key_id="k2",
                jwt_retired_keys=[f"k1:{SECRET}"],
                shared_fs_root=str(tmp_path),
            )
        )
        assert rotated.verify(token, ACCESS)["sub"] == "user-1"

    def test_unknown_key_id_is_rejected(self, tmp_path):
        old = CredentialCodec(
            Settings(jwt_secret=SECRET, jwt_key_id="k1", shared_fs_root=str(tmp_path))
        )
        token = old.issue_access(_identity())
        fresh = CredentialCodec(
            Settings(jwt_secret=SECRET, jwt_key_id="k2", shared_fs_root=str(tmp_path))
        )

        with pytest.raises(TokenInvalidError):
            fresh.verify(token)


def test_seconds_until_expiry_never_negative(codec, clock):
    claims = codec.verify(codec.issue_access(_identity()))
    assert codec.seconds_until_expiry(claims) == codec.access_ttl_seconds
    clock.now += codec.access_ttl_seconds * 2
    assert codec.seconds_until_expiry(claims) == 0
