"""Tests for TOTP helpers and the second-factor engine."""

import time
from urllib.parse import parse_qs, urlparse

import pytest

from shopgate.service.errors import (
    TokenInvalidError,
    TwoFactorAlreadyEnabledError,
    TwoFactorInvalidCodeError,
    TwoFactorNotEnabledError,
    ValidationError,
)
from shopgate.service.runtime import get_runtime
from shopgate.service.two_factor import (
    generate_otp,
    generate_totp,
    new_totp_secret,
    parse_method,
    provisioning_uri,
    verify_totp,
)
from shopgate.storage.models import AuditEventType, OtpPurpose, TwoFactorMethod

# RFC 6238 appendix B seed "12345678901234567890"
RFC_SECRET = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"
PASSWORD = "Str0ng!Pass"


class TestTotp:
    @pytest.mark.parametrize(
        "timestamp,expected",
        [(59, "287082"), (1111111109, "081804"), (1234567890, "005924")],
    )
    def test_rfc_6238_vectors(self, timestamp, expected):
        assert generate_totp(RFC_SECRET, timestamp) == expected

    def test_adjacent_steps_are_accepted(self):
        now = 1_700_000_000
        for offset in (-30, 0, 30):
            code = generate_totp(RFC_SECRET, now + offset)
            assert verify_totp(RFC_SECRET, code, at=now)

    def test_two_steps_away_is_rejected(self):
        now = 1_700_000_000
        for offset in (-60, 60):
            code = generate_totp(RFC_SECRET, now + offset)
            if code in {generate_totp(RFC_SECRET, now + d) for d in (-30, 0, 30)}:
                continue
            assert not verify_totp(RFC_SECRET, code, at=now)

    @pytest.mark.parametrize("code", ["", "abcdef", None])
    def test_non_numeric_codes_are_rejected(self, code):
        assert not verify_totp(RFC_SECRET, code, at=59)

    def test_bad_secret_never_matches(self):
        assert generate_totp("!!!not-base32!!!", 59) == ""
        assert not verify_totp("!!!not-base32!!!", "287082", at=59)

    def test_new_secret_is_base32_without_padding(self):
        secret = new_totp_secret()
        assert len(secret) == 32
        assert "=" not in secret
        assert generate_totp(secret, time.time())

    def test_provisioning_uri(self):
        uri = provisioning_uri(RFC_SECRET, "shopper@example.com", "Shopgate")
        parsed = urlparse(uri)
        query = parse_qs(parsed.query)

        assert parsed.scheme == "otpauth"
        assert parsed.netloc == "totp"
        assert query["secret"] == [RFC_SECRET]
        assert query["issuer"] == ["Shopgate"]
        assert query["period"] == ["30"]

    def test_generate_otp_is_six_digits(self):
        codes = {generate_otp() for _ in range(20)}
        assert all(len(c) == 6 and c.isdigit() for c in codes)

    @pytest.mark.parametrize("method", ["none", "sms", ""])
    def test_parse_method_rejects_unknown(self, method):
        with pytest.raises(ValidationError):
            parse_method(method)


@pytest.fixture
def runtime():
    return get_runtime()


@pytest.fixture
def engine(runtime):
    return runtime.two_factor


@pytest.fixture
def shopper(runtime):
    return runtime.auth.register("shopper@example.com", "shopper", PASSWORD, email_verified=True)


def _otp_code(store, user_id, purpose):
    return next(
        otp.code for otp in store.otps.values() if otp.user_id == user_id and otp.purpose == purpose
    )


def _enable_app(runtime, engine, user):
    data = engine.setup(user, "app")
    code = generate_totp(data["secret"], time.time())
    return engine.verify_and_enable(user, "app", code), data["secret"]


class TestEnrollment:
    def test_app_setup_returns_secret_and_uri(self, engine, runtime, shopper):
        data = engine.setup(shopper, "app")

        assert data["method"] == "app"
        assert data["otpauth_uri"].startswith("otpauth://totp/")
        assert runtime.store.get_totp_secret(shopper.id) == data["secret"]
        assert not runtime.store.get_user(shopper.id).two_factor_enabled

    def test_app_enable_with_valid_code(self, engine, runtime, shopper):
        updated, _ = _enable_app(runtime, engine, shopper)

        assert updated.two_factor_enabled
        assert updated.two_factor_method == TwoFactorMethod.APP
        events = runtime.store.list_audit_events(
            user_id=shopper.id, event_type=AuditEventType.TWO_FACTOR_ENABLED
        )
        assert events[0].description == "2FA enabled with app method"
        titles = [n["title"] for n in runtime.notifications.list_for_user(shopper.id)]
        assert "2FA Enabled" in titles

    def test_enable_with_wrong_code_keeps_disabled(self, engine, runtime, shopper):
        engine.setup(shopper, "app")
        with pytest.raises(TwoFactorInvalidCodeError):
            engine.verify_and_enable(shopper, "app", "000000x")
        assert not runtime.store.get_user(shopper.id).two_factor_enabled

    def test_email_enable_consumes_code(self, engine, runtime, shopper):
        data = engine.setup(shopper, "email")
        assert data == {"method": "email", "expires_in": 300}
        code = _otp_code(runtime.store, shopper.id, OtpPurpose.TWO_FACTOR)

        updated = engine.verify_and_enable(shopper, "email", code)

        assert updated.two_factor_method == TwoFactorMethod.EMAIL
        with pytest.raises(StopIteration):
            _otp_code(runtime.store, shopper.id, OtpPurpose.TWO_FACTOR)

    def test_setup_when_already_enabled(self, engine, runtime, shopper):
        updated, _ = _enable_app(runtime, engine, shopper)
        with pytest.raises(TwoFactorAlreadyEnabledError):
            engine.setup(updated, "email")


class TestLoginVerification:
    def test_app_login_with_challenge(self, engine, runtime, shopper):
        updated, secret = _enable_app(runtime, engine, shopper)
        challenge = engine.start_login_challenge(updated)

        result = engine.verify_login(
            shopper.email,
            generate_totp(secret, time.time()),
            "app",
            challenge_token=challenge["challenge_token"],
            remember_me=True,
        )

        assert result.access_token
        assert result.session is not None
        events = runtime.store.list_audit_events(
            user_id=shopper.id, event_type=AuditEventType.TWO_FACTOR_VERIFICATION_SUCCESS
        )
        assert len(events) == 1

    def test_code_without_challenge_yields_nothing(self, engine, runtime, shopper):
        _, secret = _enable_app(runtime, engine, shopper)
        with pytest.raises(TokenInvalidError):
            engine.verify_login(
                shopper.email,
                generate_totp(secret, time.time()),
                "app",
                challenge_token="forged",
            )

    def test_challenge_is_bound_to_its_user(self, engine, runtime, shopper):
        other = runtime.auth.register("other@example.com", "other", PASSWORD, email_verified=True)
        _, secret = _enable_app(runtime, engine, shopper)
        foreign = runtime.codec.issue_challenge(other.id)

        with pytest.raises(TokenInvalidError):
            engine.verify_login(
                shopper.email,
                generate_totp(secret, time.time()),
                "app",
                challenge_token=foreign,
            )

    def test_wrong_code_is_audited(self, engine, runtime, shopper):
        updated, _ = _enable_app(runtime, engine, shopper)
        challenge = engine.start_login_challenge(updated)

        with pytest.raises(TwoFactorInvalidCodeError):
            engine.verify_login(
                shopper.email, "abcdef", "app", challenge_token=challenge["challenge_token"]
            )
        events = runtime.store.list_audit_events(
            user_id=shopper.id, event_type=AuditEventType.TWO_FACTOR_VERIFICATION_FAILURE
        )
        assert events[0].description == "Invalid 2FA token"

    def test_email_login_sends_and_consumes_code(self, engine, runtime, shopper):
        engine.setup(shopper, "email")
        enable_code = _otp_code(runtime.store, shopper.id, OtpPurpose.TWO_FACTOR)
        updated = engine.verify_and_enable(shopper, "email", enable_code)

        challenge = engine.start_login_challenge(updated)
        code = _otp_code(runtime.store, shopper.id, OtpPurpose.TWO_FACTOR)
        result = engine.verify_login(
            shopper.email, code, "email", challenge_token=challenge["challenge_token"]
        )

        assert result.access_token
        assert result.session is None
        with pytest.raises(TwoFactorInvalidCodeError):
            engine.verify_login(
                shopper.email, code, "email", challenge_token=challenge["challenge_token"]
            )

    def test_method_mismatch_is_rejected(self, engine, runtime, shopper):
        updated, secret = _enable_app(runtime, engine, shopper)
        challenge = engine.start_login_challenge(updated)
        with pytest.raises(TwoFactorInvalidCodeError):
            engine.verify_login(
                shopper.email,
                generate_totp(secret, time.time()),
                "email",
                challenge_token=challenge["challenge_token"],
            )


class TestDisable:
    def test_disable_requires_emailed_token(self, engine, runtime, shopper):
        updated, _ = _enable_app(runtime, engine, shopper)
        engine.request_disable(updated)
        token = _otp_code(runtime.store, shopper.id, OtpPurpose.TWO_FACTOR_DISABLE)
        assert len(token) == 64

        disabled = engine.confirm_disable(shopper.id, token)

        assert not disabled.two_factor_enabled
        assert disabled.two_factor_method == TwoFactorMethod.NONE
        assert runtime.store.get_totp_secret(shopper.id) is None

    def test_disable_with_bad_token(self, engine, runtime, shopper):
        updated, _ = _enable_app(runtime, engine, shopper)
        engine.request_disable(updated)

        with pytest.raises(TokenInvalidError) as exc_info:
            engine.confirm_disable(shopper.id, "0" * 64)
        assert exc_info.value.status_code == 200
        assert runtime.store.get_user(shopper.id).two_factor_enabled

    def test_disable_request_without_2fa(self, engine, shopper):
        with pytest.raises(TwoFactorNotEnabledError):
            engine.request_disable(shopper)
