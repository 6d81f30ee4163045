"""Request schema validation tests."""

import pytest
from pydantic import ValidationError

from shopgate.api.schemas import (
    AccountStatusRequest,
    BroadcastNotificationRequest,
    LoginRequest,
    PasswordResetRequest,
    RegisterRequest,
    TwoFactorLoginRequest,
    validate_email,
    validate_password_strength,
)
from shopgate.service.notifications import NotificationType
from shopgate.storage.models import AccountStatus


def _register(**overrides):
    data = {
        "username": "shopper",
        "email": "Shopper@Example.com",
        "password": "Str0ng!Pass",
        "confirmPassword": "Str0ng!Pass",
    }
    data.update(overrides)
    return RegisterRequest(**data)


class TestRegisterRequest:
    def test_valid_request_normalizes_email(self):
        assert _register().email == "shopper@example.com"

    @pytest.mark.parametrize(
        "password",
        ["Sh0rt!", "alllowercase1!", "ALLUPPERCASE1!", "NoDigits!!", "NoSpecial123", "Has Space1!"],
    )
    def test_weak_passwords_are_rejected(self, password):
        with pytest.raises(ValidationError):
            _register(password=password, confirmPassword=password)

    def test_mismatched_confirmation(self):
        with pytest.raises(ValidationError):
            _register(confirmPassword="Str0ng!Pasx")

    @pytest.mark.parametrize("username", ["ab", "x" * 31, "bad-name", "emoji\U0001f600"])
    def test_bad_usernames(self, username):
        with pytest.raises(ValidationError):
            _register(username=username)

    def test_zero_width_characters_are_stripped(self):
        assert _register(username="shop\u200bper").username == "shopper"

    @pytest.mark.parametrize("email", ["no-at-sign", "a@b", "a@-bad-.com", "spa ce@example.com"])
    def test_bad_emails(self, email):
        with pytest.raises(ValidationError):
            _register(email=email)


def test_login_request_accepts_camel_case_remember_me():
    assert LoginRequest(email="a@example.com", password="x", rememberMe=True).remember_me
    assert not LoginRequest(email="a@example.com", password="x").remember_me


@pytest.mark.parametrize("otp", ["12345", "1234567", "12a456"])
def test_two_factor_login_requires_six_digits(otp):
    with pytest.raises(ValidationError):
        TwoFactorLoginRequest(email="a@example.com", otp=otp, method="app", challenge_token="t")


def test_two_factor_login_rejects_unknown_method():
    with pytest.raises(ValidationError):
        TwoFactorLoginRequest(email="a@example.com", otp="123456", method="sms", challenge_token="t")


def test_public_validators_raise_value_error():
    assert validate_email(" Admin@Example.com ") == "admin@example.com"
    assert validate_password_strength("Str0ng!Pass") == "Str0ng!Pass"
    with pytest.raises(ValueError):
        validate_email("not-an-email")
    with pytest.raises(ValueError, match="one special character"):
        validate_password_strength("NoSpecial123")


def test_password_reset_request_enforces_policy():
    body = PasswordResetRequest(
        email="Shopper@Example.com",
        otp="123456",
        password="N3w!Passw0rd",
        confirmPassword="N3w!Passw0rd",
    )
    assert body.email == "shopper@example.com"
    with pytest.raises(ValidationError):
        PasswordResetRequest(
            email="a@example.com", otp="123456", password="weak", confirmPassword="weak"
        )
    with pytest.raises(ValidationError):
        PasswordResetRequest(
            email="a@example.com",
            otp="123456",
            password="N3w!Passw0rd",
            confirmPassword="N3w!Passw0rx",
        )


def test_account_status_request():
    body = AccountStatusRequest(status="suspended", reason="abuse", duration_days=7)
    assert body.status == AccountStatus.SUSPENDED
    with pytest.raises(ValidationError):
        AccountStatusRequest(status="frozen")
    with pytest.raises(ValidationError):
        AccountStatusRequest(status="suspended", duration_days=-1)


def test_broadcast_notification_type():
    body = BroadcastNotificationRequest(type="coupon", message="SAVE10")
    assert body.notification_type == NotificationType.COUPON
    with pytest.raises(ValidationError):
        BroadcastNotificationRequest(type="cart", message="nope")
