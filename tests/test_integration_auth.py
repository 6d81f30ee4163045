"""Integration tests for the HTTP authentication surface.

Tests the complete flow including:
- Registration and email verification
- Login with and without remember-me
- CSRF enforcement on write requests
- Session listing and revocation across browsers
- Second-factor login
- Refresh and logout
- Password reset and the activity feed
- Rate limiting and admin status changes
"""

import time

import pytest
from fastapi.testclient import TestClient

from shopgate import app as app_module
from shopgate.service.gate import ACCESS_COOKIE, REFRESH_COOKIE
from shopgate.service.runtime import get_runtime
from shopgate.service.two_factor import generate_totp
from shopgate.storage.models import OtpPurpose, Role

PASSWORD = "Str0ng!Pass"
EMAIL = "shopper@example.com"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


@pytest.fixture
def other_browser():
    return TestClient(app_module.app)


@pytest.fixture
def shopper():
    return get_runtime().auth.register(EMAIL, "shopper", PASSWORD, email_verified=True)


def _csrf(client: TestClient) -> str:
    response = client.get("/v1/auth/csrf-token")
    assert response.status_code == 200
    return response.json()["data"]["csrf_token"]


def _login(client: TestClient, email=EMAIL, password=PASSWORD, remember_me=True):
    response = client.post(
        "/v1/auth/login",
        json={"email": email, "password": password, "rememberMe": remember_me},
        headers={"X-CSRF-Token": _csrf(client)},
    )
    assert response.status_code == 200
    return response.json()


class TestRegistration:
    def test_register_then_verify_email_then_login(self, client):
        response = client.post(
            "/v1/auth/register",
            json={
                "username": "newbie",
                "email": "new@example.com",
                "password": PASSWORD,
                "confirmPassword": PASSWORD,
            },
            headers={"X-CSRF-Token": _csrf(client)},
        )
        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "success"
        assert body["data"]["requires_email_verification"] is True

        store = get_runtime().store
        user_id = body["data"]["user"]["id"]
        code = next(
            o.code
            for o in store.otps.values()
            if o.user_id == user_id and o.purpose == OtpPurpose.EMAIL_VERIFICATION
        )
        verify = client.post(
            "/v1/auth/email/verify",
            json={"email": "new@example.com", "otp": code},
            headers={"X-CSRF-Token": _csrf(client)},
        )
        assert verify.json()["data"]["user"]["email_verified"] is True

        login = _login(client, email="new@example.com")
        assert login["status"] == "success"
        assert login["data"]["user"]["username"] == "newbie"

    def test_duplicate_email_is_reported_in_envelope(self, client, shopper):
        response = client.post(
            "/v1/auth/register",
            json={
                "username": "again",
                "email": EMAIL,
                "password": PASSWORD,
                "confirmPassword": PASSWORD,
            },
            headers={"X-CSRF-Token": _csrf(client)},
        )
        assert response.status_code == 200
        assert response.json()["error"]["code"] == "CONFLICT"

    def test_weak_password_is_422(self, client):
        response = client.post(
            "/v1/auth/register",
            json={
                "username": "weak",
                "email": "weak@example.com",
                "password": "password",
                "confirmPassword": "password",
            },
            headers={"X-CSRF-Token": _csrf(client)},
        )
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_unverified_login_asks_for_verification(self, client):
        get_runtime().auth.register("pending@example.com", "pending", PASSWORD)
        body = _login(client, email="pending@example.com")

        assert body["status"] == "success"
        assert body["data"]["requires_email_verification"] is True
        assert ACCESS_COOKIE not in client.cookies


class TestLogin:
    def test_login_sets_cookies_and_me_works(self, client, shopper):
        body = _login(client)

        assert body["message"] == "Login successful"
        assert body["data"]["remember_me"] is True
        assert body["data"]["csrf_token"]
        assert client.cookies.get(ACCESS_COOKIE)
        assert client.cookies.get(REFRESH_COOKIE)

        me = client.get("/v1/auth/me")
        assert me.status_code == 200
        assert me.json()["data"]["user"]["email"] == EMAIL
        assert me.json()["data"]["session_id"] == body["data"]["session_id"]

    def test_login_without_remember_me_has_no_refresh_cookie(self, client, shopper):
        body = _login(client, remember_me=False)

        assert body["data"]["session_id"] is None
        assert client.cookies.get(ACCESS_COOKIE)
        assert REFRESH_COOKIE not in client.cookies
        assert client.get("/v1/auth/me").status_code == 200

    def test_invalid_login_sets_no_cookies(self, client, shopper):
        response = client.post(
            "/v1/auth/login",
            json={"email": EMAIL, "password": "Wr0ng!Pass"},
            headers={"X-CSRF-Token": _csrf(client)},
        )
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "INVALID_CREDENTIALS"
        assert ACCESS_COOKIE not in response.cookies
        assert REFRESH_COOKIE not in response.cookies

    def test_login_requires_csrf(self, client, shopper):
        client.get("/v1/auth/csrf-token")
        response = client.post("/v1/auth/login", json={"email": EMAIL, "password": PASSWORD})

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "CSRF_MISSING"

    def test_anonymous_csrf_is_bound_to_its_browser(self, client, other_browser, shopper):
        foreign = _csrf(other_browser)
        client.get("/v1/auth/csrf-token")
        response = client.post(
            "/v1/auth/login",
            json={"email": EMAIL, "password": PASSWORD},
            headers={"X-CSRF-Token": foreign},
        )
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "CSRF_INVALID"

    def test_me_without_credentials_is_401(self, client):
        response = client.get("/v1/auth/me")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "UNAUTHENTICATED"

    def test_login_is_rate_limited(self, client, shopper):
        token = _csrf(client)
        statuses = []
        for _ in range(6):
            response = client.post(
                "/v1/auth/login",
                json={"email": EMAIL, "password": "Wr0ng!Pass"},
                headers={"X-CSRF-Token": token},
            )
            statuses.append(response.status_code)

        assert statuses[:5] == [200] * 5
        assert statuses[5] == 429
        assert response.json()["error"]["code"] == "RATE_LIMITED"
        assert int(response.headers["Retry-After"]) >= 1


class TestSessions:
    def test_revoking_other_browser_logs_it_out(self, client, other_browser, shopper):
        mine = _login(client)
        theirs = _login(other_browser)
        csrf_token = _csrf(client)

        listing = client.get("/v1/auth/sessions").json()["data"]["sessions"]
        assert len(listing) == 2
        current = [s for s in listing if s["is_current_session"]]
        assert [s["id"] for s in current] == [mine["data"]["session_id"]]

        revoke = client.post(
            f"/v1/auth/sessions/{theirs['data']['session_id']}/revoke",
            headers={"X-CSRF-Token": csrf_token},
        )
        assert revoke.json()["status"] == "success"

        rejected = other_browser.get("/v1/auth/me")
        assert rejected.status_code == 401
        assert rejected.json()["error"]["code"] == "SESSION_REVOKED"
        assert ACCESS_COOKIE not in other_browser.cookies
        assert client.get("/v1/auth/me").status_code == 200

    def test_revoke_others_keeps_current(self, client, other_browser, shopper):
        _login(client)
        _login(other_browser)

        response = client.post(
            "/v1/auth/sessions/revoke-others",
            headers={"X-CSRF-Token": _csrf(client)},
        )
        assert response.json()["data"]["revoked"] == 1
        assert client.get("/v1/auth/me").status_code == 200
        assert other_browser.get("/v1/auth/me").status_code == 401

    def test_login_elsewhere_retires_earlier_csrf_token(self, client, other_browser, shopper):
        stale = _login(client)["data"]["csrf_token"]
        _login(other_browser)

        response = client.post(
            "/v1/auth/sessions/revoke-others", headers={"X-CSRF-Token": stale}
        )
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "CSRF_INVALID"
        assert other_browser.get("/v1/auth/me").status_code == 200

    def test_revoking_someone_elses_session_is_not_found(self, client, other_browser, shopper):
        get_runtime().auth.register("other@example.com", "other", PASSWORD, email_verified=True)
        mine = _login(client)
        theirs = _login(other_browser, email="other@example.com")

        response = client.post(
            f"/v1/auth/sessions/{theirs['data']['session_id']}/revoke",
            headers={"X-CSRF-Token": mine["data"]["csrf_token"]},
        )
        assert response.status_code == 200
        assert response.json()["error"]["code"] == "SESSION_NOT_FOUND"
        assert other_browser.get("/v1/auth/me").status_code == 200

    def test_write_with_other_users_csrf_is_rejected(self, client, other_browser, shopper):
        get_runtime().auth.register("other@example.com", "other", PASSWORD, email_verified=True)
        _login(client)
        theirs = _login(other_browser, email="other@example.com")

        response = client.post(
            "/v1/auth/sessions/revoke-others",
            headers={"X-CSRF-Token": theirs["data"]["csrf_token"]},
        )
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "CSRF_INVALID"

    def test_refresh_endpoint_issues_new_access(self, client, shopper):
        _login(client)
        old_access = client.cookies.get(ACCESS_COOKIE)

        response = client.post("/v1/auth/refresh-token")

        assert response.json()["status"] == "success"
        assert client.cookies.get(ACCESS_COOKIE) != old_access

    def test_logout_clears_cookies_and_session(self, client, shopper):
        body = _login(client)
        response = client.post(
            "/v1/auth/logout", headers={"X-CSRF-Token": body["data"]["csrf_token"]}
        )

        assert response.json()["message"] == "Logged out successfully"
        assert ACCESS_COOKIE not in client.cookies
        assert REFRESH_COOKIE not in client.cookies
        assert get_runtime().sessions.get_active(body["data"]["session_id"]) is None


class TestPasswordReset:
    def test_reset_flow_signs_out_other_browsers(self, client, other_browser, shopper):
        _login(client)
        csrf_token = _csrf(other_browser)

        requested = other_browser.post(
            "/v1/auth/password-reset-request",
            json={"email": EMAIL},
            headers={"X-CSRF-Token": csrf_token},
        )
        assert requested.json()["status"] == "success"
        code = next(
            otp.code
            for otp in get_runtime().store.otps.values()
            if otp.purpose == OtpPurpose.PASSWORD_RESET
        )

        verified = other_browser.post(
            "/v1/auth/verify-password-reset",
            json={"email": EMAIL, "otp": code},
            headers={"X-CSRF-Token": csrf_token},
        )
        assert verified.json()["status"] == "success"

        reset = other_browser.post(
            "/v1/auth/reset-password",
            json={
                "email": EMAIL,
                "otp": code,
                "password": "N3w!Passw0rd",
                "confirmPassword": "N3w!Passw0rd",
            },
            headers={"X-CSRF-Token": csrf_token},
        )
        assert reset.json()["status"] == "success"

        rejected = client.get("/v1/auth/me")
        assert rejected.status_code == 401
        assert rejected.json()["error"]["code"] == "SESSION_REVOKED"
        assert _login(other_browser, password="N3w!Passw0rd")["status"] == "success"

    def test_unknown_email_looks_like_success(self, client):
        response = client.post(
            "/v1/auth/password-reset-request",
            json={"email": "nobody@example.com"},
            headers={"X-CSRF-Token": _csrf(client)},
        )
        assert response.status_code == 200
        assert response.json()["status"] == "success"

    def test_wrong_code_is_a_business_error(self, client, shopper):
        response = client.post(
            "/v1/auth/verify-password-reset",
            json={"email": EMAIL, "otp": "000000"},
            headers={"X-CSRF-Token": _csrf(client)},
        )
        assert response.status_code == 200
        assert response.json()["error"]["code"] == "TOKEN_INVALID"

    def test_reset_requires_csrf(self, client, shopper):
        response = client.post(
            "/v1/auth/password-reset-request", json={"email": EMAIL}
        )
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "CSRF_MISSING"

    def test_mismatched_confirmation_is_rejected(self, client, shopper):
        response = client.post(
            "/v1/auth/reset-password",
            json={
                "email": EMAIL,
                "otp": "123456",
                "password": "N3w!Passw0rd",
                "confirmPassword": "N3w!Passw0rx",
            },
            headers={"X-CSRF-Token": _csrf(client)},
        )
        assert response.status_code == 422


def test_activity_lists_own_events_newest_first(client, shopper):
    csrf_token = _login(client)["data"]["csrf_token"]
    client.post(
        "/v1/auth/profile", json={"username": "renamed"}, headers={"X-CSRF-Token": csrf_token}
    )

    response = client.get("/v1/auth/activity")

    assert response.status_code == 200
    activity = response.json()["data"]["activity"]
    assert [item["event_type"] for item in activity[:2]] == ["profile_update", "login_success"]
    assert activity[1]["description"] == "Successful login"
    assert activity[1]["created_at"]


def test_activity_requires_sign_in(client):
    response = client.get("/v1/auth/activity")
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "UNAUTHENTICATED"


class TestPages:
    def test_account_page_redirects_anonymous_visitors(self, client):
        response = client.get("/account", follow_redirects=False)
        assert response.status_code == 303
        assert response.headers["location"] == "/login"

    def test_account_page_for_signed_in_user(self, client, shopper):
        _login(client)
        response = client.get("/account")
        assert response.status_code == 200
        assert "Signed in as shopper" in response.text

    def test_revoked_browser_is_redirected_from_pages(self, client, other_browser, shopper):
        _login(client)
        theirs = _login(other_browser)
        client.post(
            f"/v1/auth/sessions/{theirs['data']['session_id']}/revoke",
            headers={"X-CSRF-Token": _csrf(client)},
        )

        response = other_browser.get("/account", follow_redirects=False)
        assert response.status_code == 303


class TestTwoFactor:
    def test_app_two_factor_login(self, client, other_browser, shopper):
        csrf_token = _login(client)["data"]["csrf_token"]
        setup = client.post(
            "/v1/auth/2fa/setup", json={"method": "app"}, headers={"X-CSRF-Token": csrf_token}
        ).json()
        secret = setup["data"]["secret"]
        enable = client.post(
            "/v1/auth/2fa/enable",
            json={"method": "app", "otp": generate_totp(secret, time.time())},
            headers={"X-CSRF-Token": csrf_token},
        ).json()
        assert enable["data"]["user"]["two_factor_enabled"] is True

        challenge = _login(other_browser)
        assert challenge["data"]["two_factor_required"] is True
        assert challenge["data"]["code"] == "TWO_FACTOR_REQUIRED"
        assert ACCESS_COOKIE not in other_browser.cookies

        verify = other_browser.post(
            "/v1/auth/2fa/verify-login",
            json={
                "email": EMAIL,
                "otp": generate_totp(secret, time.time()),
                "method": "app",
                "challenge_token": challenge["data"]["challenge_token"],
                "rememberMe": True,
            },
            headers={"X-CSRF-Token": _csrf(other_browser)},
        )
        assert verify.json()["status"] == "success"
        assert other_browser.get("/v1/auth/me").status_code == 200


class TestAccountAdministration:
    def test_admin_ban_blocks_existing_credentials(self, client, other_browser, shopper):
        get_runtime().auth.register(
            "admin@example.com", "admin", PASSWORD, role=Role.ADMIN, email_verified=True
        )
        _login(client)
        admin_csrf = _login(other_browser, email="admin@example.com")["data"]["csrf_token"]

        response = other_browser.post(
            f"/v1/admin/users/{shopper.id}/status",
            json={"status": "banned", "reason": "fraud"},
            headers={"X-CSRF-Token": admin_csrf},
        )
        assert response.json()["data"]["user"]["account_status"] == "banned"

        blocked = client.get("/v1/auth/me")
        assert blocked.status_code == 403
        assert blocked.json()["error"]["code"] == "ACCOUNT_BANNED"

    def test_customer_cannot_use_admin_routes(self, client, shopper):
        csrf_token = _login(client)["data"]["csrf_token"]
        response = client.post(
            "/v1/admin/notifications",
            json={"type": "coupon", "message": "SAVE10"},
            headers={"X-CSRF-Token": csrf_token},
        )
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "FORBIDDEN"


def test_profile_update_notifies(client, shopper):
    csrf_token = _login(client)["data"]["csrf_token"]
    response = client.post(
        "/v1/auth/profile", json={"username": "new_name"}, headers={"X-CSRF-Token": csrf_token}
    )
    assert response.json()["data"]["user"]["username"] == "new_name"

    notes = client.get("/v1/notifications").json()["data"]
    assert notes["unread"] == 1
    assert notes["notifications"][0]["title"] == "Profile Updated"

    client.post("/v1/notifications/viewed", headers={"X-CSRF-Token": csrf_token})
    assert client.get("/v1/notifications").json()["data"]["unread"] == 0


def test_healthz(client):
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json()["checks"]["database"]["status"] == "healthy"
