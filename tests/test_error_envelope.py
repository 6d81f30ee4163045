"""Tests for the error envelope format and exception mapping.

Error responses conform to the stable API envelope:
{
    "status": "error",
    "message": "<human_readable>",
    "error": {
        "code": "<STABLE_CODE>",
        "message": "<human_readable>",
        "details": <object|array|null>
    },
    "request_id": "<uuid>"
}
"""

import json

import pytest
from fastapi import Depends, FastAPI, Request
from fastapi.testclient import TestClient
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from shopgate.api.error_handling import (
    REFRESHED_ACCESS_STATE,
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    is_page_route,
    register_exception_handlers,
)
from shopgate.api.schemas import Envelope, ErrorBody
from shopgate.service.errors import (
    AccountRestrictedError,
    InvalidCredentialsError,
    RateLimitedError,
    SessionRevokedError,
)
from shopgate.service.gate import ACCESS_COOKIE, REFRESH_COOKIE
from shopgate.storage.errors import StoreUnavailable


class TestErrorBody:
    def test_uppercase_codes_are_accepted(self):
        error = ErrorBody(code="INVALID_CREDENTIALS", message="Invalid email or password")
        assert error.details is None

    @pytest.mark.parametrize("code", ["unauthorized", "invalid_credentials", "TEAPOT"])
    def test_unknown_codes_are_rejected(self, code):
        with pytest.raises(PydanticValidationError):
            ErrorBody(code=code, message="nope")


class TestEnvelope:
    def test_status_must_be_success_or_error(self):
        with pytest.raises(PydanticValidationError):
            Envelope(status="ok")

    def test_request_id_is_generated(self):
        first = Envelope(status="success")
        second = Envelope(status="success")
        assert first.request_id and first.request_id != second.request_id


class TestErrorResponse:
    def test_envelope_shape(self):
        response = _error_response(401, "Authentication required")
        body = json.loads(response.body)

        assert response.status_code == 401
        assert body["status"] == "error"
        assert body["message"] == "Authentication required"
        assert body["error"]["code"] == "UNAUTHENTICATED"
        assert body["data"] is None

    def test_explicit_code_wins_over_status(self):
        body = json.loads(_error_response(200, "bad", code="TWO_FACTOR_INVALID_CODE").body)
        assert body["error"]["code"] == "TWO_FACTOR_INVALID_CODE"

    def test_status_table_codes_are_valid(self):
        for code in _STATUS_TO_CODE.values():
            ErrorBody(code=code, message="x")
        assert _error_code_for_status(418) == "SERVER_ERROR"


class _Payload(BaseModel):
    email: str


@pytest.fixture
def client():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/v1/bad-login")
    async def bad_login():
        raise InvalidCredentialsError("Invalid email or password")

    @app.get("/v1/revoked")
    async def revoked():
        raise SessionRevokedError(
            "Session has been revoked", clear_cookies=(ACCESS_COOKIE, REFRESH_COOKIE)
        )

    @app.get("/account")
    async def account_page():
        raise SessionRevokedError("Session has been revoked", clear_cookies=(ACCESS_COOKIE,))

    @app.get("/v1/banned")
    async def banned():
        raise AccountRestrictedError.for_status(
            "banned", reason="fraud", expires_at=None, support_email="help@example.com"
        )

    @app.get("/v1/throttled")
    async def throttled():
        raise RateLimitedError.retry_after(42)

    def _refreshed(request: Request):
        setattr(request.state, REFRESHED_ACCESS_STATE, "fresh-access")

    @app.get("/v1/refreshed-then-fails", dependencies=[Depends(_refreshed)])
    async def refreshed_then_fails():
        raise InvalidCredentialsError("Invalid email or password")

    @app.get("/v1/refreshed-then-revoked", dependencies=[Depends(_refreshed)])
    async def refreshed_then_revoked():
        raise SessionRevokedError("Session has been revoked", clear_cookies=(ACCESS_COOKIE,))

    @app.get("/v1/store-down")
    async def store_down():
        raise StoreUnavailable("database offline")

    @app.get("/v1/boom")
    async def boom():
        raise RuntimeError("kaboom")

    @app.post("/v1/validate")
    async def validate(payload: _Payload):
        return {"ok": True}

    return TestClient(app, raise_server_exceptions=False)


class TestHandlers:
    def test_business_error_uses_200(self, client):
        response = client.get("/v1/bad-login")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "INVALID_CREDENTIALS"

    def test_gate_rejection_clears_cookies(self, client):
        response = client.get("/v1/revoked")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "SESSION_REVOKED"
        set_cookie = ",".join(response.headers.get_list("set-cookie"))
        assert ACCESS_COOKIE in set_cookie and REFRESH_COOKIE in set_cookie

    def test_page_route_redirects_to_login(self, client):
        response = client.get("/account", follow_redirects=False)
        assert response.status_code == 303
        assert response.headers["location"] == "/login"

    def test_restriction_details(self, client):
        response = client.get("/v1/banned")
        assert response.status_code == 403
        error = response.json()["error"]
        assert error["code"] == "ACCOUNT_BANNED"
        assert error["details"]["reason"] == "fraud"
        assert error["details"]["support_email"] == "help@example.com"

    def test_rate_limit_is_429_with_retry_after(self, client):
        response = client.get("/v1/throttled")
        assert response.status_code == 429
        assert response.json()["error"]["code"] == "RATE_LIMITED"
        assert response.headers["Retry-After"] == "42"

    def test_refreshed_access_survives_business_error(self, client):
        response = client.get("/v1/refreshed-then-fails")
        assert response.json()["error"]["code"] == "INVALID_CREDENTIALS"
        set_cookie = ",".join(response.headers.get_list("set-cookie"))
        assert f"{ACCESS_COOKIE}=fresh-access" in set_cookie

    def test_cleared_access_is_not_reissued(self, client):
        response = client.get("/v1/refreshed-then-revoked")
        set_cookie = ",".join(response.headers.get_list("set-cookie"))
        assert "fresh-access" not in set_cookie
        assert ACCESS_COOKIE in set_cookie

    def test_store_unavailable_is_503(self, client):
        response = client.get("/v1/store-down")
        assert response.status_code == 503
        assert response.json()["error"]["code"] == "SERVER_ERROR"

    def test_uncaught_exception_is_500(self, client):
        response = client.get("/v1/boom")
        assert response.status_code == 500
        assert response.json()["error"]["message"] == "internal server error"

    def test_request_validation_is_422_envelope(self, client):
        response = client.post("/v1/validate", json={})
        assert response.status_code == 422
        body = response.json()
        assert body["error"]["code"] == "VALIDATION_ERROR"
        assert body["error"]["details"][0]["loc"] == ["body", "email"]


def test_is_page_route():
    class _Req:
        def __init__(self, path, method):
            self.method = method
            self.url = type("U", (), {"path": path})()

    assert is_page_route(_Req("/account", "GET"))
    assert not is_page_route(_Req("/v1/auth/me", "GET"))
    assert not is_page_route(_Req("/account", "POST"))
