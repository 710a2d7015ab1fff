"""Tests for the throttle middleware and application wiring."""

from unittest.mock import Mock

import httpx
import pytest
from fastapi import Depends, FastAPI, Request
from fastapi.testclient import TestClient

from throttle.app.core.config import IdentityMode, Settings, build_options
from throttle.app.exceptions import ConfigurationError
from throttle.app.main import create_app
from throttle.app.middleware.rate_limit import (
    ThrottleMiddleware,
    get_identity,
    require_rate_limit,
    retry_after_seconds,
)
from throttle.app.ratelimit.limiter import RateLimiter


def build_app(**middleware_kwargs) -> FastAPI:
    app = FastAPI()
    app.add_middleware(ThrottleMiddleware, **middleware_kwargs)

    @app.middleware("http")
    async def fake_auth(request: Request, call_next):
        # Outermost: runs before the throttle, like a real auth layer
        user = request.headers.get("X-User")
        if user:
            request.state.username = user
        return await call_next(request)

    @app.get("/")
    async def index():
        return {"message": "hello"}

    return app


class TestThrottleMiddleware:
    """Tests for request admission through the middleware."""

    def test_basic_ratelimiting_on_ip(self):
        client = TestClient(build_app(burst=1, rate=1, ip=True))

        response = client.get("/")
        assert response.status_code == 200
        assert response.json() == {"message": "hello"}
        assert response.headers["X-RateLimit-Limit"] == "1"
        assert response.headers["X-RateLimit-Remaining"] == "0"

        response = client.get("/")
        assert response.status_code == 429
        assert response.json() == {
            "error": "rate_limit_exceeded",
            "message": "You have exceeded your request rate of 1 r/s.",
            "retry_after": 1,
        }
        assert response.headers["Retry-After"] == "1"

    def test_basic_ratelimiting_on_xff(self):
        client = TestClient(build_app(burst=1, rate=1, xff=True))

        assert client.get("/", headers={"X-Forwarded-For": "1.1.1.1"}).status_code == 200
        assert client.get("/", headers={"X-Forwarded-For": "1.1.1.2"}).status_code == 200
        assert client.get("/", headers={"X-Forwarded-For": "1.1.1.1"}).status_code == 429

    def test_xff_chain_uses_first_address(self):
        client = TestClient(build_app(burst=1, rate=1, xff=True))

        assert client.get("/", headers={"X-Forwarded-For": "1.1.1.1,2.2.2.2"}).status_code == 200
        assert client.get("/", headers={"X-Forwarded-For": "1.1.1.1"}).status_code == 429

    def test_ip_addresses_as_override_keys(self):
        client = TestClient(build_app(
            burst=1,
            rate=1,
            xff=True,
            overrides={"1.1.1.1": {"burst": 2, "rate": 2}},
        ))
        headers = {"X-Forwarded-For": "1.1.1.1"}

        assert client.get("/", headers=headers).status_code == 200
        assert client.get("/", headers=headers).status_code == 200

    def test_ip_blocks_as_override_keys(self):
        client = TestClient(build_app(
            burst=1,
            rate=1,
            xff=True,
            overrides={"1.1.1.192/27": {"burst": 2, "rate": 2}},
        ))
        inside = {"X-Forwarded-For": "1.1.1.223"}
        outside = {"X-Forwarded-For": "1.1.1.1"}

        assert client.get("/", headers=inside).status_code == 200
        assert client.get("/", headers=inside).status_code == 200
        assert client.get("/", headers=outside).status_code == 200
        assert client.get("/", headers=outside).status_code == 429

    def test_username_mode(self):
        client = TestClient(build_app(
            burst=1,
            rate=1,
            username=True,
            overrides={"admin": {"burst": 0, "rate": 0}},
        ))

        assert client.get("/", headers={"X-User": "alice"}).status_code == 200
        assert client.get("/", headers={"X-User": "alice"}).status_code == 429
        assert client.get("/", headers={"X-User": "bob"}).status_code == 200

        for _ in range(5):
            response = client.get("/", headers={"X-User": "admin"})
            assert response.status_code == 200
            assert "X-RateLimit-Limit" not in response.headers

    def test_missing_identity_is_server_error(self):
        client = TestClient(build_app(burst=1, rate=1, xff=True))

        response = client.get("/")
        assert response.status_code == 500
        assert response.json() == {
            "error": "throttle_configuration",
            "message": "Invalid throttle configuration",
        }

    def test_custom_message(self):
        client = TestClient(build_app(burst=1, rate=0.5, ip=True, message="Easy there, %s r/s max"))
        client.get("/")

        response = client.get("/")
        assert response.json()["message"] == "Easy there, 0.5 r/s max"
        assert response.headers["Retry-After"] == "2"

    def test_refill_with_shared_limiter(self, make_limiter, clock):
        limiter = make_limiter(burst=1, rate=1, ip=True)
        client = TestClient(build_app(limiter=limiter))

        assert client.get("/").status_code == 200
        assert client.get("/").status_code == 429
        clock.advance(1)
        assert client.get("/").status_code == 200

    def test_rejects_limiter_and_options_together(self, make_limiter):
        limiter = make_limiter(burst=1, rate=1, ip=True)
        with pytest.raises(ConfigurationError):
            ThrottleMiddleware(Mock(), limiter=limiter, burst=2)

    def test_invalid_options_fail_at_construction(self):
        with pytest.raises(ConfigurationError):
            ThrottleMiddleware(Mock(), burst=1, rate=1, ip=True, xff=True)

    @pytest.mark.asyncio
    async def test_async_client(self):
        app = build_app(burst=2, rate=1, xff=True)
        transport = httpx.ASGITransport(app=app)
        headers = {"X-Forwarded-For": "10.0.0.9"}

        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
            statuses = [(await client.get("/", headers=headers)).status_code for _ in range(3)]

        assert statuses == [200, 200, 429]


class TestGetIdentity:
    """Tests for identity extraction per mode."""

    def _request(self, headers=None, client=("10.0.0.1", 1234), state=None, user=None):
        request = Mock()
        request.headers = headers or {}
        request.client = Mock(host=client[0]) if client else None
        request.state = Mock(spec=[])
        for key, value in (state or {}).items():
            setattr(request.state, key, value)
        request.scope = {"user": user} if user is not None else {}
        return request

    def test_ip(self):
        assert get_identity(self._request(), IdentityMode.IP) == "10.0.0.1"

    def test_ip_without_client(self):
        assert get_identity(self._request(client=None), IdentityMode.IP) is None

    def test_xff_returns_raw_header(self):
        request = self._request(headers={"X-Forwarded-For": "1.1.1.1, 2.2.2.2"})
        assert get_identity(request, IdentityMode.XFF) == "1.1.1.1, 2.2.2.2"

    def test_username_from_state(self):
        request = self._request(state={"username": "alice"})
        assert get_identity(request, IdentityMode.USERNAME) == "alice"

    def test_username_from_authenticated_user(self):
        user = Mock(is_authenticated=True, display_name="carol")
        assert get_identity(self._request(user=user), IdentityMode.USERNAME) == "carol"

    def test_unauthenticated_user_has_no_identity(self):
        user = Mock(is_authenticated=False, display_name="")
        assert get_identity(self._request(user=user), IdentityMode.USERNAME) is None


@pytest.mark.parametrize(
    ("value", "expected"),
    [(None, None), (float("inf"), None), (0.0, 1), (0.2, 1), (1.0, 1), (2.5, 3)],
)
def test_retry_after_seconds(value, expected):
    assert retry_after_seconds(value) == expected


class TestCreateApp:
    """Tests for the application factory."""

    @pytest.fixture
    def app_settings(self):
        return Settings(_env_file=None, burst=1, rate=1, mode="xff")

    def test_health_reports_mode_and_keys(self, app_settings):
        client = TestClient(create_app(app_settings))
        headers = {"X-Forwarded-For": "1.1.1.1"}

        response = client.get("/health", headers=headers)
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "mode": "xff", "tracked_keys": 1}
        assert client.get("/", headers=headers).status_code == 429

    def test_invalid_settings_raise(self):
        with pytest.raises(ConfigurationError):
            create_app(Settings(_env_file=None, burst=-1))

    def test_route_dependency_uses_exception_handlers(self):
        app = create_app(Settings(_env_file=None, burst=0, rate=0, mode="ip"))
        route_limiter = RateLimiter(build_options(burst=1, rate=1, xff=True))

        @app.get("/search", dependencies=[Depends(require_rate_limit(route_limiter))])
        async def search():
            return {"results": []}

        client = TestClient(app)
        headers = {"X-Forwarded-For": "3.3.3.3"}

        assert client.get("/search", headers=headers).status_code == 200

        response = client.get("/search", headers=headers)
        assert response.status_code == 429
        assert response.json()["message"] == "You have exceeded your request rate of 1 r/s."
        assert response.headers["Retry-After"] == "1"

        response = client.get("/search")
        assert response.status_code == 500
        assert response.json()["error"] == "throttle_configuration"
