import pytest
import time
from types import SimpleNamespace
from fastapi import FastAPI, Request
from httpx import AsyncClient, ASGITransport

from app.core.exceptions import UpstreamFailure, ConfigurationError
from app.core.provider_calls import call_provider
from app.security.env_validator import EnvironmentValidator
from app.security.security_middleware import SecurityHeadersMiddleware, RequestSizeLimitMiddleware


class ProviderError(Exception):
    pass


class TestCallProvider:

    @pytest.mark.asyncio
    async def test_returns_result(self):
        assert await call_provider("Test", lambda a, b=0: a + b, 2, b=3) == 5

    @pytest.mark.asyncio
    async def test_provider_error_becomes_upstream_failure(self):
        def fail():
            raise ProviderError("boom")

        with pytest.raises(UpstreamFailure) as exc_info:
            await call_provider("Test", fail, provider_errors=(ProviderError,))
        assert exc_info.value.message == "Test request failed"

    @pytest.mark.asyncio
    async def test_unlisted_errors_propagate(self):
        def fail():
            raise KeyError("bug")

        with pytest.raises(KeyError):
            await call_provider("Test", fail, provider_errors=(ProviderError,))

    @pytest.mark.asyncio
    async def test_timeout(self):
        with pytest.raises(UpstreamFailure) as exc_info:
            await call_provider("Slow", time.sleep, 0.5, timeout=0.05)
        assert exc_info.value.message == "Slow request timed out"


def config(**overrides):
    values = {
        "JWT_SECRET_KEY": "x" * 40,
        "TWILIO_AUTH_TOKEN": "0123456789abcdef0123456789abcdef",
        "STRIPE_WEBHOOK_SECRET": "whsec_abc123",
        "STRIPE_SECRET_KEY": None,
        "OPENAI_API_KEY": None,
        "SENDGRID_API_KEY": None,
        "SITE_URL": "https://app.example.com",
    }
    values.update(overrides)
    return SimpleNamespace(**values)


class TestEnvironmentValidator:

    def test_complete_configuration_is_secure(self):
        assert EnvironmentValidator(config()).validate_all_environment_vars()["status"] == "secure"

    def test_missing_webhook_secret_is_critical(self):
        validator = EnvironmentValidator(config(STRIPE_WEBHOOK_SECRET=None))
        results = validator.validate_all_environment_vars()
        assert results["status"] == "critical"
        with pytest.raises(ConfigurationError):
            validator.ensure_valid()

    def test_placeholder_secret_is_critical(self):
        results = EnvironmentValidator(config(JWT_SECRET_KEY="changeme")).validate_all_environment_vars()
        assert results["status"] == "critical"

    def test_odd_key_format_is_warning(self):
        results = EnvironmentValidator(config(STRIPE_SECRET_KEY="pk_live_nope")).validate_all_environment_vars()
        assert results["status"] == "warning"


def build_echo_app(max_size):
    echo_app = FastAPI()
    echo_app.add_middleware(SecurityHeadersMiddleware)
    echo_app.add_middleware(RequestSizeLimitMiddleware, max_size=max_size)

    @echo_app.post("/echo")
    async def echo(request: Request):
        body = await request.body()
        return {"size": len(body)}

    return echo_app


class TestSecurityMiddleware:

    @pytest.mark.asyncio
    async def test_small_body_passes_with_hardening_headers(self):
        transport = ASGITransport(app=build_echo_app(max_size=64))
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            response = await ac.post("/echo", content=b"hello")
        assert response.status_code == 200
        assert response.json() == {"size": 5}
        assert response.headers["x-frame-options"] == "DENY"
        assert response.headers["cache-control"] == "no-store"

    @pytest.mark.asyncio
    async def test_oversized_body_rejected(self):
        transport = ASGITransport(app=build_echo_app(max_size=8))
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            response = await ac.post("/echo", content=b"x" * 32)
        assert response.status_code == 413
        assert response.json() == {"error": "Request payload too large"}
