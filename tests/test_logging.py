"""Tests for request-scoped log context and credential redaction."""

import pytest
import structlog

from collabboard.api.routes import get_admin_user, get_user
from collabboard.logging import _redact_credentials, clear_request_context
from collabboard.service.errors import ServiceError
from collabboard.service.runtime import get_runtime

PASSWORD = "TestPassword123!"


@pytest.fixture(autouse=True)
def fresh_log_context():
    clear_request_context()
    yield
    clear_request_context()


class TestRequestUserBinding:
    async def test_authenticated_request_binds_user(self):
        runtime = get_runtime()
        result = await runtime.sessions.register("Alice", "alice@example.com", PASSWORD)

        ctx = await get_user(f"Bearer {result.access_token}")

        bound = structlog.contextvars.get_contextvars()
        assert bound["user_id"] == ctx.user_id == result.user.id
        assert bound["role"] == "user"
        assert "email" not in bound

    async def test_admin_dependency_binds_admin_role(self):
        runtime = get_runtime()
        result = await runtime.sessions.register(
            "Root", "root@example.com", PASSWORD, role="admin"
        )

        await get_admin_user(f"Bearer {result.access_token}")

        assert structlog.contextvars.get_contextvars()["role"] == "admin"

    async def test_rejected_token_binds_nothing(self):
        with pytest.raises(ServiceError):
            await get_user("Bearer not-a-token")

        assert "user_id" not in structlog.contextvars.get_contextvars()

    def test_clear_request_context_drops_previous_user(self):
        structlog.contextvars.bind_contextvars(user_id="u-stale", role="admin")

        clear_request_context()

        assert structlog.contextvars.get_contextvars() == {}


class TestRedaction:
    def test_credential_strings_are_masked(self):
        event = _redact_credentials(
            None,
            "info",
            {
                "event": "login",
                "refresh_token": "eyJhbGciOiJIUzI1NiJ9.payload.sig",
                "email": "alice@example.com",
                "user_id": "u-1",
            },
        )

        assert event["refresh_token"] == "ey***ig"
        assert event["email"] == "al***om"
        assert event["user_id"] == "u-1"

    def test_counters_pass_through(self):
        event = _redact_credentials(None, "info", {"tokens_removed": 3, "token": "abc"})

        assert event["tokens_removed"] == 3
        assert event["token"] == "abc"
