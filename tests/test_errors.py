"""Tests for agent_runtime.errors: model error classification and wrapping."""

from __future__ import annotations

from unittest.mock import MagicMock

import litellm
import pytest

from agent_runtime.errors import (
    AgentError,
    McpConnectionError,
    McpError,
    ModelAuthError,
    ModelCallError,
    ModelNotFoundError,
    ModelQuotaExhaustedError,
    ModelRateLimitError,
    ModelResponseError,
    ModelTransientError,
    classify_error,
    is_transient,
    wrap_error,
)


# ---------------------------------------------------------------------------
# classify_error: litellm exception types
# ---------------------------------------------------------------------------


class TestClassifyLitellmTypes:
    def test_auth_error(self):
        err = litellm.AuthenticationError(
            message="Invalid API key", model="gpt-4o", llm_provider="openai"
        )
        assert classify_error(err) is ModelAuthError

    def test_permission_denied(self):
        err = litellm.PermissionDeniedError(
            message="Forbidden", model="gpt-4o", llm_provider="openai", response=MagicMock()
        )
        assert classify_error(err) is ModelAuthError

    def test_not_found(self):
        err = litellm.NotFoundError(
            message="Model not found", model="gpt-99", llm_provider="openai"
        )
        assert classify_error(err) is ModelNotFoundError

    def test_rate_limit(self):
        err = litellm.RateLimitError(
            message="Too many requests", model="gpt-4o", llm_provider="openai"
        )
        assert classify_error(err) is ModelRateLimitError

    def test_rate_limit_with_quota_message(self):
        err = litellm.RateLimitError(
            message="You exceeded your current quota", model="gpt-4o", llm_provider="openai"
        )
        assert classify_error(err) is ModelQuotaExhaustedError

    def test_service_unavailable(self):
        err = litellm.ServiceUnavailableError(
            message="Overloaded", model="gpt-4o", llm_provider="openai"
        )
        assert classify_error(err) is ModelTransientError


# ---------------------------------------------------------------------------
# classify_error: string fallback
# ---------------------------------------------------------------------------


class TestClassifyStringFallback:
    @pytest.mark.parametrize(
        ("message", "expected"),
        [
            ("HTTP 401 Unauthorized", ModelAuthError),
            ("403 Forbidden", ModelAuthError),
            ("model does not exist", ModelNotFoundError),
            ("rate limit hit, slow down", ModelRateLimitError),
            ("connection reset by peer", ModelTransientError),
            ("billing hard limit reached", ModelQuotaExhaustedError),
            ("something odd happened", ModelCallError),
        ],
    )
    def test_patterns(self, message, expected):
        assert classify_error(Exception(message)) is expected

    def test_builtin_timeout(self):
        assert classify_error(TimeoutError()) is ModelTransientError


# ---------------------------------------------------------------------------
# wrap_error / is_transient
# ---------------------------------------------------------------------------


class TestWrapError:
    def test_wraps_with_original(self):
        original = Exception("401 bad key")
        wrapped = wrap_error(original)
        assert isinstance(wrapped, ModelAuthError)
        assert wrapped.original is original
        assert "bad key" in str(wrapped)

    def test_already_wrapped_is_returned_unchanged(self):
        err = ModelResponseError("no choices")
        assert wrap_error(err) is err

    def test_hierarchy(self):
        assert issubclass(ModelCallError, AgentError)
        assert issubclass(McpConnectionError, McpError)
        assert not issubclass(McpError, ModelCallError)


class TestIsTransient:
    def test_rate_limit_is_transient(self):
        assert is_transient(Exception("rate limit exceeded"))

    def test_auth_is_not_transient(self):
        assert not is_transient(Exception("401 unauthorized"))

    def test_wrapped_response_error_is_not_transient(self):
        assert not is_transient(ModelResponseError("connection text in message"))

    def test_wrapped_transient_error_is_transient(self):
        assert is_transient(ModelTransientError("boom"))

    def test_mcp_error_carries_server(self):
        err = McpConnectionError("calc", "Failed to connect to calc: refused")
        assert err.server == "calc"
