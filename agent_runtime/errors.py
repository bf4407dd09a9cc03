"""Structured error types for agent_runtime.

Only model-layer failures escape ``AgentLoop.run``; everything raised by a
tool (MCP, sandbox, patch) is caught by the loop and turned into tool-result
content. Callers can still catch specific types:

    from agent_runtime.errors import ModelAuthError, ModelCallError

    try:
        await loop.run([user_text("Fix the failing test")])
    except ModelAuthError:
        # Bad key, retrying won't help
        ...
    except ModelCallError:
        ...
"""

from __future__ import annotations

from typing import Any


class AgentError(Exception):
    """Base for all agent_runtime errors."""

    def __init__(self, message: str, original: Exception | None = None) -> None:
        super().__init__(message)
        self.original = original


class AgentConfigError(AgentError):
    """Invalid runtime configuration (duplicate server names, bad policy)."""


# ---------------------------------------------------------------------------
# Model layer: fatal to the current run
# ---------------------------------------------------------------------------


class ModelCallError(AgentError):
    """The model request failed; the run cannot continue."""


class ModelRateLimitError(ModelCallError):
    """Transient rate limit (429)."""


class ModelQuotaExhaustedError(ModelCallError):
    """Permanent quota/billing exhaustion."""


class ModelAuthError(ModelCallError):
    """Authentication failed (401/403)."""


class ModelNotFoundError(ModelCallError):
    """Model doesn't exist (404)."""


class ModelTransientError(ModelCallError):
    """Server error (500/502/503), timeout, connection."""


class ModelResponseError(ModelCallError):
    """Provider returned something the loop cannot parse."""


# ---------------------------------------------------------------------------
# Remote tool servers: recovered locally
# ---------------------------------------------------------------------------


class McpError(AgentError):
    """Base for remote tool server failures."""

    def __init__(self, server: str, message: str, original: Exception | None = None) -> None:
        super().__init__(message, original=original)
        self.server = server


class McpConnectionError(McpError):
    """Server unreachable, auth failure or protocol mismatch."""


class McpNotConnectedError(McpError):
    """A call was attempted while the client is not connected."""


class McpToolError(McpError):
    """The server rejected a tool call or flagged its result as an error."""


# ---------------------------------------------------------------------------
# Local execution
# ---------------------------------------------------------------------------


class SandboxUnavailableError(AgentError):
    """A sandbox was mandated but none exists for this platform."""


class DiffError(AgentError):
    """A patch could not be parsed or applied."""


# Patterns that indicate permanent quota exhaustion (not transient rate limit).
_QUOTA_PATTERNS = [
    "quota",
    "billing",
    "insufficient",
    "exceeded your current",
    "plan and billing",
]


def _litellm_error_types(module: Any, names: tuple[str, ...]) -> tuple[type[BaseException], ...]:
    """Resolve optional litellm exception classes without static attribute coupling."""
    out: list[type[BaseException]] = []
    for name in names:
        candidate = getattr(module, name, None)
        if isinstance(candidate, type) and issubclass(candidate, BaseException):
            out.append(candidate)
    return tuple(out)


def classify_error(error: Exception) -> type[ModelCallError]:
    """Classify a model-call exception into a ModelCallError subtype.

    Uses litellm exception types first, falls back to string matching.
    """
    import litellm as _lt

    auth_types = _litellm_error_types(_lt, ("AuthenticationError", "PermissionDeniedError"))
    if auth_types and isinstance(error, auth_types):
        return ModelAuthError

    not_found_types = _litellm_error_types(_lt, ("NotFoundError",))
    if not_found_types and isinstance(error, not_found_types):
        return ModelNotFoundError

    budget_types = _litellm_error_types(_lt, ("BudgetExceededError",))
    if budget_types and isinstance(error, budget_types):
        return ModelQuotaExhaustedError

    rate_types = _litellm_error_types(_lt, ("RateLimitError",))
    if rate_types and isinstance(error, rate_types):
        error_str = str(error).lower()
        if any(p in error_str for p in _QUOTA_PATTERNS):
            return ModelQuotaExhaustedError
        return ModelRateLimitError

    transient_types = _litellm_error_types(
        _lt,
        (
            "InternalServerError",
            "ServiceUnavailableError",
            "APIConnectionError",
            "BadGatewayError",
            "Timeout",
        ),
    )
    if transient_types and isinstance(error, transient_types):
        return ModelTransientError

    if isinstance(error, TimeoutError):
        return ModelTransientError

    error_str = str(error).lower()

    if any(p in error_str for p in _QUOTA_PATTERNS):
        return ModelQuotaExhaustedError
    if "401" in error_str or "authentication" in error_str or "unauthorized" in error_str:
        return ModelAuthError
    if "403" in error_str or "forbidden" in error_str:
        return ModelAuthError
    if "404" in error_str or "does not exist" in error_str:
        return ModelNotFoundError
    if "rate" in error_str and "limit" in error_str:
        return ModelRateLimitError
    if any(p in error_str for p in ("timeout", "timed out", "connection", "500", "502", "503", "server error")):
        return ModelTransientError

    return ModelCallError


def wrap_error(error: Exception) -> ModelCallError:
    """Wrap an exception in the appropriate ModelCallError subclass.

    If the error is already a ModelCallError, returns it unchanged.
    """
    if isinstance(error, ModelCallError):
        return error
    cls = classify_error(error)
    return cls(str(error), original=error)


def is_transient(error: Exception) -> bool:
    """True when a model-call error is worth retrying."""
    if isinstance(error, ModelCallError):
        return isinstance(error, (ModelRateLimitError, ModelTransientError))
    return issubclass(classify_error(error), (ModelRateLimitError, ModelTransientError))
