"""Typed runtime configuration for agent_runtime.

Loading config files is the caller's job; this module only defines the
shapes and resolves environment overrides once.
"""

from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, field_validator

logger = logging.getLogger(__name__)

MODEL_ENV = "AGENT_RUNTIME_MODEL"
APPROVAL_MODE_ENV = "AGENT_RUNTIME_APPROVAL_MODE"
FULL_AUTO_ERROR_MODE_ENV = "AGENT_RUNTIME_FULL_AUTO_ERROR_MODE"
API_BASE_ENV = "AGENT_RUNTIME_API_BASE"

DEFAULT_MODEL = "gpt-4o"
DEFAULT_INSTRUCTIONS = ""

MCP_NAME_SEPARATOR = "_"


class ApprovalPolicy(str, Enum):
    """How much the loop may do without asking."""

    SUGGEST = "suggest"
    AUTO_EDIT = "auto-edit"
    FULL_AUTO = "full-auto"


class FullAutoErrorMode(str, Enum):
    """What to do when a sandboxed command fails under full-auto."""

    ASK_USER = "ask-user"
    IGNORE_AND_CONTINUE = "ignore-and-continue"


class McpServerConfig(BaseModel):
    """One remote tool server. Immutable for the lifetime of a loop."""

    model_config = ConfigDict(frozen=True)

    name: str
    url: str
    enabled: bool = True
    transport: Literal["streamable-http", "sse"] = "streamable-http"
    headers: dict[str, str] | None = None

    @field_validator("name")
    @classmethod
    def _name_is_addressable(cls, value: str) -> str:
        # Tool names are joined as mcp_<server>_<tool>; the server segment
        # must not contain the separator or the split is ambiguous.
        value = value.strip()
        if not value:
            raise ValueError("MCP server name must not be empty")
        if MCP_NAME_SEPARATOR in value:
            raise ValueError(
                f"MCP server name {value!r} must not contain {MCP_NAME_SEPARATOR!r}"
            )
        return value

    @field_validator("url")
    @classmethod
    def _url_present(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("MCP server url must not be empty")
        return value


def _default_writable_roots() -> tuple[str, ...]:
    return (os.getcwd(), tempfile.gettempdir())


@dataclass(frozen=True)
class AgentConfig:
    """Runtime config resolved once and passed explicitly to the loop."""

    model: str = DEFAULT_MODEL
    instructions: str = DEFAULT_INSTRUCTIONS
    mcp_servers: tuple[McpServerConfig, ...] = ()
    approval_policy: ApprovalPolicy = ApprovalPolicy.SUGGEST
    full_auto_error_mode: FullAutoErrorMode = FullAutoErrorMode.IGNORE_AND_CONTINUE
    api_base: str | None = None
    model_timeout: int = 60
    num_retries: int = 2
    max_turns: int | None = None
    mcp_init_timeout: float = 30.0
    tool_result_max_length: int = 50_000
    default_command_timeout_ms: int = 10_000
    max_output_bytes: int = 100_000
    writable_roots: tuple[str, ...] = field(default_factory=_default_writable_roots)
    container_wrapper: str | None = None

    @classmethod
    def from_env(cls, **overrides: object) -> "AgentConfig":
        """Build config from environment variables; explicit overrides win."""
        approval_raw = os.environ.get(APPROVAL_MODE_ENV, ApprovalPolicy.SUGGEST.value).strip().lower()
        try:
            approval_policy = ApprovalPolicy(approval_raw)
        except ValueError:
            logger.warning(
                "Invalid %s=%r; expected suggest/auto-edit/full-auto. Defaulting to suggest.",
                APPROVAL_MODE_ENV,
                approval_raw,
            )
            approval_policy = ApprovalPolicy.SUGGEST

        error_mode_raw = os.environ.get(
            FULL_AUTO_ERROR_MODE_ENV, FullAutoErrorMode.IGNORE_AND_CONTINUE.value,
        ).strip().lower()
        try:
            error_mode = FullAutoErrorMode(error_mode_raw)
        except ValueError:
            logger.warning(
                "Invalid %s=%r; expected ask-user/ignore-and-continue. Defaulting to ignore-and-continue.",
                FULL_AUTO_ERROR_MODE_ENV,
                error_mode_raw,
            )
            error_mode = FullAutoErrorMode.IGNORE_AND_CONTINUE

        values: dict[str, object] = {
            "model": os.environ.get(MODEL_ENV, DEFAULT_MODEL),
            "approval_policy": approval_policy,
            "full_auto_error_mode": error_mode,
            "api_base": os.environ.get(API_BASE_ENV) or None,
        }
        values.update(overrides)
        return cls(**values)  # type: ignore[arg-type]

    @property
    def enabled_servers(self) -> tuple[McpServerConfig, ...]:
        return tuple(s for s in self.mcp_servers if s.enabled)
