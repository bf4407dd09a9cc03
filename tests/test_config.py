"""Tests for agent_runtime.config."""

from __future__ import annotations

import logging

import pytest
from pydantic import ValidationError

from agent_runtime.config import (
    APPROVAL_MODE_ENV,
    DEFAULT_MODEL,
    FULL_AUTO_ERROR_MODE_ENV,
    MODEL_ENV,
    AgentConfig,
    ApprovalPolicy,
    FullAutoErrorMode,
    McpServerConfig,
)


class TestMcpServerConfig:
    def test_defaults(self):
        cfg = McpServerConfig(name="calc", url="http://localhost:8000/mcp")
        assert cfg.enabled is True
        assert cfg.transport == "streamable-http"
        assert cfg.headers is None

    def test_rejects_separator_in_name(self):
        with pytest.raises(ValidationError, match="must not contain"):
            McpServerConfig(name="my_server", url="http://x")

    def test_rejects_empty_name(self):
        with pytest.raises(ValidationError):
            McpServerConfig(name="  ", url="http://x")

    def test_rejects_empty_url(self):
        with pytest.raises(ValidationError):
            McpServerConfig(name="calc", url="")

    def test_frozen(self):
        cfg = McpServerConfig(name="calc", url="http://x")
        with pytest.raises(ValidationError):
            cfg.url = "http://y"  # type: ignore[misc]


class TestAgentConfig:
    def test_enabled_servers_filters_disabled(self):
        cfg = AgentConfig(
            mcp_servers=(
                McpServerConfig(name="a", url="http://a"),
                McpServerConfig(name="b", url="http://b", enabled=False),
            )
        )
        assert [s.name for s in cfg.enabled_servers] == ["a"]

    def test_from_env_defaults(self, monkeypatch):
        for var in (MODEL_ENV, APPROVAL_MODE_ENV, FULL_AUTO_ERROR_MODE_ENV):
            monkeypatch.delenv(var, raising=False)
        cfg = AgentConfig.from_env()
        assert cfg.model == DEFAULT_MODEL
        assert cfg.approval_policy is ApprovalPolicy.SUGGEST
        assert cfg.full_auto_error_mode is FullAutoErrorMode.IGNORE_AND_CONTINUE

    def test_from_env_reads_values(self, monkeypatch):
        monkeypatch.setenv(MODEL_ENV, "anthropic/claude-sonnet-4-5")
        monkeypatch.setenv(APPROVAL_MODE_ENV, "Full-Auto")
        monkeypatch.setenv(FULL_AUTO_ERROR_MODE_ENV, "ask-user")
        cfg = AgentConfig.from_env()
        assert cfg.model == "anthropic/claude-sonnet-4-5"
        assert cfg.approval_policy is ApprovalPolicy.FULL_AUTO
        assert cfg.full_auto_error_mode is FullAutoErrorMode.ASK_USER

    def test_invalid_policy_warns_and_defaults(self, monkeypatch, caplog):
        monkeypatch.setenv(APPROVAL_MODE_ENV, "yolo")
        with caplog.at_level(logging.WARNING, logger="agent_runtime.config"):
            cfg = AgentConfig.from_env()
        assert cfg.approval_policy is ApprovalPolicy.SUGGEST
        assert "yolo" in caplog.text

    def test_overrides_win(self, monkeypatch):
        monkeypatch.setenv(MODEL_ENV, "gpt-4o-mini")
        cfg = AgentConfig.from_env(model="gpt-4.1", max_turns=3)
        assert cfg.model == "gpt-4.1"
        assert cfg.max_turns == 3
