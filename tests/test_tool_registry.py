"""Tests for tool naming, name resolution and the registry snapshot."""

from __future__ import annotations

from agent_runtime.mcp_client import RemoteTool
from agent_runtime.tool_registry import (
    SHELL_TOOL_NAME,
    NativeCommand,
    RemoteToolCall,
    ToolRegistry,
    UnresolvedTool,
    mcp_tool_name,
    parse_tool_name,
)


class _Client:
    def __init__(self, connected: bool) -> None:
        self.connected = connected

    def is_connected(self) -> bool:
        return self.connected


ADD = RemoteTool(
    name="add",
    description="Add two numbers",
    input_schema={
        "type": "object",
        "properties": {"num1": {"type": "number"}, "num2": {"type": "number"}},
        "required": ["num1", "num2"],
    },
)


# ---------------------------------------------------------------------------
# Name resolution
# ---------------------------------------------------------------------------


class TestParseToolName:
    def test_shell(self):
        assert parse_tool_name(SHELL_TOOL_NAME) == NativeCommand()

    def test_remote(self):
        assert parse_tool_name("mcp_calc_add") == RemoteToolCall(server="calc", tool="add")

    def test_tool_segment_may_contain_separator(self):
        assert parse_tool_name("mcp_github_create_issue") == RemoteToolCall(server="github", tool="create_issue")

    def test_round_trip_with_builder(self):
        assert parse_tool_name(mcp_tool_name("calc", "add")) == RemoteToolCall("calc", "add")

    def test_unknown(self):
        target = parse_tool_name("browser")
        assert isinstance(target, UnresolvedTool)
        assert target.reason == "Unknown tool: browser"

    def test_missing_tool_segment(self):
        assert isinstance(parse_tool_name("mcp_calc"), UnresolvedTool)
        assert isinstance(parse_tool_name("mcp_calc_"), UnresolvedTool)

    def test_missing_server_segment(self):
        assert isinstance(parse_tool_name("mcp__add"), UnresolvedTool)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class TestToolRegistry:
    def test_shell_only_without_servers(self):
        names = [d.name for d in ToolRegistry({}, {}).snapshot()]
        assert names == [SHELL_TOOL_NAME]

    def test_connected_server_tools_are_prefixed(self):
        registry = ToolRegistry({"calc": _Client(True)}, {"calc": [ADD]})
        descriptors = registry.snapshot()
        assert [d.name for d in descriptors] == [SHELL_TOOL_NAME, "mcp_calc_add"]
        remote = descriptors[1]
        assert remote.description == "[MCP Tool@calc] Add two numbers"
        assert remote.parameters["required"] == ["num1", "num2"]

    def test_disconnected_server_contributes_nothing(self):
        registry = ToolRegistry(
            {"calc": _Client(False), "docs": _Client(True)},
            {"calc": [ADD], "docs": [RemoteTool(name="search")]},
        )
        assert [d.name for d in registry.snapshot()] == [SHELL_TOOL_NAME, "mcp_docs_search"]

    def test_snapshot_reflects_live_state(self):
        client = _Client(True)
        registry = ToolRegistry({"calc": client}, {"calc": [ADD]})
        assert len(registry.snapshot()) == 2
        client.connected = False
        assert len(registry.snapshot()) == 1

    def test_schema_without_properties_is_normalized(self):
        registry = ToolRegistry({"x": _Client(True)}, {"x": [RemoteTool(name="ping", input_schema={})]})
        params = registry.snapshot()[1].parameters
        assert params == {"type": "object", "properties": {}}

    def test_openai_shape(self):
        tools = ToolRegistry({}, {}).openai_tools()
        assert tools[0]["type"] == "function"
        assert tools[0]["function"]["name"] == SHELL_TOOL_NAME
        assert "command" in tools[0]["function"]["parameters"]["properties"]
