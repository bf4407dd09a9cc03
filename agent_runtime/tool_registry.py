"""Model-facing tool namespace: the native shell tool plus every connected
server's tools under ``mcp_<server>_<tool>``.

Names are parsed exactly once, at this boundary, into a tagged union so the
dispatcher never re-derives routing from strings.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol, Union

from agent_runtime.config import MCP_NAME_SEPARATOR
from agent_runtime.mcp_client import RemoteTool

logger = logging.getLogger(__name__)

SHELL_TOOL_NAME = "shell"
MCP_TOOL_PREFIX = f"mcp{MCP_NAME_SEPARATOR}"

SHELL_TOOL_PARAMETERS: dict[str, Any] = {
    "type": "object",
    "properties": {
        "command": {
            "type": "array",
            "items": {"type": "string"},
            "description": "Command and arguments, e.g. [\"ls\", \"-la\"]. "
            "Use [\"apply_patch\", \"<patch>\"] to edit files.",
        },
        "workdir": {"type": "string", "description": "Working directory for the command."},
        "timeout": {
            "type": "number",
            "description": "Maximum runtime in milliseconds before the process is killed.",
        },
    },
    "required": ["command"],
    "additionalProperties": False,
}


@dataclass(frozen=True)
class ToolDescriptor:
    name: str
    description: str
    parameters: dict[str, Any] = field(default_factory=dict)

    def to_openai(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


SHELL_TOOL = ToolDescriptor(
    name=SHELL_TOOL_NAME,
    description="Runs a shell command, and returns its output.",
    parameters=SHELL_TOOL_PARAMETERS,
)


# ---------------------------------------------------------------------------
# Name resolution
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class NativeCommand:
    """The built-in shell tool."""


@dataclass(frozen=True)
class RemoteToolCall:
    server: str
    tool: str


@dataclass(frozen=True)
class UnresolvedTool:
    name: str
    reason: str


ToolTarget = Union[NativeCommand, RemoteToolCall, UnresolvedTool]


def mcp_tool_name(server: str, tool: str) -> str:
    return f"{MCP_TOOL_PREFIX}{server}{MCP_NAME_SEPARATOR}{tool}"


def parse_tool_name(name: str) -> ToolTarget:
    """Resolve a model-issued tool name.

    Server names never contain the separator (enforced by
    ``McpServerConfig``), so the first separator after the prefix splits
    server from tool; the tool segment may itself contain separators.
    """
    if name == SHELL_TOOL_NAME:
        return NativeCommand()
    if not name.startswith(MCP_TOOL_PREFIX):
        return UnresolvedTool(name, f"Unknown tool: {name}")
    rest = name[len(MCP_TOOL_PREFIX):]
    server, sep, tool = rest.partition(MCP_NAME_SEPARATOR)
    if not server or not sep or not tool:
        return UnresolvedTool(
            name,
            f"Malformed MCP tool name {name!r}; expected mcp_<server>_<tool>",
        )
    return RemoteToolCall(server=server, tool=tool)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class _ConnectedClient(Protocol):
    def is_connected(self) -> bool: ...


def _remote_descriptor(server: str, tool: RemoteTool) -> ToolDescriptor:
    parameters = dict(tool.input_schema or {})
    parameters.setdefault("type", "object")
    if not isinstance(parameters.get("properties"), dict):
        parameters["properties"] = {}
    return ToolDescriptor(
        name=mcp_tool_name(server, tool.name),
        description=f"[MCP Tool@{server}] {tool.description}".rstrip(),
        parameters=parameters,
    )


class ToolRegistry:
    """Builds a fresh snapshot per model request from live client state."""

    def __init__(
        self,
        clients: Mapping[str, _ConnectedClient],
        discovered: Mapping[str, list[RemoteTool]],
    ) -> None:
        self._clients = clients
        self._discovered = discovered

    def snapshot(self) -> tuple[ToolDescriptor, ...]:
        descriptors: list[ToolDescriptor] = [SHELL_TOOL]
        seen: set[str] = {SHELL_TOOL_NAME}
        for server, client in self._clients.items():
            if not client.is_connected():
                continue
            for tool in self._discovered.get(server, []):
                if not tool.name:
                    continue
                descriptor = _remote_descriptor(server, tool)
                if descriptor.name in seen:
                    logger.warning("Duplicate tool %r from server %r skipped", tool.name, server)
                    continue
                seen.add(descriptor.name)
                descriptors.append(descriptor)
        return tuple(descriptors)

    def openai_tools(self) -> list[dict[str, Any]]:
        return [d.to_openai() for d in self.snapshot()]
