"""Autonomous coding-agent runtime on top of litellm and MCP.

The loop drives a model conversation, dispatches the tool calls it issues
(shell commands, file patches, remote MCP tools), gates side effects behind
an approval policy and sandboxes commands under full-auto.

Usage:
    from agent_runtime import AgentConfig, AgentLoop, ApprovalPolicy, McpServerConfig, user_text

    config = AgentConfig.from_env(
        approval_policy=ApprovalPolicy.AUTO_EDIT,
        mcp_servers=(McpServerConfig(name="calc", url="http://localhost:8000/mcp"),),
    )
    loop = AgentLoop(config, confirmation=ui, sink=ui)
    result = await loop.run([user_text("Add 5 and 3")])
    print(result.final_message.text)
    await loop.terminate()
"""

from agent_runtime.agent_loop import AgentLoop, PendingToolCall
from agent_runtime.approvals import ApprovalGate, ApprovalOutcome, derive_command_key
from agent_runtime.config import (
    AgentConfig,
    ApprovalPolicy,
    FullAutoErrorMode,
    McpServerConfig,
)
from agent_runtime.errors import (
    AgentConfigError,
    AgentError,
    DiffError,
    McpConnectionError,
    McpError,
    McpNotConnectedError,
    McpToolError,
    ModelAuthError,
    ModelCallError,
    ModelNotFoundError,
    ModelQuotaExhaustedError,
    ModelRateLimitError,
    ModelResponseError,
    ModelTransientError,
    SandboxUnavailableError,
)
from agent_runtime.items import (
    ConversationItem,
    RunResult,
    ToolCallRequest,
    user_input,
    user_text,
)
from agent_runtime.mcp_client import McpClient, McpConnectionState, RemoteTool
from agent_runtime.model import LiteLLMModel, ModelClient, ModelResponse
from agent_runtime.ports import (
    ActionKind,
    ActionRequest,
    CancellationToken,
    CommandConfirmation,
    ConfirmationPort,
    ItemSink,
    ReviewDecision,
    RunCancelled,
)
from agent_runtime.tool_registry import ToolDescriptor, ToolRegistry

__all__ = [
    "ActionKind",
    "ActionRequest",
    "AgentConfig",
    "AgentConfigError",
    "AgentError",
    "AgentLoop",
    "ApprovalGate",
    "ApprovalOutcome",
    "ApprovalPolicy",
    "CancellationToken",
    "CommandConfirmation",
    "ConfirmationPort",
    "ConversationItem",
    "DiffError",
    "FullAutoErrorMode",
    "ItemSink",
    "LiteLLMModel",
    "McpClient",
    "McpConnectionError",
    "McpConnectionState",
    "McpError",
    "McpNotConnectedError",
    "McpServerConfig",
    "McpToolError",
    "ModelAuthError",
    "ModelCallError",
    "ModelClient",
    "ModelNotFoundError",
    "ModelQuotaExhaustedError",
    "ModelRateLimitError",
    "ModelResponse",
    "ModelResponseError",
    "ModelTransientError",
    "PendingToolCall",
    "RemoteTool",
    "ReviewDecision",
    "RunCancelled",
    "RunResult",
    "SandboxUnavailableError",
    "ToolCallRequest",
    "ToolDescriptor",
    "ToolRegistry",
    "derive_command_key",
    "user_input",
    "user_text",
]
