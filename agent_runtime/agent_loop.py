"""Agent loop: model turns, tool dispatch, remote tool servers.

Each ``run`` alternates between a model request (instructions + history +
the current tool registry snapshot) and concurrent dispatch of the tool
calls the model issued, until the model answers without tool calls.

Usage:
    loop = AgentLoop(
        AgentConfig.from_env(mcp_servers=(McpServerConfig(name="calc", url=...),)),
        confirmation=my_ui,
        sink=my_ui,
    )
    result = await loop.run([user_text("What is 5 + 3?")])
    await loop.terminate()
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Sequence

from agent_runtime.approvals import ApprovalGate, rejection_message, remote_tool_action
from agent_runtime.config import AgentConfig, McpServerConfig
from agent_runtime.errors import AgentConfigError, AgentError
from agent_runtime.exec import ExecInput, SandboxedExecutor
from agent_runtime.handle_exec import handle_exec_command
from agent_runtime.items import (
    ConversationItem,
    RunResult,
    ToolCallRequest,
    error_content,
    serialize_tool_output,
    tool_result,
    user_text,
)
from agent_runtime.mcp_client import McpClient, RemoteTool
from agent_runtime.model import LiteLLMModel, ModelClient
from agent_runtime.ports import CancellationToken, ConfirmationPort, ItemSink, RunCancelled
from agent_runtime.tool_registry import (
    NativeCommand,
    RemoteToolCall,
    ToolRegistry,
    ToolTarget,
    UnresolvedTool,
    parse_tool_name,
)

logger = logging.getLogger(__name__)

CANCELLED_RESULT = "Tool call aborted: the run was cancelled."


# ---------------------------------------------------------------------------
# Data
# ---------------------------------------------------------------------------


@dataclass
class PendingToolCall:
    """One tool call awaiting its result, resolved once from the model's request."""

    call_id: str
    name: str
    target: ToolTarget
    arguments: dict[str, Any] = field(default_factory=dict)
    decode_error: str | None = None

    @classmethod
    def from_request(cls, request: ToolCallRequest) -> "PendingToolCall":
        pending = cls(call_id=request.id, name=request.name, target=parse_tool_name(request.name))
        raw = request.arguments.strip() if request.arguments else ""
        if not raw:
            return pending
        try:
            decoded = json.loads(raw)
        except json.JSONDecodeError as exc:
            logger.error("Failed to parse tool call arguments for %s: %s", request.name, raw[:200])
            pending.decode_error = f"Invalid JSON arguments: {exc}"
            return pending
        if not isinstance(decoded, dict):
            pending.decode_error = f"Tool arguments must be a JSON object, got {type(decoded).__name__}"
            return pending
        pending.arguments = decoded
        return pending


@dataclass
class ToolOutcome:
    content: str
    additional_items: list[ConversationItem] = field(default_factory=list)
    abort: bool = False


def _truncate(text: str, max_length: int) -> str:
    """Truncate text if it exceeds max_length, appending a notice."""
    if len(text) <= max_length:
        return text
    return text[:max_length] + f"\n... [truncated at {max_length} chars]"


def _decode_shell_args(arguments: dict[str, Any]) -> ExecInput:
    command = arguments.get("command", arguments.get("cmd"))
    if isinstance(command, str):
        cmd: tuple[str, ...] = (command,)
    elif isinstance(command, list) and command and all(isinstance(part, str) for part in command):
        cmd = tuple(command)
    else:
        raise ValueError("'command' must be a non-empty list of strings")

    workdir = arguments.get("workdir")
    if workdir is not None and not isinstance(workdir, str):
        raise ValueError("'workdir' must be a string")

    timeout = arguments.get("timeout")
    if timeout is not None:
        if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
            raise ValueError("'timeout' must be a positive number of milliseconds")
        timeout = int(timeout)
    return ExecInput(cmd=cmd, workdir=workdir or None, timeout_ms=timeout)


# ---------------------------------------------------------------------------
# Loop
# ---------------------------------------------------------------------------


class AgentLoop:
    """Drives one conversation. Not safe for concurrent ``run`` calls."""

    def __init__(
        self,
        config: AgentConfig,
        confirmation: ConfirmationPort,
        sink: ItemSink,
        *,
        on_loading: Callable[[bool], None] | None = None,
        model_client: ModelClient | None = None,
        client_factory: Callable[[McpServerConfig], Any] | None = None,
        executor: SandboxedExecutor | None = None,
    ) -> None:
        self.config = config
        self.sink = sink
        self.on_loading = on_loading
        self.model = model_client or LiteLLMModel(config)
        self.executor = executor or SandboxedExecutor(
            writable_roots=config.writable_roots,
            container_wrapper=config.container_wrapper,
            default_timeout_ms=config.default_command_timeout_ms,
            max_output_bytes=config.max_output_bytes,
        )
        self.gate = ApprovalGate(config.approval_policy, confirmation)
        self.diagnostics: list[str] = []

        names = [server.name for server in config.mcp_servers]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise AgentConfigError(f"Duplicate MCP server names: {', '.join(duplicates)}")

        factory = client_factory or self._default_client
        self._clients: dict[str, Any] = {}
        for server in config.enabled_servers:
            self._clients[server.name] = factory(server)
        skipped = len(config.mcp_servers) - len(self._clients)
        if skipped:
            logger.info("Skipping %d disabled MCP server(s)", skipped)

        self._discovered: dict[str, list[RemoteTool]] = {}
        self._registry = ToolRegistry(self._clients, self._discovered)
        self._history: list[ConversationItem] = []
        self._active: CancellationToken | None = None
        self._terminated = False
        self._init_task: asyncio.Task[None] | None = None
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        if loop is not None and self._clients:
            self._init_task = loop.create_task(self._connect_all(), name="agent-loop-init")

    def _default_client(self, server: McpServerConfig) -> McpClient:
        return McpClient(server, connect_timeout=self.config.mcp_init_timeout)

    @property
    def clients(self) -> dict[str, Any]:
        return dict(self._clients)

    @property
    def history(self) -> tuple[ConversationItem, ...]:
        return tuple(self._history)

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    # -- lifecycle ---------------------------------------------------------

    async def initialize(self) -> None:
        """Connect every client and discover tools. Idempotent."""
        if self._init_task is None:
            self._init_task = asyncio.ensure_future(self._connect_all())
        await asyncio.shield(self._init_task)

    async def _connect_one(self, name: str, client: Any) -> None:
        try:
            await client.connect()
            tools = await client.list_tools()
        except Exception as exc:
            logger.error("Failed to connect to MCP server %s: %s", name, exc)
            self.diagnostics.append(f"{name}: {exc}")
            await client.mark_failed(exc)
            return
        self._discovered[name] = list(tools)

    async def _connect_all(self) -> None:
        if not self._clients:
            return
        await asyncio.gather(*(self._connect_one(name, client) for name, client in self._clients.items()))
        connected = [name for name, client in self._clients.items() if client.is_connected()]
        logger.info(
            "Agent loop: %d tools from %d/%d servers",
            sum(len(self._discovered.get(name, [])) for name in connected),
            len(connected),
            len(self._clients),
        )

    async def terminate(self) -> None:
        """Cancel any active run, disconnect every client once, clear history."""
        if self._terminated:
            return
        self._terminated = True
        if self._active is not None:
            self._active.cancel()
        if self._init_task is not None and not self._init_task.done():
            self._init_task.cancel()
            await asyncio.gather(self._init_task, return_exceptions=True)
        for name, client in self._clients.items():
            try:
                await client.disconnect()
            except Exception as exc:
                logger.error("Failed to disconnect from MCP server %s: %s", name, exc)
        self._history.clear()
        logger.info("Agent loop terminated")

    async def __aenter__(self) -> "AgentLoop":
        await self.initialize()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.terminate()

    # -- run ---------------------------------------------------------------

    def _set_loading(self, loading: bool) -> None:
        if self.on_loading is not None:
            self.on_loading(loading)

    def _record(self, item: ConversationItem, result: RunResult) -> None:
        self._history.append(item)
        result.items.append(item)
        self.sink.emit(item)

    def _messages(self) -> list[dict[str, Any]]:
        messages: list[dict[str, Any]] = []
        if self.config.instructions:
            messages.append({"role": "system", "content": self.config.instructions})
        messages.extend(item.to_message() for item in self._history)
        return messages

    async def run(
        self,
        inputs: Sequence[ConversationItem],
        cancel: CancellationToken | None = None,
    ) -> RunResult:
        """Run until the model stops calling tools, the user aborts, or ``cancel`` fires.

        Raises:
            ModelCallError: the model request failed after retries
            AgentError: the loop was already terminated
        """
        if self._terminated:
            raise AgentError("AgentLoop has been terminated")
        token = cancel or CancellationToken()
        self._active = token
        result = RunResult()
        try:
            await token.guard(self.initialize())
            self._history.extend(inputs)
            while True:
                if self.config.max_turns is not None and result.turns >= self.config.max_turns:
                    logger.warning("Agent loop: max_turns=%d reached", self.config.max_turns)
                    break
                token.raise_if_cancelled()
                tools = self._registry.openai_tools()
                self._set_loading(True)
                try:
                    response = await token.guard(self.model.complete(self._messages(), tools))
                finally:
                    self._set_loading(False)
                result.turns += 1
                self._record(response.to_item(), result)
                if not response.tool_calls:
                    break

                logger.info("Turn %d: %d tool call(s)", result.turns, len(response.tool_calls))
                if await self._dispatch(response.tool_calls, token, result):
                    result.aborted = True
                    logger.info("Run aborted by user after turn %d", result.turns)
                    break
        except RunCancelled:
            result.cancelled = True
            logger.info("Run cancelled after %d turn(s)", result.turns)
        finally:
            self._active = None
        return result

    async def _dispatch(
        self,
        requests: Sequence[ToolCallRequest],
        token: CancellationToken,
        result: RunResult,
    ) -> bool:
        """Resolve every call concurrently; append results in request order.

        Returns True when a rejection asked to end the run. Raises
        ``RunCancelled`` after recording whatever completed.
        """
        pending = [PendingToolCall.from_request(request) for request in requests]
        outcomes = await asyncio.gather(
            *(token.guard(self._handle(call, token)) for call in pending),
            return_exceptions=True,
        )

        cancelled = False
        abort = False
        notes: list[ConversationItem] = []
        for call, outcome in zip(pending, outcomes):
            if isinstance(outcome, (RunCancelled, asyncio.CancelledError)):
                cancelled = True
                self._record(tool_result(call.call_id, error_content(CANCELLED_RESULT)), result)
                continue
            if isinstance(outcome, BaseException):
                raise outcome
            self._record(tool_result(call.call_id, outcome.content), result)
            notes.extend(outcome.additional_items)
            abort = abort or outcome.abort
        for note in notes:
            self._record(note, result)
        if cancelled:
            raise RunCancelled()
        return abort

    async def _handle(self, call: PendingToolCall, token: CancellationToken) -> ToolOutcome:
        if call.decode_error is not None:
            return ToolOutcome(error_content(call.decode_error))
        target = call.target
        if isinstance(target, UnresolvedTool):
            logger.warning("Unresolved tool call %r: %s", call.name, target.reason)
            return ToolOutcome(error_content(target.reason))
        try:
            if isinstance(target, NativeCommand):
                return await self._handle_native(call, token)
            return await self._handle_remote(call, target, token)
        except RunCancelled:
            raise
        except Exception as exc:
            logger.exception("Tool call %s failed", call.name)
            return ToolOutcome(error_content(f"{type(exc).__name__}: {exc}"))

    async def _handle_native(self, call: PendingToolCall, token: CancellationToken) -> ToolOutcome:
        try:
            exec_input = _decode_shell_args(call.arguments)
        except ValueError as exc:
            return ToolOutcome(error_content(f"Invalid shell arguments: {exc}"))
        handled = await handle_exec_command(
            exec_input,
            config=self.config,
            gate=self.gate,
            executor=self.executor,
            cancel=token,
        )
        return ToolOutcome(handled.content, handled.additional_items, handled.abort)

    async def _handle_remote(
        self,
        call: PendingToolCall,
        target: RemoteToolCall,
        token: CancellationToken,
    ) -> ToolOutcome:
        client = self._clients.get(target.server)
        if client is None or not client.is_connected():
            return ToolOutcome(error_content(f"MCP client {target.server} not found or not connected."))
        known = {tool.name for tool in self._discovered.get(target.server, [])}
        if target.tool not in known:
            return ToolOutcome(error_content(f"Unknown tool {target.tool!r} on MCP server {target.server}."))

        action = remote_tool_action(target.server, target.tool, call.arguments)
        outcome = await self.gate.review(action)
        if not outcome.approved:
            note = outcome.deny_note()
            return ToolOutcome(
                error_content(rejection_message(action)),
                [user_text(note)] if note else [],
                outcome.abort,
            )

        try:
            response = await token.guard(client.call_tool(target.tool, call.arguments))
        except RunCancelled:
            raise
        except Exception as exc:
            logger.warning("MCP tool %s failed: %s", call.name, exc)
            return ToolOutcome(error_content(f"Failed to call MCP tool {call.name}: {exc}"))
        return ToolOutcome(_truncate(serialize_tool_output(response), self.config.tool_result_max_length))
