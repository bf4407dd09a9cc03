"""Remote tool client: one connection to one MCP server.

The MCP SDK's transports are anyio context managers that must be entered and
exited in the same task, so each client runs its session inside a dedicated
runner task. ``connect()`` starts the runner and waits until the session is
initialized; ``disconnect()`` signals it to unwind.

Usage:
    client = McpClient(McpServerConfig(name="calc", url="http://localhost:8000/mcp"))
    await client.connect()
    tools = await client.list_tools()
    result = await client.call_tool("add", {"num1": 5, "num2": 3})
    await client.disconnect()
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Protocol

from agent_runtime.config import McpServerConfig
from agent_runtime.errors import (
    McpConnectionError,
    McpNotConnectedError,
    McpToolError,
)

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT: float = 30.0
"""Seconds to wait for the transport handshake and session initialize."""


class McpConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


@dataclass(frozen=True)
class RemoteTool:
    """One capability advertised by a server."""

    name: str
    description: str = ""
    input_schema: dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Transports
# ---------------------------------------------------------------------------


class McpTransport(Protocol):
    """Creates an initialized ``ClientSession`` as an async context manager."""

    def session(self, config: McpServerConfig):  # -> AsyncContextManager[ClientSession]
        ...


class StreamableHttpTransport:
    """MCP over the streamable HTTP transport."""

    def session(self, config: McpServerConfig):
        @asynccontextmanager
        async def _cm() -> AsyncIterator[Any]:
            from mcp import ClientSession
            from mcp.client.streamable_http import streamablehttp_client

            async with streamablehttp_client(config.url, headers=config.headers) as (
                read_stream,
                write_stream,
                _get_session_id,
            ):
                async with ClientSession(read_stream, write_stream) as session:
                    await session.initialize()
                    yield session

        return _cm()


class SseTransport:
    """MCP over server-sent events."""

    def session(self, config: McpServerConfig):
        @asynccontextmanager
        async def _cm() -> AsyncIterator[Any]:
            from mcp import ClientSession
            from mcp.client.sse import sse_client

            async with sse_client(config.url, headers=config.headers) as (read_stream, write_stream):
                async with ClientSession(read_stream, write_stream) as session:
                    await session.initialize()
                    yield session

        return _cm()


def transport_for(config: McpServerConfig) -> McpTransport:
    if config.transport == "sse":
        return SseTransport()
    return StreamableHttpTransport()


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class McpClient:
    """Owns a single connection to one remote tool server."""

    def __init__(
        self,
        config: McpServerConfig,
        *,
        transport: McpTransport | None = None,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
    ) -> None:
        self.config = config
        self.transport = transport or transport_for(config)
        self.connect_timeout = connect_timeout
        self.state = McpConnectionState.DISCONNECTED
        self.last_error: Exception | None = None
        self._session: Any = None
        self._tools: list[RemoteTool] = []
        self._runner: asyncio.Task[None] | None = None
        self._stop: asyncio.Event | None = None
        logger.debug("McpClient: initializing for %s at %s", config.name, config.url)

    @property
    def server_name(self) -> str:
        return self.config.name

    @property
    def tools(self) -> list[RemoteTool]:
        """Capabilities cached by the last successful ``list_tools``."""
        return list(self._tools)

    def is_connected(self) -> bool:
        return self.state is McpConnectionState.CONNECTED and self._session is not None

    async def _run_session(self, ready: asyncio.Future[None], stop: asyncio.Event) -> None:
        try:
            async with self.transport.session(self.config) as session:
                self._session = session
                if not ready.done():
                    ready.set_result(None)
                await stop.wait()
        except Exception as exc:
            if not ready.done():
                ready.set_exception(exc)
            else:
                logger.error("McpClient: connection to %s dropped: %s", self.server_name, exc)
                self.last_error = exc
                self.state = McpConnectionState.FAILED
        finally:
            self._session = None

    async def connect(self) -> None:
        """Open the session. No-op when already connected."""
        if self.is_connected():
            logger.debug("McpClient: already connected to %s", self.server_name)
            return

        self.state = McpConnectionState.CONNECTING
        logger.info("McpClient: connecting to %s at %s", self.server_name, self.config.url)
        loop = asyncio.get_running_loop()
        ready: asyncio.Future[None] = loop.create_future()
        self._stop = asyncio.Event()
        self._runner = asyncio.create_task(
            self._run_session(ready, self._stop),
            name=f"mcp-session-{self.server_name}",
        )
        try:
            await asyncio.wait_for(asyncio.shield(ready), timeout=self.connect_timeout)
        except asyncio.CancelledError:
            await self._stop_runner(cancel=True)
            self.state = McpConnectionState.FAILED
            raise
        except Exception as exc:
            await self._stop_runner(cancel=True)
            if ready.done() and not ready.cancelled():
                ready.exception()
            self.state = McpConnectionState.FAILED
            self.last_error = exc
            if isinstance(exc, asyncio.TimeoutError):
                message = f"timed out after {self.connect_timeout:.0f}s"
            else:
                message = str(exc) or type(exc).__name__
            raise McpConnectionError(
                self.server_name,
                f"Failed to connect to {self.server_name}: {message}",
                original=exc,
            ) from exc

        self.state = McpConnectionState.CONNECTED
        self.last_error = None
        logger.info("McpClient: connected to %s", self.server_name)

    def _require_session(self) -> Any:
        if not self.is_connected():
            raise McpNotConnectedError(
                self.server_name,
                f"Not connected to {self.server_name}. Call connect() first.",
            )
        return self._session

    async def list_tools(self) -> list[RemoteTool]:
        """Fetch and cache the server's capability list."""
        session = self._require_session()
        try:
            result = await session.list_tools()
        except Exception as exc:
            raise McpToolError(
                self.server_name,
                f"Failed to list tools from {self.server_name}: {exc}",
                original=exc,
            ) from exc
        tools = [
            RemoteTool(
                name=tool.name,
                description=tool.description or "",
                input_schema=dict(tool.inputSchema or {}),
            )
            for tool in result.tools
        ]
        self._tools = tools
        logger.info("McpClient: found %d tools on %s", len(tools), self.server_name)
        return list(tools)

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> Any:
        """Invoke one capability. Raises on transport failure or ``isError``."""
        session = self._require_session()
        logger.debug("McpClient: calling %s on %s", name, self.server_name)
        try:
            result = await session.call_tool(name, arguments)
        except Exception as exc:
            raise McpToolError(
                self.server_name,
                f"Failed to call tool {name!r} on {self.server_name}: {exc}",
                original=exc,
            ) from exc
        if getattr(result, "isError", False):
            texts = [getattr(part, "text", str(part)) for part in (result.content or [])]
            raise McpToolError(
                self.server_name,
                f"Tool {name!r} on {self.server_name} returned an error: {' '.join(texts) or 'unknown error'}",
            )
        return result

    async def _stop_runner(self, cancel: bool = False) -> None:
        runner, self._runner = self._runner, None
        if self._stop is not None:
            self._stop.set()
        if runner is not None:
            if cancel:
                runner.cancel()
            await asyncio.gather(runner, return_exceptions=True)
        self._session = None

    async def mark_failed(self, error: Exception) -> None:
        """Drop the session after a post-connect failure (e.g. discovery)."""
        await self._stop_runner()
        self.last_error = error
        self.state = McpConnectionState.FAILED

    async def disconnect(self) -> None:
        """Release the connection. Safe to call repeatedly."""
        if self._runner is None and self._session is None:
            if self.state is not McpConnectionState.FAILED:
                self.state = McpConnectionState.DISCONNECTED
            logger.debug("McpClient: %s already disconnected", self.server_name)
            return
        logger.info("McpClient: disconnecting from %s", self.server_name)
        await self._stop_runner()
        self.state = McpConnectionState.DISCONNECTED
