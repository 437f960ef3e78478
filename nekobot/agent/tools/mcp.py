"""MCP (Model Context Protocol) tool adapter and lifecycle manager."""

from __future__ import annotations

import asyncio
import os
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable

import anyio
from loguru import logger
from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client
from mcp.shared.exceptions import McpError
from mcp.types import CONNECTION_CLOSED

from nekobot.agent.tools.base import Tool
from nekobot.config.schema import McpServerConfig
from nekobot.errors import ConnectionLostError, ProtocolError, ToolExecutionError

# Failures of the pipe to the server process, as opposed to errors the
# server reports. These warrant a reconnect.
TRANSPORT_ERRORS: tuple[type[BaseException], ...] = (
    anyio.ClosedResourceError,
    anyio.BrokenResourceError,
    anyio.EndOfStream,
    ConnectionError,
    EOFError,
)

Connector = Callable[[McpServerConfig], Any]  # -> async context manager yielding a session


@asynccontextmanager
async def stdio_session(cfg: McpServerConfig) -> AsyncIterator[ClientSession]:
    """Spawn the server process and perform the initialize handshake."""
    params = StdioServerParameters(
        command=cfg.command,
        args=cfg.args,
        env={**os.environ, **cfg.env} if cfg.env else None,
    )
    async with stdio_client(params) as (read_stream, write_stream):
        async with ClientSession(read_stream, write_stream) as session:
            await session.initialize()
            yield session


class _NotConnected(ConnectionError):
    pass


class MCPTool(Tool):
    """Wraps a single MCP server tool as a nekobot Tool."""

    def __init__(
        self,
        handle: _ServerHandle,
        tool_name: str,
        tool_description: str,
        input_schema: dict[str, Any],
    ):
        self._handle = handle
        self._tool_name = tool_name
        self._tool_description = tool_description
        self._input_schema = input_schema or {"type": "object", "properties": {}}
        self.timeout = handle.cfg.timeout

    @property
    def name(self) -> str:
        return f"mcp__{self._handle.name}__{self._tool_name}"

    @property
    def description(self) -> str:
        return f"[MCP:{self._handle.name}] {self._tool_description}"

    @property
    def parameters(self) -> dict[str, Any]:
        return self._input_schema

    async def execute(self, **kwargs: Any) -> str:
        generation = self._handle.generation
        try:
            return await self._call(kwargs)
        except TRANSPORT_ERRORS as e:
            logger.warning(f"MCP server '{self._handle.name}' connection lost ({e!r}), reconnecting")

        try:
            await self._handle.reconnect(generation)
            return await self._call(kwargs)
        except TRANSPORT_ERRORS as e:
            raise ConnectionLostError(
                f"MCP server '{self._handle.name}' unreachable after reconnect: {e!r}"
            ) from e
        except (ProtocolError, ToolExecutionError):
            raise
        except Exception as e:
            raise ConnectionLostError(f"MCP server '{self._handle.name}' failed to reconnect: {e}") from e

    async def _call(self, arguments: dict[str, Any]) -> str:
        session = self._handle.session
        if session is None:
            raise _NotConnected("not connected")
        try:
            result = await session.call_tool(self._tool_name, arguments)
        except McpError as e:
            if e.error.code == CONNECTION_CLOSED:
                # The SDK fails pending requests this way when the server process exits.
                raise _NotConnected(str(e)) from e
            raise ProtocolError(f"MCP {self._handle.name}/{self._tool_name}: {e}") from e

        parts: list[str] = []
        for item in getattr(result, "content", None) or []:
            text = getattr(item, "text", None)
            parts.append(text if text is not None else str(item))
        text = "\n".join(parts) if parts else "(empty result)"

        if getattr(result, "isError", False):
            raise ToolExecutionError(f"MCP {self._handle.name}/{self._tool_name}: {text}")
        return text


class _ServerHandle:
    """Holds the running state of one MCP server connection.

    Each connection runs in its own asyncio Task that keeps the ``async with``
    context managers alive for the lifetime of the connection.
    """

    def __init__(self, name: str, cfg: McpServerConfig, connector: Connector):
        self.name = name
        self.cfg = cfg
        self.task: asyncio.Task[None] | None = None
        self.session: Any = None
        self.tool_specs: list[Any] = []
        self.stop_event = asyncio.Event()
        self.generation = 0
        self._connector = connector
        self._lock = asyncio.Lock()

    async def connect(self) -> None:
        """Start the connection task and wait until tools are listed."""
        self.stop_event = asyncio.Event()
        ready: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self.task = asyncio.create_task(self._run(ready), name=f"mcp:{self.name}")
        try:
            await ready
        except BaseException:
            await self._cancel_task()
            raise
        self.generation += 1

    async def reconnect(self, seen_generation: int) -> None:
        """Reconnect unless another caller already did since ``seen_generation``."""
        async with self._lock:
            if self.generation != seen_generation and self.session is not None:
                return
            await self.close()
            await self.connect()
            logger.info(f"MCP server '{self.name}' reconnected")

    async def close(self) -> None:
        self.stop_event.set()
        if self.task and not self.task.done():
            try:
                await asyncio.wait_for(asyncio.shield(self.task), timeout=5)
            except asyncio.TimeoutError:
                await self._cancel_task()
        self.task = None
        self.session = None

    async def _cancel_task(self) -> None:
        if self.task and not self.task.done():
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass

    async def _run(self, ready: asyncio.Future[None]) -> None:
        try:
            async with self._connector(self.cfg) as session:
                result = await session.list_tools()
                self.tool_specs = list(result.tools)
                self.session = session
                if not ready.done():
                    ready.set_result(None)
                # Keep connection alive until stop is requested
                await self.stop_event.wait()
        except Exception as e:
            if not ready.done():
                ready.set_exception(e)
            else:
                logger.warning(f"MCP server '{self.name}' connection lost: {e}")
        finally:
            self.session = None
            if not ready.done():
                ready.cancel()


class MCPManager:
    """Manages the lifecycle of MCP server connections."""

    def __init__(self, servers: dict[str, McpServerConfig | dict[str, Any]], connector: Connector = stdio_session):
        self._configs: dict[str, McpServerConfig] = {}
        for name, cfg in servers.items():
            sc = cfg if isinstance(cfg, McpServerConfig) else McpServerConfig(**cfg)
            if sc.enabled:
                self._configs[name] = sc
        self._connector = connector
        self._handles: list[_ServerHandle] = []

    @property
    def server_names(self) -> list[str]:
        return [h.name for h in self._handles]

    async def start(self) -> list[MCPTool]:
        """Connect to all configured MCP servers and wrap their tools. Failed servers are skipped."""
        all_tools: list[MCPTool] = []
        for name, cfg in self._configs.items():
            handle = _ServerHandle(name, cfg, self._connector)
            try:
                await handle.connect()
            except Exception as e:
                logger.error(f"MCP server '{name}' failed to connect: {e}")
                continue

            self._handles.append(handle)
            tools = [
                MCPTool(
                    handle,
                    tool_name=t.name,
                    tool_description=getattr(t, "description", None) or t.name,
                    input_schema=getattr(t, "inputSchema", None) or {"type": "object", "properties": {}},
                )
                for t in handle.tool_specs
            ]
            all_tools.extend(tools)
            logger.info(f"MCP server '{name}': {len(tools)} tools discovered")
        return all_tools

    async def stop(self) -> None:
        """Signal all server tasks to stop and wait for them."""
        for handle in reversed(self._handles):
            await handle.close()
        self._handles.clear()
