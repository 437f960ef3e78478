"""Tool registry for dynamic tool management."""

import asyncio
import time
from typing import Any

from loguru import logger

from nekobot.agent.tools.base import Tool, ToolContext, ToolResult
from nekobot.errors import (
    ExecutionTimeoutError,
    InvalidArgumentsError,
    NekobotError,
    ToolExecutionError,
    ToolNotFoundError,
)


class ToolRegistry:
    """
    Name -> tool mapping with a uniform dispatch contract.

    ``execute`` validates arguments against the tool's schema, runs it under
    a per-tool timeout and always returns a ``ToolResult``; it never raises
    for tool-level failures.
    """

    def __init__(self, default_timeout: float = 60.0):
        self._tools: dict[str, Tool] = {}
        self.default_timeout = default_timeout

    def register(self, tool: Tool) -> None:
        """Register a tool. A later registration with the same name wins."""
        if tool.name in self._tools:
            logger.warning(f"Tool '{tool.name}' re-registered, replacing previous")
        self._tools[tool.name] = tool

    def unregister(self, name: str) -> None:
        """Unregister a tool by name."""
        self._tools.pop(name, None)

    def get(self, name: str) -> Tool | None:
        """Get a tool by name."""
        return self._tools.get(name)

    def has(self, name: str) -> bool:
        """Check if a tool is registered."""
        return name in self._tools

    def get_definitions(self) -> list[dict[str, Any]]:
        """Get all tool definitions in OpenAI format."""
        return [tool.to_schema() for tool in self._tools.values()]

    def timeout_for(self, tool: Tool) -> float:
        return tool.timeout if tool.timeout is not None else self.default_timeout

    async def execute(
        self,
        name: str,
        params: dict[str, Any] | None,
        ctx: ToolContext | None = None,
    ) -> ToolResult:
        """Execute a tool by name with given parameters."""
        start = time.perf_counter()
        params = params or {}
        try:
            output = await self._dispatch(name, params, ctx)
            result = ToolResult(name=name, ok=True, output=output)
        except NekobotError as e:
            result = ToolResult(
                name=name, ok=False, output=str(e), error_kind=e.kind, retryable=e.retryable
            )
        except Exception as e:
            err = ToolExecutionError(f"{type(e).__name__}: {e}")
            result = ToolResult(name=name, ok=False, output=str(err), error_kind=err.kind)

        result.duration_ms = (time.perf_counter() - start) * 1000
        if result.ok:
            logger.debug(f"Tool {name} ok in {result.duration_ms:.0f}ms")
        else:
            logger.warning(f"Tool {name} failed [{result.error_kind}]: {result.output[:200]}")
        return result

    async def _dispatch(self, name: str, params: dict[str, Any], ctx: ToolContext | None) -> str:
        tool = self._tools.get(name)
        if not tool:
            raise ToolNotFoundError(f"Tool '{name}' not found")

        if not isinstance(params, dict):
            raise InvalidArgumentsError("Arguments must be a JSON object")
        errors = tool.validate_params(params)
        if errors:
            raise InvalidArgumentsError(f"Invalid parameters: {'; '.join(errors)}")

        if tool.needs_context:
            coro = tool.execute(ctx or ToolContext(), **params)
        else:
            coro = tool.execute(**params)

        timeout = self.timeout_for(tool)
        try:
            output = await asyncio.wait_for(coro, timeout=timeout)
        except asyncio.TimeoutError:
            raise ExecutionTimeoutError(f"Tool '{name}' timed out after {timeout:g}s") from None
        return output if isinstance(output, str) else str(output)

    @property
    def tool_names(self) -> list[str]:
        """Get list of registered tool names."""
        return list(self._tools.keys())

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools
