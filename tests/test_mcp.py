"""MCP tool adapter, driven by an in-process fake server session."""

from contextlib import asynccontextmanager
from types import SimpleNamespace
from typing import Any

import anyio
import pytest
from mcp.shared.exceptions import McpError
from mcp.types import CONNECTION_CLOSED, ErrorData

from nekobot.agent.tools.mcp import MCPManager
from nekobot.agent.tools.registry import ToolRegistry
from nekobot.config.schema import McpServerConfig


class FakeSession:
    def __init__(self, behaviour: dict[str, Any]):
        self.behaviour = behaviour
        self.calls: list[tuple[str, dict]] = []

    async def list_tools(self):
        return SimpleNamespace(tools=[
            SimpleNamespace(
                name="add",
                description="Add two numbers",
                inputSchema={
                    "type": "object",
                    "properties": {"a": {"type": "integer"}, "b": {"type": "integer"}},
                    "required": ["a", "b"],
                },
            ),
            SimpleNamespace(name="fail", description=None, inputSchema=None),
        ])

    async def call_tool(self, name: str, arguments: dict):
        self.calls.append((name, arguments))
        action = self.behaviour.get(name)
        if isinstance(action, BaseException):
            raise action
        if name == "fail":
            return SimpleNamespace(content=[SimpleNamespace(text="division by zero")], isError=True)
        return SimpleNamespace(content=[SimpleNamespace(text=str(arguments["a"] + arguments["b"]))], isError=False)


class FakeConnector:
    """Each connect yields the next scripted session; ``None`` means the spawn fails."""

    def __init__(self, sessions: list[FakeSession | None]):
        self.sessions = sessions
        self.connects = 0
        self.closed = 0

    @asynccontextmanager
    async def __call__(self, cfg: McpServerConfig):
        self.connects += 1
        session = self.sessions.pop(0) if self.sessions else None
        if session is None:
            raise ConnectionError("spawn failed")
        try:
            yield session
        finally:
            self.closed += 1


async def _registry(connector: FakeConnector, **servers: dict) -> tuple[ToolRegistry, MCPManager]:
    manager = MCPManager(servers or {"calc": {"command": "calc-server"}}, connector=connector)
    reg = ToolRegistry(default_timeout=5)
    for tool in await manager.start():
        reg.register(tool)
    return reg, manager


async def test_discovered_tools_are_namespaced() -> None:
    connector = FakeConnector([FakeSession({})])
    reg, manager = await _registry(connector)
    try:
        assert sorted(reg.tool_names) == ["mcp__calc__add", "mcp__calc__fail"]
        schema = reg.get("mcp__calc__fail").to_schema()["function"]
        assert schema["parameters"] == {"type": "object", "properties": {}}
        assert schema["description"] == "[MCP:calc] fail"
    finally:
        await manager.stop()
    assert connector.closed == 1


async def test_call_through_registry() -> None:
    reg, manager = await _registry(FakeConnector([FakeSession({})]))
    try:
        result = await reg.execute("mcp__calc__add", {"a": 2, "b": 3})
        assert result.ok
        assert result.output == "5"

        result = await reg.execute("mcp__calc__add", {"a": "2", "b": 3})
        assert result.error_kind == "InvalidArguments"
    finally:
        await manager.stop()


async def test_is_error_result_maps_to_execution_error() -> None:
    reg, manager = await _registry(FakeConnector([FakeSession({})]))
    try:
        result = await reg.execute("mcp__calc__fail", {})
        assert result.error_kind == "ExecutionError"
        assert "division by zero" in result.output
    finally:
        await manager.stop()


async def test_jsonrpc_error_maps_to_protocol_error() -> None:
    err = McpError(ErrorData(code=-32602, message="Invalid params"))
    reg, manager = await _registry(FakeConnector([FakeSession({"add": err})]))
    try:
        result = await reg.execute("mcp__calc__add", {"a": 1, "b": 1})
        assert result.error_kind == "ProtocolError"
        assert result.retryable is False
    finally:
        await manager.stop()


async def test_transport_failure_reconnects_once() -> None:
    broken = FakeSession({"add": anyio.ClosedResourceError()})
    healthy = FakeSession({})
    connector = FakeConnector([broken, healthy])
    reg, manager = await _registry(connector)
    try:
        result = await reg.execute("mcp__calc__add", {"a": 1, "b": 2})
        assert result.ok
        assert result.output == "3"
        assert connector.connects == 2
        assert len(broken.calls) == 1 and len(healthy.calls) == 1
    finally:
        await manager.stop()


async def test_transport_failure_after_reconnect_is_connection_lost() -> None:
    connector = FakeConnector([
        FakeSession({"add": anyio.BrokenResourceError()}),
        FakeSession({"add": anyio.EndOfStream()}),
    ])
    reg, manager = await _registry(connector)
    try:
        result = await reg.execute("mcp__calc__add", {"a": 1, "b": 2})
        assert result.error_kind == "ConnectionLost"
        assert result.retryable is True
    finally:
        await manager.stop()


async def test_reconnect_spawn_failure_is_connection_lost() -> None:
    connector = FakeConnector([FakeSession({"add": ConnectionResetError()}), None])
    reg, manager = await _registry(connector)
    try:
        result = await reg.execute("mcp__calc__add", {"a": 1, "b": 2})
        assert result.error_kind == "ConnectionLost"
    finally:
        await manager.stop()


async def test_failed_server_is_skipped_and_disabled_servers_ignored() -> None:
    connector = FakeConnector([None, FakeSession({})])
    reg, manager = await _registry(
        connector,
        broken={"command": "nope"},
        off={"command": "x", "enabled": False},
        calc={"command": "calc-server"},
    )
    try:
        assert manager.server_names == ["calc"]
        assert "mcp__calc__add" in reg
        assert connector.connects == 2
    finally:
        await manager.stop()


@pytest.mark.parametrize("timeout, expected", [(None, 5), (0.5, 0.5)])
async def test_per_server_timeout(timeout, expected) -> None:
    reg, manager = await _registry(FakeConnector([FakeSession({})]), calc={"command": "c", "timeout": timeout})
    try:
        assert reg.timeout_for(reg.get("mcp__calc__add")) == expected
    finally:
        await manager.stop()


def _closed() -> McpError:
    return McpError(ErrorData(code=CONNECTION_CLOSED, message="Connection closed"))


async def test_server_exit_reconnects_instead_of_protocol_error() -> None:
    dead = FakeSession({"add": _closed()})
    restarted = FakeSession({})
    connector = FakeConnector([dead, restarted])
    reg, manager = await _registry(connector)
    try:
        result = await reg.execute("mcp__calc__add", {"a": 4, "b": 5})
        assert result.ok
        assert result.output == "9"
        assert connector.connects == 2
    finally:
        await manager.stop()


async def test_server_exit_twice_is_connection_lost() -> None:
    connector = FakeConnector([FakeSession({"add": _closed()}), FakeSession({"add": _closed()})])
    reg, manager = await _registry(connector)
    try:
        result = await reg.execute("mcp__calc__add", {"a": 1, "b": 2})
        assert result.error_kind == "ConnectionLost"
        assert result.retryable is True
    finally:
        await manager.stop()
