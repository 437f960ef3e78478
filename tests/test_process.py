"""Exec backgrounding and the process tool."""

import sys

import pytest

from nekobot.agent.tools.process import EXITED_SESSION_TTL, ProcessManager, ProcessTool
from nekobot.agent.tools.registry import ToolRegistry
from nekobot.agent.tools.shell import ExecTool

PY = sys.executable


def _py(code: str) -> str:
    return f'{PY} -c "{code}"'


@pytest.fixture
async def manager():
    mgr = ProcessManager()
    yield mgr
    await mgr.shutdown()


@pytest.fixture
def registry(workspace, manager: ProcessManager) -> ToolRegistry:
    reg = ToolRegistry(default_timeout=10)
    reg.register(ExecTool(timeout=10, workspace=workspace, processes=manager, yield_seconds=0.5))
    reg.register(ProcessTool(manager))
    return reg


async def _background(registry: ToolRegistry, code: str, **params) -> str:
    result = await registry.execute("exec", {"command": _py(code), **params})
    assert result.ok, result.output
    assert result.output.startswith("Command backgrounded as bg_")
    return result.output.split()[3]


# ---------------------------------------------------------------------------
# Exec
# ---------------------------------------------------------------------------


async def test_quick_command_returns_inline(registry: ToolRegistry, manager: ProcessManager) -> None:
    result = await registry.execute("exec", {"command": _py("print('meow')")})
    assert result.output == "meow\n"
    assert manager.list_sessions() == []


async def test_stderr_lines_are_prefixed(registry: ToolRegistry) -> None:
    result = await registry.execute("exec", {"command": _py("import sys; print('hiss', file=sys.stderr)")})
    assert "[stderr] hiss" in result.output


async def test_slow_command_is_backgrounded_then_polled(registry: ToolRegistry, manager: ProcessManager) -> None:
    session_id = await _background(
        registry, "import time; print('start', flush=True); time.sleep(1.5); print('end')"
    )
    assert session_id == "bg_1"

    first = await registry.execute("process", {"action": "poll", "session_id": session_id})
    assert first.output.startswith("[still running]")
    assert "start" in first.output

    assert await manager.get(session_id).wait(10)
    second = await registry.execute("process", {"action": "poll", "session_id": session_id})
    assert second.output == "[exited with code 0]\nend\n"

    gone = await registry.execute("process", {"action": "poll", "session_id": session_id})
    assert gone.error_kind == "InvalidArguments"
    assert "not found" in gone.output


async def test_poll_without_new_output(registry: ToolRegistry) -> None:
    session_id = await _background(registry, "import time; time.sleep(5)")
    result = await registry.execute("process", {"action": "poll", "session_id": session_id})
    assert result.output == "[still running]\n(no new output)"


async def test_input_feeds_stdin(registry: ToolRegistry, manager: ProcessManager) -> None:
    session_id = await _background(registry, "import sys; print('got ' + sys.stdin.readline().strip())")

    result = await registry.execute("process", {"action": "input", "session_id": session_id, "data": "tuna"})
    assert result.output == "Input sent."

    assert await manager.get(session_id).wait(10)
    result = await registry.execute("process", {"action": "poll", "session_id": session_id})
    assert "got tuna" in result.output


async def test_input_eof_closes_stdin(registry: ToolRegistry, manager: ProcessManager) -> None:
    session_id = await _background(registry, "import sys; print(len(sys.stdin.read()))")

    result = await registry.execute(
        "process", {"action": "input", "session_id": session_id, "data": "ab", "eof": True}
    )
    assert result.output == "Input sent. stdin closed (EOF)."

    assert await manager.get(session_id).wait(10)
    result = await registry.execute("process", {"action": "poll", "session_id": session_id})
    assert result.output == "[exited with code 0]\n3\n"


async def test_list_and_kill(registry: ToolRegistry) -> None:
    session_id = await _background(registry, "import time; print('napping', flush=True); time.sleep(30)")

    listing = await registry.execute("process", {"action": "list"})
    assert listing.output.startswith(f"{session_id}: `")
    assert "running" in listing.output

    killed = await registry.execute("process", {"action": "kill", "session_id": session_id})
    assert killed.output.startswith(f"Session {session_id} killed.")
    assert "napping" in killed.output

    listing = await registry.execute("process", {"action": "list"})
    assert listing.output == "No background sessions."


async def test_background_timeout_kills_process(registry: ToolRegistry, manager: ProcessManager) -> None:
    session_id = await _background(registry, "import time; time.sleep(30)", timeout=1)
    proc = manager.get(session_id)
    assert await proc.wait(10)
    assert proc.exit_code != 0


async def test_action_requires_session_id(registry: ToolRegistry) -> None:
    result = await registry.execute("process", {"action": "poll"})
    assert result.error_kind == "InvalidArguments"


async def test_input_after_exit_is_refused(registry: ToolRegistry, manager: ProcessManager) -> None:
    session_id = await _background(registry, "import time; time.sleep(0.8)")
    assert await manager.get(session_id).wait(10)
    result = await registry.execute("process", {"action": "input", "session_id": session_id, "data": "x"})
    assert result.error_kind == "ExecutionError"


async def test_exited_sessions_expire(registry: ToolRegistry, manager: ProcessManager) -> None:
    session_id = await _background(registry, "import time; time.sleep(0.8)")
    proc = manager.get(session_id)
    assert await proc.wait(10)

    proc.exited_at -= EXITED_SESSION_TTL + 1
    assert manager.list_sessions() == []


async def test_timeout_while_waiting_kills_child(workspace, manager: ProcessManager) -> None:
    reg = ToolRegistry()
    reg.register(ExecTool(timeout=0.5, workspace=workspace, processes=manager, yield_seconds=5))
    result = await reg.execute("exec", {"command": _py("import time; time.sleep(30)")})
    assert result.error_kind == "ExecutionTimeout"
    assert manager.list_sessions() == []


async def test_shutdown_kills_running_sessions(registry: ToolRegistry, manager: ProcessManager) -> None:
    session_id = await _background(registry, "import time; time.sleep(30)")
    proc = manager.get(session_id)
    await manager.shutdown()
    assert proc.exit_code is not None
    assert manager.list_sessions() == []
