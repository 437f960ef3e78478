"""Memory tools dispatched through the registry, the way the agent calls them."""

import asyncio

import pytest

from nekobot.agent.tools.memory import MemoryReplaceTool, MemorySearchTool, MemoryWriteTool
from nekobot.agent.tools.registry import ToolRegistry
from nekobot.utils.helpers import file_lock


@pytest.fixture
def registry(memory) -> ToolRegistry:
    reg = ToolRegistry()
    reg.register(MemoryWriteTool(memory))
    reg.register(MemoryReplaceTool(memory))
    reg.register(MemorySearchTool(memory, max_results=3))
    return reg


async def test_write_defaults_to_today(registry: ToolRegistry, memory) -> None:
    result = await registry.execute("memory_write", {"content": "met Bob"})
    assert result.ok
    assert "2026-03-14.md" in result.output
    assert "met Bob" in memory.read("today")


async def test_write_over_cap_warns_but_succeeds(registry: ToolRegistry, memory) -> None:
    result = await registry.execute(
        "memory_write", {"target": "core", "content": "x" * 250, "mode": "overwrite"}
    )
    assert result.ok
    assert "Warning: MEMORY.md is now 250/200 chars" in result.output
    assert memory.read("core") == "x" * 250


async def test_write_invalid_target(registry: ToolRegistry) -> None:
    result = await registry.execute("memory_write", {"target": "../../etc/passwd", "content": "x"})
    assert not result.ok
    assert result.error_kind == "InvalidTarget"
    assert str(result).startswith("Error[InvalidTarget]:")


async def test_write_bad_mode_rejected_by_schema(registry: ToolRegistry) -> None:
    result = await registry.execute("memory_write", {"content": "x", "mode": "prepend"})
    assert result.error_kind == "InvalidArguments"


async def test_replace_and_delete(registry: ToolRegistry, memory) -> None:
    memory.write("core", "- lives in Paris\n- old job\n", mode="overwrite")

    result = await registry.execute(
        "memory_replace", {"target": "core", "find": "Paris", "replace": "Lyon"}
    )
    assert result.ok
    assert result.output == "Replaced 1 match(es) in MEMORY.md."

    result = await registry.execute(
        "memory_replace", {"target": "core", "find": "- old job\n", "replace": ""}
    )
    assert result.output.startswith("Deleted 1 match(es)")
    assert memory.read("core") == "- lives in Lyon\n"


async def test_replace_not_found(registry: ToolRegistry, memory) -> None:
    memory.write("core", "abc\n", mode="overwrite")
    result = await registry.execute(
        "memory_replace", {"target": "core", "find": "xyz", "replace": ""}
    )
    assert result.error_kind == "NotFound"


async def test_replace_requires_replace_argument(registry: ToolRegistry) -> None:
    result = await registry.execute("memory_replace", {"target": "core", "find": "a"})
    assert result.error_kind == "InvalidArguments"
    assert "missing required replace" in result.output


async def test_search_formats_hits(registry: ToolRegistry, memory) -> None:
    memory.write("core", "coffee\ntea\ncoffee again\n", mode="overwrite")
    result = await registry.execute("memory_search", {"query": "coffee"})
    assert result.output.splitlines() == ["MEMORY.md:1: coffee", "MEMORY.md:3: coffee again"]


async def test_search_no_matches(registry: ToolRegistry) -> None:
    result = await registry.execute("memory_search", {"query": "unicorn"})
    assert result.ok
    assert result.output == "No matches for 'unicorn'."


async def test_search_uses_configured_limit(registry: ToolRegistry, memory) -> None:
    memory.write("core", "\n".join(["hit"] * 10), mode="overwrite")
    result = await registry.execute("memory_search", {"query": "hit"})
    assert len(result.output.splitlines()) == 3


async def test_search_invalid_regex(registry: ToolRegistry) -> None:
    result = await registry.execute("memory_search", {"query": "(", "regex": True})
    assert result.error_kind == "InvalidPattern"


async def test_write_waits_for_file_lock_without_blocking_loop(registry: ToolRegistry, memory) -> None:
    loop_ran = asyncio.Event()
    with file_lock(memory.memory_dir / ".locks" / "MEMORY.md.lock"):
        call = asyncio.create_task(
            registry.execute("memory_write", {"target": "core", "content": "- queued fact"})
        )
        asyncio.get_running_loop().call_later(0.05, loop_ran.set)
        await asyncio.wait_for(loop_ran.wait(), 1)
        await asyncio.sleep(0.1)
        assert not call.done()

    result = await asyncio.wait_for(call, 5)
    assert result.ok
    assert "- queued fact" in memory.read("core")
