"""Agent tools module."""

from nekobot.agent.tools.base import Tool, ToolContext, ToolResult
from nekobot.agent.tools.cron import CronManageTool
from nekobot.agent.tools.filesystem import CdTool, ListDirTool, ReadFileTool, WriteFileTool
from nekobot.agent.tools.memory import MemoryReplaceTool, MemorySearchTool, MemoryWriteTool
from nekobot.agent.tools.message import SendFileTool
from nekobot.agent.tools.process import ProcessManager, ProcessTool
from nekobot.agent.tools.registry import ToolRegistry
from nekobot.agent.tools.shell import ExecTool
from nekobot.agent.tools.web import HttpRequestTool
from nekobot.config.schema import Config
from nekobot.cron.store import JobStore
from nekobot.memory.store import MemoryStore

__all__ = [
    "Tool",
    "ToolContext",
    "ToolResult",
    "ToolRegistry",
    "build_default_registry",
]


def build_default_registry(
    config: Config,
    memory: MemoryStore,
    jobs: JobStore,
    processes: ProcessManager | None = None,
) -> ToolRegistry:
    """Register every built-in tool. MCP tools are added by the gateway once servers connect."""
    workspace = config.workspace_path
    restrict = config.tools.restrict_to_workspace
    tools = ToolRegistry(default_timeout=config.tools.timeout)
    processes = processes or ProcessManager()

    tools.register(ReadFileTool(workspace=workspace, restrict_to_workspace=restrict))
    tools.register(WriteFileTool(workspace=workspace, restrict_to_workspace=restrict))
    tools.register(ListDirTool(workspace=workspace, restrict_to_workspace=restrict))
    tools.register(CdTool(workspace=workspace, restrict_to_workspace=restrict))
    tools.register(SendFileTool(workspace=workspace, restrict_to_workspace=restrict))

    exec_config = config.tools.exec
    tools.register(ExecTool(
        timeout=exec_config.timeout,
        workspace=workspace,
        allowed_commands=exec_config.allowed_commands,
        enable_blocklist=exec_config.enable_blocklist,
        restrict_to_workspace=restrict,
        processes=processes,
        yield_seconds=exec_config.yield_seconds,
        background_timeout=exec_config.background_timeout,
    ))
    tools.register(ProcessTool(processes))
    tools.register(HttpRequestTool(
        allowed_domains=config.tools.http.allowed_domains,
        max_chars=config.tools.http.max_chars,
        timeout=config.tools.http.timeout,
    ))

    tools.register(MemoryWriteTool(memory))
    tools.register(MemoryReplaceTool(memory))
    tools.register(MemorySearchTool(memory, max_results=config.memory.search_max_results))

    tools.register(CronManageTool(jobs))
    return tools
