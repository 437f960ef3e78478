"""File system tools: read, write, list, cd."""

from pathlib import Path
from typing import Any

from loguru import logger

from nekobot.agent.tools.base import Tool, ToolContext
from nekobot.errors import InvalidArgumentsError, ToolExecutionError


class WorkspaceSecurityError(InvalidArgumentsError):
    """Raised when a path operation violates workspace boundaries."""


def validate_workspace_path(
    path_str: str,
    workspace: Path | None,
    restrict_to_workspace: bool = True,
    base: Path | None = None,
) -> Path:
    """
    Validate and resolve a path, ensuring it stays within the workspace.

    Relative paths are taken relative to ``base`` (the current directory set
    by ``cd``), or to the workspace when no base is given.

    Raises:
        WorkspaceSecurityError: If path escapes workspace boundaries
    """
    if not path_str or not path_str.strip():
        raise WorkspaceSecurityError("Empty path is not allowed")
    if "\x00" in path_str:
        raise WorkspaceSecurityError("Invalid characters in path")

    candidate = Path(path_str).expanduser()
    base = base or workspace
    if not candidate.is_absolute() and base is not None:
        candidate = base / candidate
    resolved = candidate.resolve()

    if not restrict_to_workspace:
        return resolved
    if workspace is None:
        raise WorkspaceSecurityError("Workspace not configured but restrict_to_workspace is enabled")

    workspace_resolved = workspace.resolve()
    try:
        resolved.relative_to(workspace_resolved)
    except ValueError:
        logger.warning(
            f"SECURITY: Path escape blocked - input={path_str!r} resolved={resolved} workspace={workspace_resolved}"
        )
        raise WorkspaceSecurityError("Access denied: path is outside the allowed workspace") from None
    return resolved


class _WorkspaceTool(Tool):
    needs_context = True

    def __init__(self, workspace: Path | None = None, restrict_to_workspace: bool = True):
        self.workspace = workspace
        self.restrict_to_workspace = restrict_to_workspace

    def _resolve(self, path: str, ctx: ToolContext) -> Path:
        return validate_workspace_path(path, self.workspace, self.restrict_to_workspace, base=ctx.cwd)


class ReadFileTool(_WorkspaceTool):
    """Tool to read file contents."""

    def __init__(self, workspace: Path | None = None, restrict_to_workspace: bool = True, max_chars: int = 100_000):
        super().__init__(workspace, restrict_to_workspace)
        self.max_chars = max_chars

    @property
    def name(self) -> str:
        return "read_file"

    @property
    def description(self) -> str:
        return "Read the contents of a file at the given path."

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "The file path to read"},
            },
            "required": ["path"],
        }

    async def execute(self, ctx: ToolContext, path: str, **kwargs: Any) -> str:
        file_path = self._resolve(path, ctx)
        if not file_path.exists():
            raise ToolExecutionError(f"File not found: {path}")
        if not file_path.is_file():
            raise ToolExecutionError(f"Not a file: {path}")
        try:
            content = file_path.read_text(encoding="utf-8")
        except PermissionError:
            raise ToolExecutionError(f"Permission denied: {path}") from None
        except UnicodeDecodeError:
            raise ToolExecutionError(f"Not a UTF-8 text file: {path}") from None

        if len(content) > self.max_chars:
            return content[: self.max_chars] + f"\n... (truncated, {len(content)} chars total)"
        return content


class WriteFileTool(_WorkspaceTool):
    """Tool to write content to a file. The memory directory is off limits."""

    @property
    def name(self) -> str:
        return "write_file"

    @property
    def description(self) -> str:
        return (
            "Write content to a file at the given path. Creates parent directories if needed. "
            "Use the memory_* tools for memory files."
        )

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "The file path to write to"},
                "content": {"type": "string", "description": "The content to write"},
            },
            "required": ["path", "content"],
        }

    async def execute(self, ctx: ToolContext, path: str, content: str, **kwargs: Any) -> str:
        file_path = self._resolve(path, ctx)
        if self.workspace is not None:
            memory_dir = (self.workspace / "memory").resolve()
            if file_path == memory_dir or memory_dir in file_path.parents:
                raise WorkspaceSecurityError("Memory files can only be changed with the memory_* tools")
        try:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            file_path.write_text(content, encoding="utf-8")
        except PermissionError:
            raise ToolExecutionError(f"Permission denied: {path}") from None
        return f"Successfully wrote {len(content)} chars to {path}"


class ListDirTool(_WorkspaceTool):
    """Tool to list directory contents."""

    @property
    def name(self) -> str:
        return "list_dir"

    @property
    def description(self) -> str:
        return "List the contents of a directory."

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "The directory path to list"},
            },
            "required": ["path"],
        }

    async def execute(self, ctx: ToolContext, path: str, **kwargs: Any) -> str:
        dir_path = self._resolve(path, ctx)
        if not dir_path.exists():
            raise ToolExecutionError(f"Directory not found: {path}")
        if not dir_path.is_dir():
            raise ToolExecutionError(f"Not a directory: {path}")

        items = []
        for item in sorted(dir_path.iterdir()):
            if item.name.startswith("."):
                continue
            prefix = "[DIR] " if item.is_dir() else "[FILE] "
            items.append(f"{prefix}{item.name}")

        if not items:
            return f"Directory {path} is empty"
        return "\n".join(items)


class CdTool(_WorkspaceTool):
    """Change the working directory used by later file and exec calls in this conversation."""

    @property
    def name(self) -> str:
        return "cd"

    @property
    def description(self) -> str:
        return (
            "Change the current working directory. Relative paths given to the file tools, "
            "exec and send_file resolve against it for the rest of the conversation."
        )

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Directory to change to, e.g. 'src' or '..'"},
            },
            "required": ["path"],
        }

    async def execute(self, ctx: ToolContext, path: str, **kwargs: Any) -> str:
        target = self._resolve(path, ctx)
        if not target.exists():
            raise ToolExecutionError(f"Directory not found: {path}")
        if not target.is_dir():
            raise ToolExecutionError(f"Not a directory: {path}")

        ctx.cwd = target
        shown = str(target)
        if self.workspace is not None:
            try:
                shown = target.relative_to(self.workspace.resolve()).as_posix()
            except ValueError:
                pass
        return f"Changed directory to {shown}"
