"""Shell execution tool with security protections.

Security Features:
- Command blocklist: Blocks dangerous patterns (rm -rf, mkfs, pipe-to-shell...)
- Optional allowlist: Restricts to specific allowed commands
- Working directory fence: commands run inside the workspace

Note: This is a lightweight guard, NOT a sandbox. The registry enforces the
timeout while exec waits; on cancellation the child process is killed.
Commands still running after the yield window are handed to the
ProcessManager and keep running in the background.
"""

import asyncio
import re
import shlex
from pathlib import Path
from typing import Any

from loguru import logger

from nekobot.agent.tools.base import Tool, ToolContext
from nekobot.agent.tools.filesystem import validate_workspace_path
from nekobot.agent.tools.process import ProcessManager
from nekobot.errors import InvalidArgumentsError, ToolExecutionError


class ExecTool(Tool):
    """Tool to execute commands without a shell, with blocklist and allowlist."""

    # Dangerous command patterns (case-insensitive)
    DANGEROUS_PATTERNS = [
        r"rm\s+-rf",             # Recursive force delete
        r"rm\s+.*\s+-rf",        # rm with -rf anywhere
        r"mkfs\.",               # Format filesystem
        r"dd\s+if=.*of=/dev",    # Disk write operations
        r":\(\)\{\s*:\|:&\s*\};:",  # Fork bomb
        r"chmod\s+-R\s+777",     # Dangerous permission change
        r"chown\s+-R",           # Recursive ownership change
        r">\s*/dev/sd[a-z]",     # Direct disk write
        r"curl.*\|.*sh",         # Pipe to shell
        r"wget.*\|.*sh",         # Pipe to shell
        r"\bshutdown\b|\breboot\b",
    ]

    MAX_OUTPUT = 10000

    needs_context = True

    def __init__(
        self,
        timeout: float = 60,
        workspace: Path | None = None,
        allowed_commands: list[str] | None = None,
        enable_blocklist: bool = True,
        restrict_to_workspace: bool = True,
        processes: ProcessManager | None = None,
        yield_seconds: float = 10.0,
        background_timeout: float = 1800,
    ):
        self.timeout = timeout
        self.workspace = workspace
        self.allowed_commands = allowed_commands or None
        self.enable_blocklist = enable_blocklist
        self.restrict_to_workspace = restrict_to_workspace
        self.processes = processes or ProcessManager()
        self.yield_seconds = yield_seconds
        self.background_timeout = background_timeout

    @property
    def name(self) -> str:
        return "exec"

    @property
    def description(self) -> str:
        return (
            "Execute a command (no shell features such as pipes) and return its output. "
            f"Commands still running after {self.yield_seconds:g}s are moved to the background; "
            "use the process tool to poll, feed or kill them."
        )

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "command": {"type": "string", "minLength": 1, "maxLength": 2000,
                            "description": "The command to execute"},
                "working_dir": {"type": "string", "description": "Optional working directory, relative to the current directory"},
                "timeout": {"type": "integer", "minimum": 1,
                            "description": "Seconds a backgrounded command may run before it is killed"},
            },
            "required": ["command"],
        }

    def check_command(self, command: str) -> str | None:
        """Return a reason string if the command must not run."""
        if self.enable_blocklist:
            for pattern in self.DANGEROUS_PATTERNS:
                if re.search(pattern, command, re.IGNORECASE):
                    return f"Command blocked: matches dangerous pattern '{pattern}'"

        if self.allowed_commands:
            base_command = command.strip().split()[0] if command.strip() else ""
            if not any(base_command == allowed or base_command.startswith(allowed) for allowed in self.allowed_commands):
                return f"Command not in allowlist. Allowed: {', '.join(self.allowed_commands)}"
        return None

    async def execute(
        self,
        ctx: ToolContext,
        command: str,
        working_dir: str | None = None,
        timeout: int | None = None,
        **kwargs: Any,
    ) -> str:
        command = command.strip()
        logger.warning(f"Shell command execution attempt: {command[:100]}{'...' if len(command) > 100 else ''}")

        reason = self.check_command(command)
        if reason:
            raise InvalidArgumentsError(f"Security Error: {reason}")

        if working_dir:
            cwd = validate_workspace_path(working_dir, self.workspace, self.restrict_to_workspace, base=ctx.cwd)
        else:
            cwd = ctx.cwd or self.workspace or Path.cwd()

        try:
            args = shlex.split(command)
        except ValueError as e:
            raise InvalidArgumentsError(f"Could not parse command: {e}") from None
        if not args:
            raise InvalidArgumentsError("Empty command")

        try:
            proc = await self.processes.spawn(args, cwd, timeout or self.background_timeout)
        except (FileNotFoundError, PermissionError, NotADirectoryError) as e:
            raise ToolExecutionError(f"Cannot run {args[0]!r}: {e}") from None

        try:
            finished = await proc.wait(self.yield_seconds)
        except asyncio.CancelledError:
            # Timeout or shutdown: don't leave the child running.
            await proc.kill()
            raise

        if not finished:
            session_id = self.processes.background(proc)
            return (
                f"Command backgrounded as {session_id} (still running).\n"
                f"Use the process tool with action 'poll' and session_id '{session_id}' to check on it."
            )

        result = proc.read_new()
        if proc.exit_code != 0:
            result += f"\nExit code: {proc.exit_code}"
        result = result or "(no output)"
        if len(result) > self.MAX_OUTPUT:
            result = result[: self.MAX_OUTPUT] + f"\n... (truncated, {len(result) - self.MAX_OUTPUT} more chars)"
        return result
