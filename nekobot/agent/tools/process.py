"""Background processes started by ``exec`` and the ``process`` tool that manages them.

A command that is still running when exec's yield window closes keeps running
as a background session (``bg_1``, ``bg_2``, ...). Its combined output is
buffered (stderr lines prefixed with ``[stderr] ``) so the agent can poll it
later, write to its stdin, or kill it.
"""

import asyncio
import itertools
import time
from pathlib import Path
from typing import Any

from loguru import logger

from nekobot.agent.tools.base import Tool
from nekobot.errors import InvalidArgumentsError, ToolExecutionError

MAX_BUFFER_CHARS = 1_048_576
EXITED_SESSION_TTL = 300  # seconds an exited, unpolled session is kept
STREAM_LIMIT = 1_048_576  # longest single line the readers accept


class BackgroundProcess:
    """One child process plus its buffered output."""

    def __init__(self, command: str, process: asyncio.subprocess.Process, timeout: float | None = None):
        self.id: str | None = None
        self.command = command
        self.process = process
        self.started_at = time.monotonic()
        self.exited_at: float | None = None

        self._buffer = ""
        self._cursor = 0
        self._readers = [
            asyncio.create_task(self._pump(process.stdout, "")),
            asyncio.create_task(self._pump(process.stderr, "[stderr] ")),
        ]
        self._waiter = asyncio.create_task(self._wait(timeout))

    async def _pump(self, stream: asyncio.StreamReader | None, prefix: str) -> None:
        if stream is None:
            return
        async for line in stream:
            self._append(prefix + line.decode("utf-8", errors="replace"))

    async def _wait(self, timeout: float | None) -> int:
        try:
            await asyncio.wait_for(self.process.wait(), timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Process {self.id or self.command[:40]}: killed after {timeout:g}s")
            self._kill()
            await self.process.wait()
        await asyncio.gather(*self._readers, return_exceptions=True)
        self.exited_at = time.monotonic()
        return self.process.returncode

    def _append(self, text: str) -> None:
        self._buffer += text
        overflow = len(self._buffer) - MAX_BUFFER_CHARS
        if overflow > 0:
            self._buffer = self._buffer[overflow:]
            self._cursor = max(0, self._cursor - overflow)

    def _kill(self) -> None:
        if self.process.returncode is None:
            try:
                self.process.kill()
            except ProcessLookupError:
                pass

    @property
    def exit_code(self) -> int | None:
        """Exit status once the process and its output readers are finished."""
        return self.process.returncode if self._waiter.done() else None

    @property
    def elapsed(self) -> float:
        return (self.exited_at or time.monotonic()) - self.started_at

    async def wait(self, timeout: float | None = None) -> bool:
        """Wait up to ``timeout`` seconds for exit. Returns True once exited."""
        try:
            await asyncio.wait_for(asyncio.shield(self._waiter), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    def read_new(self) -> str:
        """Output appended since the previous call."""
        out = self._buffer[self._cursor:]
        self._cursor = len(self._buffer)
        return out

    async def write_stdin(self, data: str | None, eof: bool = False) -> None:
        stdin = self.process.stdin
        if stdin is None or stdin.is_closing():
            raise ToolExecutionError("stdin is closed")
        try:
            if data is not None:
                stdin.write((data + "\n").encode("utf-8"))
                await stdin.drain()
            if eof:
                stdin.close()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise ToolExecutionError(f"stdin write failed: {e}") from None

    async def kill(self) -> None:
        self._kill()
        await asyncio.shield(self._waiter)


class ProcessManager:
    """Owns every backgrounded exec session for the life of the gateway."""

    def __init__(self):
        self._sessions: dict[str, BackgroundProcess] = {}
        self._ids = itertools.count(1)

    async def spawn(
        self, args: list[str], cwd: Path, timeout: float | None = None
    ) -> BackgroundProcess:
        """Start ``args`` with piped stdio. Not registered until ``background`` is called."""
        process = await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd),
            limit=STREAM_LIMIT,
        )
        return BackgroundProcess(" ".join(args), process, timeout)

    def background(self, proc: BackgroundProcess) -> str:
        self.cleanup()
        proc.id = f"bg_{next(self._ids)}"
        self._sessions[proc.id] = proc
        logger.info(f"Process: '{proc.command[:80]}' backgrounded as {proc.id}")
        return proc.id

    def get(self, session_id: str) -> BackgroundProcess:
        proc = self._sessions.get(session_id)
        if proc is None:
            raise InvalidArgumentsError(f"Session '{session_id}' not found")
        return proc

    def remove(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)

    def list_sessions(self) -> list[BackgroundProcess]:
        self.cleanup()
        return list(self._sessions.values())

    def cleanup(self) -> None:
        """Forget sessions that exited more than EXITED_SESSION_TTL seconds ago."""
        now = time.monotonic()
        for session_id, proc in list(self._sessions.items()):
            if proc.exited_at is not None and now - proc.exited_at > EXITED_SESSION_TTL:
                logger.debug(f"Process: dropping stale session {session_id}")
                del self._sessions[session_id]

    async def shutdown(self) -> None:
        """Kill everything still running."""
        procs = list(self._sessions.values())
        self._sessions.clear()
        for proc in procs:
            await proc.kill()
        if procs:
            logger.info(f"Process: killed {len(procs)} background session(s)")


class ProcessTool(Tool):
    """List, poll, feed and kill background sessions."""

    def __init__(self, manager: ProcessManager):
        self.manager = manager

    @property
    def name(self) -> str:
        return "process"

    @property
    def description(self) -> str:
        return (
            "Manage background processes started by exec. Actions: 'list' (show all sessions), "
            "'poll' (new output from a session), 'input' (write a line to stdin, optional eof "
            "to close it), 'kill' (terminate a session)."
        )

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "action": {"type": "string", "enum": ["list", "poll", "input", "kill"]},
                "session_id": {"type": "string", "description": "Session id, e.g. bg_1. Required for poll, input, kill"},
                "data": {"type": "string", "description": "Line to write to stdin (input)"},
                "eof": {"type": "boolean", "description": "Close stdin after writing (input)"},
            },
            "required": ["action"],
        }

    async def execute(
        self,
        action: str,
        session_id: str | None = None,
        data: str | None = None,
        eof: bool = False,
        **kwargs: Any,
    ) -> str:
        if action == "list":
            return self._list()
        if not session_id:
            raise InvalidArgumentsError(f"'{action}' requires session_id")
        proc = self.manager.get(session_id)

        if action == "poll":
            output = proc.read_new()
            code = proc.exit_code
            if code is None:
                status = "[still running]"
            else:
                status = f"[exited with code {code}]"
                self.manager.remove(session_id)
            return f"{status}\n{output or '(no new output)'}"

        if action == "input":
            if data is None and not eof:
                raise InvalidArgumentsError("'input' requires data or eof")
            if proc.exit_code is not None:
                raise ToolExecutionError(f"Session {session_id} has already exited")
            await proc.write_stdin(data, eof)
            return "Input sent." + (" stdin closed (EOF)." if eof else "")

        await proc.kill()
        output = proc.read_new()
        self.manager.remove(session_id)
        msg = f"Session {session_id} killed."
        if output:
            msg += f"\n\nFinal output:\n{output}"
        return msg

    def _list(self) -> str:
        procs = self.manager.list_sessions()
        if not procs:
            return "No background sessions."
        lines = []
        for proc in procs:
            code = proc.exit_code
            status = "running" if code is None else f"exited (code {code})"
            lines.append(f"{proc.id}: `{proc.command[:80]}` - {status} ({proc.elapsed:.0f}s)")
        return "\n".join(lines)
