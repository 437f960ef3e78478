"""Context builder for assembling agent prompts."""

from datetime import datetime
from pathlib import Path
from typing import Any

from nekobot.memory.store import MemoryStore

DEFAULT_INSTRUCTIONS = """\
You are nekobot, a helpful AI assistant with persistent memory.

## Memory
Your memory is a set of markdown files under `memory/`:
- **MEMORY.md** (core memory) is always shown below. Keep it short; it is capped at {cap} characters.
- **Daily logs** (`YYYY-MM-DD.md`): today's and yesterday's are shown below. Use them for session notes.
- **Recall** (`recall/*.md`): past conversations, logged automatically. Search them with `memory_search`.

Use `memory_write` to record facts, `memory_replace` to correct or delete them
(an empty replacement deletes), and `memory_search` to look things up.
Keep durable facts in MEMORY.md and ephemeral notes in the daily log.

## Scheduling
Use `cron_manage` to schedule prompts for yourself: recurring jobs with a cron
expression, or one-shot reminders with a time. Results are announced to the
conversation that created the job unless told otherwise.

Be concise and helpful."""


class ContextBuilder:
    """
    Builds the system prompt and message list for one invocation.

    Memory is loaded once per call to :meth:`build_messages`; writes the agent
    makes during the invocation show up in the next one.
    """

    def __init__(self, workspace: Path, memory: MemoryStore, instructions_file: str = "AGENTS.md"):
        self.workspace = workspace
        self.memory = memory
        self.instructions_file = instructions_file

    def build_system_prompt(self, channel: str | None = None, chat_id: str | None = None) -> str:
        """Instructions, current time, memory file tree, then memory content."""
        parts = [self._load_instructions()]

        now = datetime.now().strftime("%Y-%m-%d %H:%M (%A)")
        runtime = f"## Current Time\n{now}\n\n## Workspace\n{self.workspace.expanduser().resolve()}"
        if channel and chat_id:
            runtime += f"\n\n## Conversation\nchannel: {channel}, chat: {chat_id}"
        parts.append(runtime)

        parts.append(f"## Memory Files\n{self.memory.file_tree()}")

        memory = self.memory.load_context()
        parts.append(f"# Memory\n\n{memory.text}")

        return "\n\n---\n\n".join(parts)

    def _load_instructions(self) -> str:
        path = self.workspace / self.instructions_file
        if path.is_file():
            content = path.read_text(encoding="utf-8").strip()
            if content:
                return content
        return DEFAULT_INSTRUCTIONS.format(cap=self.memory.core_cap)

    def build_messages(
        self,
        history: list[dict[str, Any]],
        current_message: str,
        channel: str | None = None,
        chat_id: str | None = None,
    ) -> list[dict[str, Any]]:
        """Build the complete message list for an LLM call."""
        messages: list[dict[str, Any]] = [
            {"role": "system", "content": self.build_system_prompt(channel, chat_id)}
        ]
        messages.extend(history)
        messages.append({"role": "user", "content": current_message})
        return messages

    def add_tool_result(
        self,
        messages: list[dict[str, Any]],
        tool_call_id: str,
        tool_name: str,
        result: str,
    ) -> list[dict[str, Any]]:
        """Add a tool result to the message list."""
        messages.append({
            "role": "tool",
            "tool_call_id": tool_call_id,
            "name": tool_name,
            "content": result,
        })
        return messages

    def add_assistant_message(
        self,
        messages: list[dict[str, Any]],
        content: str | None,
        tool_calls: list[dict[str, Any]] | None = None,
    ) -> list[dict[str, Any]]:
        """Add an assistant message to the message list."""
        msg: dict[str, Any] = {"role": "assistant", "content": content or ""}
        if tool_calls:
            msg["tool_calls"] = tool_calls
        messages.append(msg)
        return messages
