"""Memory tools: write, replace and search the markdown memory.

Store calls run in a worker thread: they take a file lock that another
process (the CLI, a second gateway) may be holding.
"""

import asyncio
from typing import Any

from nekobot.agent.tools.base import Tool
from nekobot.memory.store import CORE_FILE, MemoryStore

_TARGET_DESC = (
    "Which memory file: 'core' (MEMORY.md, always in context, keep under the cap), "
    "'today' (today's daily log, the default), 'YYYY-MM-DD' for a specific daily log, "
    "or 'recall/<name>' for an archive entry."
)


class MemoryWriteTool(Tool):
    """Append to or overwrite a memory file."""

    def __init__(self, store: MemoryStore):
        self.store = store

    @property
    def name(self) -> str:
        return "memory_write"

    @property
    def description(self) -> str:
        return (
            "Write to long-term memory. Use 'core' for durable facts about the user "
            "and ongoing work, 'today' for notes about what happened today. "
            f"Core memory is capped at {self.store.core_cap} chars."
        )

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "target": {"type": "string", "description": _TARGET_DESC},
                "content": {"type": "string", "minLength": 1, "description": "Text to write"},
                "mode": {
                    "type": "string",
                    "enum": ["append", "overwrite"],
                    "description": "append (default) or overwrite the whole file",
                },
            },
            "required": ["content"],
        }

    async def execute(
        self, content: str, target: str = "today", mode: str = "append", **kwargs: Any
    ) -> str:
        result = await asyncio.to_thread(self.store.write, target, content, mode)
        msg = f"Wrote {len(content)} chars to {result.file_id} ({mode})."
        if result.compaction_needed:
            msg += (
                f" Warning: {CORE_FILE} is now {result.chars}/{self.store.core_cap} chars. "
                "Compact it with memory_replace."
            )
        return msg


class MemoryReplaceTool(Tool):
    """Find-and-replace inside one memory file."""

    def __init__(self, store: MemoryStore):
        self.store = store

    @property
    def name(self) -> str:
        return "memory_replace"

    @property
    def description(self) -> str:
        return (
            "Replace every occurrence of text in a memory file (case-sensitive). "
            "An empty replacement deletes the match. Use this to correct or compact memory."
        )

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "target": {"type": "string", "description": _TARGET_DESC},
                "find": {"type": "string", "minLength": 1, "description": "Text (or regex) to find"},
                "replace": {"type": "string", "description": "Replacement text, empty to delete"},
                "regex": {"type": "boolean", "description": "Treat find as a regular expression"},
            },
            "required": ["target", "find", "replace"],
        }

    async def execute(
        self, target: str, find: str, replace: str, regex: bool = False, **kwargs: Any
    ) -> str:
        result = await asyncio.to_thread(self.store.replace, target, find, replace, regex)
        verb = "Deleted" if replace == "" else "Replaced"
        msg = f"{verb} {result.count} match(es) in {result.file_id}."
        if result.compaction_needed:
            msg += f" {CORE_FILE} is still {result.chars}/{self.store.core_cap} chars."
        return msg


class MemorySearchTool(Tool):
    """Search every memory file, including old daily logs and recall entries."""

    def __init__(self, store: MemoryStore, max_results: int = 20):
        self.store = store
        self.max_results = max_results

    @property
    def name(self) -> str:
        return "memory_search"

    @property
    def description(self) -> str:
        return (
            "Search all memory files (core, every daily log, conversation recall). "
            "Returns matching lines as 'file:line: text', newest files first."
        )

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "query": {"type": "string", "minLength": 1, "description": "Text or regex to search for"},
                "regex": {"type": "boolean", "description": "Treat query as a regular expression"},
                "case_sensitive": {"type": "boolean", "description": "Default false"},
                "max_results": {"type": "integer", "minimum": 1, "maximum": 200},
            },
            "required": ["query"],
        }

    async def execute(
        self,
        query: str,
        regex: bool = False,
        case_sensitive: bool = False,
        max_results: int | None = None,
        **kwargs: Any,
    ) -> str:
        hits = await asyncio.to_thread(
            self.store.search, query, regex, not case_sensitive, max_results or self.max_results
        )
        if not hits:
            return f"No matches for '{query}'."
        return "\n".join(str(h) for h in hits)
