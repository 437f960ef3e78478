"""Shared fixtures."""

from datetime import datetime

import pytest

from nekobot.agent.tools.base import ToolContext
from nekobot.memory.store import MemoryStore
from nekobot.providers.base import LLMProvider, LLMResponse, ToolCallRequest

FIXED_NOW = datetime(2026, 3, 14, 9, 30, 0)


@pytest.fixture
def workspace(tmp_path):
    """Create a temporary workspace with memory directory."""
    ws = tmp_path / "workspace"
    (ws / "memory").mkdir(parents=True)
    return ws


@pytest.fixture
def memory(workspace):
    """MemoryStore whose "today" is FIXED_NOW."""
    store = MemoryStore(workspace, core_cap_chars=200, clock=lambda: FIXED_NOW)
    store.init()
    return store


@pytest.fixture
def ctx():
    return ToolContext(channel="telegram", chat_id="42", session_key="telegram:42", origin="telegram:42")


class ScriptedProvider(LLMProvider):
    """Replays a fixed list of responses and records every request."""

    def __init__(self, responses: list[LLMResponse] | None = None):
        super().__init__()
        self.responses = list(responses or [])
        self.calls: list[dict] = []

    def get_default_model(self) -> str:
        return "test-model"

    async def chat(self, messages, tools=None, model=None, max_tokens=4096, temperature=0.7):
        self.calls.append({"messages": [dict(m) for m in messages], "tools": tools, "model": model})
        if not self.responses:
            return LLMResponse(content="done")
        return self.responses.pop(0)


def tool_call(tool_name: str, /, call_id: str = "call_1", **arguments) -> LLMResponse:
    return LLMResponse(
        content=None,
        tool_calls=[ToolCallRequest(id=call_id, name=tool_name, arguments=arguments)],
        finish_reason="tool_calls",
    )


@pytest.fixture
def provider():
    return ScriptedProvider()
