"""Agent loop: the model-calling core shared by the gateway and the scheduler."""

import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from loguru import logger

from nekobot.agent.context import ContextBuilder
from nekobot.agent.tools.base import ToolContext, ToolResult
from nekobot.agent.tools.registry import ToolRegistry
from nekobot.bus.events import Attachment
from nekobot.providers.base import LLMProvider

MAX_TOOL_RESULT_CHARS = 8000     # Truncate any single tool result beyond this
NO_RESPONSE = "I've completed processing but have no response to give."


@dataclass
class InvocationRequest:
    """One agent run: the triggering text plus where it came from."""

    channel: str
    chat_id: str
    text: str
    session_key: str | None = None
    origin: str | None = None  # channel:chat_id replies (and new jobs) default to
    history: list[dict[str, Any]] = field(default_factory=list)
    cwd: Path | None = None  # working directory carried over from earlier turns

    @property
    def tool_context(self) -> ToolContext:
        return ToolContext(
            channel=self.channel,
            chat_id=self.chat_id,
            session_key=self.session_key,
            origin=self.origin,
            cwd=self.cwd,
        )


@dataclass
class AgentResult:
    text: str
    tool_trace: list[ToolResult] = field(default_factory=list)
    iterations: int = 0
    cwd: Path | None = None
    attachments: list[Attachment] = field(default_factory=list)


class AgentLoop:
    """
    Runs the model until it answers without tool calls (or the iteration
    limit is reached).

    Tool failures come back from the registry as ``Error[kind]: ...`` text and
    are fed to the model like any other result. Provider failures propagate
    (``ProviderCallError``) so callers can record them.
    """

    def __init__(
        self,
        provider: LLMProvider,
        tools: ToolRegistry,
        context: ContextBuilder,
        model: str | None = None,
        max_iterations: int = 20,
        max_tokens: int = 4096,
        temperature: float = 0.7,
    ):
        self.provider = provider
        self.tools = tools
        self.context = context
        self.model = model or provider.get_default_model()
        self.max_iterations = max_iterations
        self.max_tokens = max_tokens
        self.temperature = temperature

    @staticmethod
    def _truncate_tool_result(result: str) -> str:
        """Strip ANSI escapes and head-truncate with a sentinel."""
        clean = re.sub(r"\x1b\[[0-9;]*[a-zA-Z]", "", result)
        if len(clean) <= MAX_TOOL_RESULT_CHARS:
            return clean
        budget = MAX_TOOL_RESULT_CHARS - 100
        return (
            clean[:budget]
            + f"\n\n... [truncated, showed {budget} of {len(clean)} chars. "
            + "Do NOT re-run this tool to see more.]"
        )

    async def run(self, request: InvocationRequest) -> AgentResult:
        preview = request.text[:80] + "..." if len(request.text) > 80 else request.text
        logger.info(f"Agent: invocation from {request.channel}:{request.chat_id}: {preview}")

        messages = self.context.build_messages(
            history=request.history,
            current_message=request.text,
            channel=request.channel,
            chat_id=request.chat_id,
        )
        ctx = request.tool_context
        trace: list[ToolResult] = []

        iteration = 0
        final_content: str | None = None
        while iteration < self.max_iterations:
            iteration += 1
            response = await self.provider.chat(
                messages=messages,
                tools=self.tools.get_definitions(),
                model=self.model,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
            )

            if not response.has_tool_calls:
                final_content = response.content
                break

            tool_call_dicts = [
                {
                    "id": tc.id,
                    "type": "function",
                    "function": {"name": tc.name, "arguments": json.dumps(tc.arguments)},
                }
                for tc in response.tool_calls
            ]
            messages = self.context.add_assistant_message(messages, response.content, tool_call_dicts)

            for tool_call in response.tool_calls:
                logger.debug(f"Executing tool: {tool_call.name} with arguments: {json.dumps(tool_call.arguments)}")
                result = await self.tools.execute(tool_call.name, tool_call.arguments, ctx)
                trace.append(result)
                messages = self.context.add_tool_result(
                    messages, tool_call.id, tool_call.name, self._truncate_tool_result(str(result))
                )
        else:
            logger.warning(f"Agent: hit the {self.max_iterations}-iteration limit")

        return AgentResult(
            text=final_content or NO_RESPONSE,
            tool_trace=trace,
            iterations=iteration,
            cwd=ctx.cwd,
            attachments=ctx.attachments,
        )
