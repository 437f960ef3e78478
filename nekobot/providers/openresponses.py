"""OpenResponses-compatible HTTP provider (``POST {api_base}/responses``)."""

import json
from typing import Any

import httpx
from loguru import logger

from nekobot.errors import ProviderCallError
from nekobot.providers.base import LLMProvider, LLMResponse, ToolCallRequest


class OpenResponsesProvider(LLMProvider):
    """
    LLM provider speaking the Responses wire format over httpx.

    The agent loop works in chat-message format; this class converts the
    message list into Responses input items (system messages become
    ``instructions``, tool calls and results become ``function_call`` /
    ``function_call_output`` items) and parses output items back.
    """

    def __init__(
        self,
        api_key: str | None = None,
        api_base: str | None = None,
        default_model: str = "gpt-4o-mini",
        timeout: float = 120.0,
        extra_headers: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(api_key, api_base or "https://api.openai.com/v1")
        self.default_model = default_model
        self.timeout = timeout
        self.extra_headers = extra_headers or {}
        self._transport = transport

    def get_default_model(self) -> str:
        return self.default_model

    async def chat(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
    ) -> LLMResponse:
        model = model or self.default_model
        endpoint = f"{self.api_base.rstrip('/')}/responses"

        instructions, items = to_input_items(messages)
        payload: dict[str, Any] = {
            "model": model,
            "input": items,
            "max_output_tokens": max_tokens,
            "temperature": temperature,
        }
        if instructions:
            payload["instructions"] = instructions
        if tools:
            payload["tools"] = [to_response_tool(t) for t in tools]
            payload["tool_choice"] = "auto"

        headers = {"Content-Type": "application/json", **self.extra_headers}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        logger.debug(f"POST {endpoint} model={model} items={len(items)}")
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                r = await client.post(endpoint, json=payload, headers=headers)
                r.raise_for_status()
                data = r.json()
        except httpx.HTTPStatusError as e:
            body = e.response.text[:500]
            raise ProviderCallError(f"HTTP {e.response.status_code} from {endpoint}: {body}") from e
        except httpx.HTTPError as e:
            raise ProviderCallError(f"Request to {endpoint} failed: {e}") from e
        except ValueError as e:
            raise ProviderCallError(f"Failed to parse response JSON: {e}") from e

        return parse_response(data)


def to_response_tool(tool: dict[str, Any]) -> dict[str, Any]:
    """Flatten a function-calling schema into a Responses tool definition."""
    fn = tool.get("function", tool)
    return {
        "type": "function",
        "name": fn["name"],
        "description": fn.get("description", ""),
        "parameters": fn.get("parameters", {"type": "object", "properties": {}}),
    }


def to_input_items(messages: list[dict[str, Any]]) -> tuple[str, list[dict[str, Any]]]:
    """Split chat messages into (instructions, input items)."""
    instructions: list[str] = []
    items: list[dict[str, Any]] = []
    for msg in messages:
        role = msg.get("role")
        if role == "system":
            instructions.append(msg.get("content") or "")
        elif role == "tool":
            items.append({
                "type": "function_call_output",
                "call_id": msg["tool_call_id"],
                "output": msg.get("content") or "",
            })
        elif role == "assistant":
            if msg.get("content"):
                items.append({"type": "message", "role": "assistant", "content": msg["content"]})
            for tc in msg.get("tool_calls") or []:
                fn = tc["function"]
                items.append({
                    "type": "function_call",
                    "call_id": tc["id"],
                    "name": fn["name"],
                    "arguments": fn["arguments"],
                })
        else:
            items.append({"type": "message", "role": "user", "content": msg.get("content") or ""})
    return "\n\n".join(instructions), items


def parse_response(data: dict[str, Any]) -> LLMResponse:
    """Parse a Responses API body into our standard format."""
    if data.get("error"):
        raise ProviderCallError(f"Provider returned an error: {data['error']}")

    texts: list[str] = []
    tool_calls: list[ToolCallRequest] = []
    for item in data.get("output") or []:
        kind = item.get("type")
        if kind == "message":
            content = item.get("content")
            if isinstance(content, str):
                texts.append(content)
                continue
            for part in content or []:
                if part.get("type") in ("output_text", "text") and part.get("text"):
                    texts.append(part["text"])
        elif kind == "function_call":
            raw = item.get("arguments") or "{}"
            try:
                args = json.loads(raw) if isinstance(raw, str) else dict(raw)
            except json.JSONDecodeError:
                args = {"raw": raw}
            tool_calls.append(ToolCallRequest(
                id=item.get("call_id") or item.get("id") or "",
                name=item.get("name", ""),
                arguments=args if isinstance(args, dict) else {"value": args},
            ))

    usage = {}
    for key in ("input_tokens", "output_tokens", "total_tokens"):
        value = (data.get("usage") or {}).get(key)
        if isinstance(value, int):
            usage[key] = value

    finish = "tool_calls" if tool_calls else ("stop" if data.get("status", "completed") == "completed" else data["status"])
    return LLMResponse(
        content="".join(texts) or None,
        tool_calls=tool_calls,
        finish_reason=finish,
        usage=usage,
    )
