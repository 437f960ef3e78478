"""OpenResponses provider: payload shape and response parsing."""

import json

import httpx
import pytest

from nekobot.errors import ProviderCallError
from nekobot.providers.openresponses import OpenResponsesProvider, parse_response, to_input_items, to_response_tool

TOOL = {
    "type": "function",
    "function": {
        "name": "memory_search",
        "description": "Search memory",
        "parameters": {"type": "object", "properties": {"query": {"type": "string"}}},
    },
}


def test_to_input_items() -> None:
    messages = [
        {"role": "system", "content": "be nice"},
        {"role": "user", "content": "find tea"},
        {
            "role": "assistant",
            "content": "",
            "tool_calls": [
                {"id": "c1", "type": "function", "function": {"name": "memory_search", "arguments": '{"query": "tea"}'}}
            ],
        },
        {"role": "tool", "tool_call_id": "c1", "name": "memory_search", "content": "MEMORY.md:1: tea"},
    ]
    instructions, items = to_input_items(messages)
    assert instructions == "be nice"
    assert items == [
        {"type": "message", "role": "user", "content": "find tea"},
        {"type": "function_call", "call_id": "c1", "name": "memory_search", "arguments": '{"query": "tea"}'},
        {"type": "function_call_output", "call_id": "c1", "output": "MEMORY.md:1: tea"},
    ]


def test_to_response_tool_flattens_function() -> None:
    assert to_response_tool(TOOL) == {
        "type": "function",
        "name": "memory_search",
        "description": "Search memory",
        "parameters": TOOL["function"]["parameters"],
    }


def test_parse_text_and_usage() -> None:
    resp = parse_response({
        "status": "completed",
        "output": [{"type": "message", "content": [{"type": "output_text", "text": "Hi "}, {"type": "output_text", "text": "there"}]}],
        "usage": {"input_tokens": 10, "output_tokens": 2, "total_tokens": 12},
    })
    assert resp.content == "Hi there"
    assert not resp.has_tool_calls
    assert resp.finish_reason == "stop"
    assert resp.usage == {"input_tokens": 10, "output_tokens": 2, "total_tokens": 12}


def test_parse_function_calls() -> None:
    resp = parse_response({
        "output": [
            {"type": "reasoning", "summary": []},
            {"type": "function_call", "call_id": "c9", "name": "exec", "arguments": '{"command": "ls"}'},
            {"type": "function_call", "id": "fc_2", "name": "broken", "arguments": "{not json"},
        ]
    })
    assert resp.content is None
    assert resp.finish_reason == "tool_calls"
    assert [(tc.id, tc.name, tc.arguments) for tc in resp.tool_calls] == [
        ("c9", "exec", {"command": "ls"}),
        ("fc_2", "broken", {"raw": "{not json"}),
    ]


def test_parse_error_body() -> None:
    with pytest.raises(ProviderCallError):
        parse_response({"error": {"message": "model not found"}})


async def test_chat_posts_responses_payload() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("authorization")
        seen["org"] = request.headers.get("x-org")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={
            "status": "completed",
            "output": [{"type": "message", "content": [{"type": "output_text", "text": "ok"}]}],
        })

    provider = OpenResponsesProvider(
        api_key="sk-test",
        api_base="https://llm.example.com/v1/",
        default_model="small-model",
        extra_headers={"X-Org": "acme"},
        transport=httpx.MockTransport(handler),
    )
    resp = await provider.chat(
        [{"role": "system", "content": "sys"}, {"role": "user", "content": "hi"}], tools=[TOOL], max_tokens=64
    )

    assert resp.content == "ok"
    assert seen["url"] == "https://llm.example.com/v1/responses"
    assert seen["auth"] == "Bearer sk-test"
    assert seen["org"] == "acme"
    body = seen["body"]
    assert body["model"] == "small-model"
    assert body["instructions"] == "sys"
    assert body["max_output_tokens"] == 64
    assert body["tools"][0]["name"] == "memory_search"
    assert body["tool_choice"] == "auto"


@pytest.mark.parametrize(
    "response",
    [httpx.Response(401, text="bad key"), httpx.Response(200, text="<html>not json</html>")],
)
async def test_chat_failures_raise_provider_error(response) -> None:
    provider = OpenResponsesProvider(api_key="k", transport=httpx.MockTransport(lambda request: response))
    with pytest.raises(ProviderCallError):
        await provider.chat([{"role": "user", "content": "hi"}])


async def test_transport_error_raises_provider_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timed out", request=request)

    provider = OpenResponsesProvider(transport=httpx.MockTransport(handler))
    with pytest.raises(ProviderCallError):
        await provider.chat([{"role": "user", "content": "hi"}])
