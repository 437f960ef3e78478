"""LLM providers."""

from nekobot.providers.base import LLMProvider, LLMResponse, ToolCallRequest
from nekobot.providers.openresponses import OpenResponsesProvider

__all__ = ["LLMProvider", "LLMResponse", "ToolCallRequest", "OpenResponsesProvider"]
