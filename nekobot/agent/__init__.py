"""Agent core module.

Keep this package import-light: the loop pulls in the provider (httpx) and
every tool, so the public symbols are exposed via lazy imports.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

__all__ = ["AgentLoop", "AgentResult", "ContextBuilder", "InvocationRequest"]

if TYPE_CHECKING:
    from nekobot.agent.context import ContextBuilder as ContextBuilder
    from nekobot.agent.loop import AgentLoop as AgentLoop
    from nekobot.agent.loop import AgentResult as AgentResult
    from nekobot.agent.loop import InvocationRequest as InvocationRequest


def __getattr__(name: str) -> Any:
    if name in ("AgentLoop", "AgentResult", "InvocationRequest"):
        from nekobot.agent import loop

        return getattr(loop, name)
    if name == "ContextBuilder":
        from nekobot.agent.context import ContextBuilder

        return ContextBuilder
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
