"""HTTP API for talking to the agent from scripts and other services."""

from nekobot.api.server import ApiServer

__all__ = ["ApiServer"]
