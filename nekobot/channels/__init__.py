"""Chat channels and the destination router."""

from nekobot.channels.base import BaseChannel
from nekobot.channels.router import ChannelRouter, parse_destination

__all__ = ["BaseChannel", "ChannelRouter", "parse_destination"]
