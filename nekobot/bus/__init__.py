"""Inbound message bus."""

from nekobot.bus.events import Attachment, InboundMessage
from nekobot.bus.queue import MessageBus

__all__ = ["Attachment", "InboundMessage", "MessageBus"]
