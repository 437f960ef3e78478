"""Async message queue decoupling channel adapters from the gateway."""

import asyncio

from nekobot.bus.events import InboundMessage


class MessageBus:
    """
    Channels push inbound messages here; the gateway consumes them.

    Replies go straight out through the ChannelRouter, so there is no
    outbound queue.
    """

    def __init__(self, maxsize: int = 0):
        self.inbound: asyncio.Queue[InboundMessage] = asyncio.Queue(maxsize=maxsize)

    async def publish_inbound(self, msg: InboundMessage) -> None:
        """Publish a message from a channel to the gateway."""
        await self.inbound.put(msg)

    async def consume_inbound(self) -> InboundMessage:
        """Consume the next inbound message (blocks until available)."""
        return await self.inbound.get()
