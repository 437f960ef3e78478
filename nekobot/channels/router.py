"""Routes destination references (``channel:recipient``) to channel adapters."""

import asyncio

from loguru import logger

from nekobot.bus.events import Attachment
from nekobot.channels.base import BaseChannel
from nekobot.errors import DeliveryFailedError


def parse_destination(destination: str) -> tuple[str, str]:
    """
    Split ``telegram:12345`` into ``("telegram", "12345")``.

    Raises:
        ValueError: If either part is missing.
    """
    channel, sep, recipient = (destination or "").strip().partition(":")
    if not sep or not channel or not recipient:
        raise ValueError(f"Invalid destination {destination!r}, expected 'channel:recipient'")
    return channel, recipient


class ChannelRouter:
    """
    Owns the channel adapters and delivers outbound text to them.

    Delivery is best effort: failures are logged as DeliveryFailed and
    dropped, never retried or requeued.
    """

    def __init__(self, channels: list[BaseChannel] | None = None):
        self.channels: dict[str, BaseChannel] = {}
        self._tasks: list[asyncio.Task] = []
        for channel in channels or []:
            self.register(channel)

    def register(self, channel: BaseChannel) -> None:
        self.channels[channel.name] = channel

    def get(self, name: str) -> BaseChannel | None:
        return self.channels.get(name)

    @property
    def enabled_channels(self) -> list[str]:
        return list(self.channels)

    async def deliver(
        self, destination: str, text: str, attachments: list[Attachment] | None = None
    ) -> bool:
        """
        Deliver ``text`` to ``destination``, preceded by any attachments.

        Returns False on DeliveryFailed. A file that fails is logged and
        skipped; the text is still attempted.
        """
        if attachments:
            await self.deliver_files(destination, attachments)
        try:
            await self._deliver(destination, text)
        except DeliveryFailedError as e:
            logger.warning(f"Router: DeliveryFailed to {destination}: {e}")
            return False
        except Exception as e:
            logger.warning(f"Router: DeliveryFailed to {destination}: {type(e).__name__}: {e}")
            return False
        logger.debug(f"Router: delivered {len(text)} chars to {destination}")
        return True

    async def deliver_files(self, destination: str, attachments: list[Attachment]) -> int:
        """Deliver each attachment to ``destination``. Returns how many went through."""
        delivered = 0
        for attachment in attachments:
            try:
                await self._deliver_file(destination, attachment)
            except Exception as e:
                logger.warning(f"Router: DeliveryFailed for {attachment.filename} to {destination}: {e}")
                continue
            delivered += 1
        return delivered

    def _resolve(self, destination: str) -> tuple[BaseChannel, str]:
        try:
            name, recipient = parse_destination(destination)
        except ValueError as e:
            raise DeliveryFailedError(str(e)) from None
        channel = self.channels.get(name)
        if channel is None:
            raise DeliveryFailedError(f"Channel '{name}' is not enabled")
        return channel, recipient

    async def _deliver(self, destination: str, text: str) -> None:
        channel, recipient = self._resolve(destination)
        await channel.deliver(recipient, text)

    async def _deliver_file(self, destination: str, attachment: Attachment) -> None:
        channel, recipient = self._resolve(destination)
        await channel.deliver_file(recipient, attachment)

    async def start_all(self) -> None:
        """Start every channel in its own task."""
        for name, channel in self.channels.items():
            logger.info(f"Starting {name} channel...")
            self._tasks.append(asyncio.create_task(channel.start(), name=f"channel:{name}"))

    async def stop_all(self) -> None:
        """Stop all channels."""
        for name, channel in self.channels.items():
            try:
                await channel.stop()
                logger.info(f"Stopped {name} channel")
            except Exception as e:
                logger.error(f"Error stopping {name}: {e}")
        for task in self._tasks:
            if not task.done():
                task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
