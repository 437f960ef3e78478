"""Base channel interface for chat platforms."""

from abc import ABC, abstractmethod
from typing import Any

from loguru import logger

from nekobot.bus.events import Attachment, InboundMessage
from nekobot.bus.queue import MessageBus
from nekobot.errors import DeliveryFailedError


class BaseChannel(ABC):
    """
    Abstract base class for chat channel implementations.

    A channel is a best-effort sink (``deliver``) and, for interactive
    platforms, a source of inbound messages published to the bus.
    """

    name: str = "base"

    def __init__(self, config: Any = None, bus: MessageBus | None = None):
        self.config = config
        self.bus = bus
        self._running = False

    @abstractmethod
    async def start(self) -> None:
        """Connect and begin listening. May run until ``stop`` is called."""
        pass

    @abstractmethod
    async def stop(self) -> None:
        """Stop the channel and clean up resources."""
        pass

    @abstractmethod
    async def deliver(self, recipient: str, text: str) -> None:
        """
        Send ``text`` to ``recipient`` (a chat id on this platform).

        Raises:
            DeliveryFailedError: If the message could not be sent.
        """
        pass

    async def deliver_file(self, recipient: str, attachment: Attachment) -> None:
        """Send a file to ``recipient``. Channels without file support refuse."""
        raise DeliveryFailedError(f"Channel {self.name} cannot send files")

    def is_allowed(self, sender_id: str) -> bool:
        """Check the sender against the channel's ``allow_from`` list (empty = everyone)."""
        allow_list = getattr(self.config, "allow_from", None) or []
        if not allow_list:
            return True

        sender_str = str(sender_id)
        if sender_str in allow_list:
            return True
        if "|" in sender_str:
            return any(part and part in allow_list for part in sender_str.split("|"))
        return False

    async def _handle_message(
        self,
        sender_id: str,
        chat_id: str,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Check permissions and forward an incoming message to the bus."""
        if not self.is_allowed(sender_id):
            logger.warning(
                f"Access denied for sender {sender_id} on channel {self.name}. "
                f"Add them to allowFrom list in config to grant access."
            )
            return
        if self.bus is None:
            logger.warning(f"Channel {self.name} has no bus, dropping inbound message")
            return

        await self.bus.publish_inbound(InboundMessage(
            channel=self.name,
            sender_id=str(sender_id),
            chat_id=str(chat_id),
            content=content,
            metadata=metadata or {},
        ))

    @property
    def is_running(self) -> bool:
        """Check if the channel is running."""
        return self._running
