"""Message types exchanged between channels and the gateway."""

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any


@dataclass
class InboundMessage:
    """Message received from a chat channel."""

    channel: str  # telegram, cli, ...
    sender_id: str
    chat_id: str
    content: str
    timestamp: datetime = field(default_factory=datetime.now)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def session_key(self) -> str:
        """Unique key for session identification."""
        return f"{self.channel}:{self.chat_id}"


@dataclass
class Attachment:
    """A workspace file queued by the agent for delivery alongside its reply."""

    path: Path
    mime_type: str = "application/octet-stream"

    @property
    def filename(self) -> str:
        return self.path.name
