"""Console channel: prints deliveries, e.g. job announcements, to the terminal."""

from rich.console import Console
from rich.markdown import Markdown

from nekobot.bus.events import Attachment
from nekobot.channels.base import BaseChannel


class CLIChannel(BaseChannel):
    """Output-only channel; interactive CLI input goes through ``nekobot agent``."""

    name = "cli"

    def __init__(self, config=None, bus=None, console: Console | None = None):
        super().__init__(config, bus)
        self.console = console or Console()

    async def start(self) -> None:
        self._running = True

    async def stop(self) -> None:
        self._running = False

    async def deliver(self, recipient: str, text: str) -> None:
        self.console.print(f"[cyan]→ cli:{recipient}[/cyan]")
        self.console.print(Markdown(text))

    async def deliver_file(self, recipient: str, attachment: Attachment) -> None:
        self.console.print(f"[cyan]→ cli:{recipient}[/cyan] 📎 {attachment.path} ({attachment.mime_type})")
