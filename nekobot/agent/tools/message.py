"""Send-file tool: queue a workspace file for delivery with the reply."""

import mimetypes
from pathlib import Path
from typing import Any

from nekobot.agent.tools.base import Tool, ToolContext
from nekobot.agent.tools.filesystem import validate_workspace_path
from nekobot.bus.events import Attachment
from nekobot.errors import ToolExecutionError


class SendFileTool(Tool):
    """
    Attach a file to the current reply.

    Nothing is sent immediately: the file is queued on the invocation context
    and the gateway delivers it to the conversation (or a job's announce
    target) together with the final text.
    """

    needs_context = True

    def __init__(self, workspace: Path | None = None, restrict_to_workspace: bool = True):
        self.workspace = workspace
        self.restrict_to_workspace = restrict_to_workspace

    @property
    def name(self) -> str:
        return "send_file"

    @property
    def description(self) -> str:
        return (
            "Send a file from the workspace to the user along with your reply "
            "(images, audio, documents). The MIME type is guessed from the extension."
        )

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Path of the file to send"},
                "mime_type": {"type": "string", "description": "Optional MIME type override, e.g. 'image/png'"},
            },
            "required": ["path"],
        }

    async def execute(self, ctx: ToolContext, path: str, mime_type: str | None = None, **kwargs: Any) -> str:
        file_path = validate_workspace_path(path, self.workspace, self.restrict_to_workspace, base=ctx.cwd)
        if not file_path.exists():
            raise ToolExecutionError(f"File not found: {path}")
        if not file_path.is_file():
            raise ToolExecutionError(f"Not a file: {path}")

        mime = mime_type or mimetypes.guess_type(file_path.name)[0] or "application/octet-stream"
        ctx.attachments.append(Attachment(path=file_path, mime_type=mime))
        return f"Queued {path} ({mime}) for sending"
