"""aiohttp-based HTTP server exposing the agent as a small JSON API."""

import json
from typing import TYPE_CHECKING

from aiohttp import web
from loguru import logger

from nekobot import __version__
from nekobot.api.auth import check_auth

if TYPE_CHECKING:
    from nekobot.gateway import Gateway

API_CHANNEL = "api"
DEFAULT_SESSION = "default"


class ApiServer:
    """
    ``POST /api/v1/message`` runs one interactive turn; ``GET /health`` is open.

    Each API session is an ordinary gateway session keyed ``api:<session>``,
    so turns are serialized and history is kept like any chat.
    """

    def __init__(self, gateway: "Gateway", host: str = "127.0.0.1", port: int = 3000, token: str = ""):
        self.gateway = gateway
        self.host = host
        self.port = port
        self.token = token
        self._runner: web.AppRunner | None = None

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/api/v1/message", self._handle_message)
        app.router.add_get("/health", self._handle_health)
        return app

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({"status": "ok", "version": __version__})

    async def _handle_message(self, request: web.Request) -> web.Response:
        auth_error = check_auth(request, self.token)
        if auth_error:
            return web.json_response({"error": auth_error}, status=401)

        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return web.json_response({"error": "Invalid JSON body"}, status=400)
        if not isinstance(body, dict):
            return web.json_response({"error": "Body must be a JSON object"}, status=400)

        text = body.get("text")
        session = body.get("session") or DEFAULT_SESSION
        if not isinstance(text, str) or not text.strip():
            return web.json_response({"error": "text is required"}, status=400)
        if not isinstance(session, str):
            return web.json_response({"error": "session must be a string"}, status=400)

        try:
            if self.gateway.is_reset_command(text):
                await self.gateway.reset_session(f"{API_CHANNEL}:{session}")
                return web.json_response({"response": "New session started.", "attachments": []})
            result = await self.gateway.run_turn(API_CHANNEL, session, text)
        except Exception as e:
            logger.error(f"API: turn for {API_CHANNEL}:{session} failed: {e}")
            return web.json_response({"error": str(e)}, status=500)

        return web.json_response({
            "response": result.text,
            "attachments": [
                {"path": str(a.path), "mimeType": a.mime_type} for a in result.attachments
            ],
        })

    async def start(self) -> None:
        """Start the HTTP server (non-blocking)."""
        if not self.token and self.host not in ("127.0.0.1", "localhost", "::1"):
            logger.warning(f"API listening on {self.host} without a token; anyone who can reach it can use the agent")
        self._runner = web.AppRunner(self.create_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info(f"API server listening on http://{self.host}:{self.port}")

    async def stop(self) -> None:
        """Stop the HTTP server."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            logger.info("API server stopped")
