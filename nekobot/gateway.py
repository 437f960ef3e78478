"""Gateway: wires channels, sessions, the agent loop and the scheduler together."""

import asyncio
from pathlib import Path

from loguru import logger

from nekobot.agent.context import ContextBuilder
from nekobot.agent.loop import AgentLoop, AgentResult, InvocationRequest
from nekobot.agent.tools import build_default_registry
from nekobot.agent.tools.filesystem import WorkspaceSecurityError, validate_workspace_path
from nekobot.agent.tools.mcp import Connector, MCPManager, stdio_session
from nekobot.agent.tools.process import ProcessManager
from nekobot.api import ApiServer
from nekobot.bus.events import InboundMessage
from nekobot.bus.queue import MessageBus
from nekobot.channels.base import BaseChannel
from nekobot.channels.router import ChannelRouter, parse_destination
from nekobot.config.loader import get_data_dir
from nekobot.config.schema import Config
from nekobot.cron.service import CronService
from nekobot.cron.store import JobStore
from nekobot.cron.types import CronJob
from nekobot.memory.store import MemoryStore
from nekobot.providers.base import LLMProvider
from nekobot.providers.openresponses import OpenResponsesProvider
from nekobot.session.manager import Session, SessionManager

RESET_COMMANDS = {"/new", "/reset"}
EVICT_INTERVAL_SECONDS = 300


def create_provider(config: Config) -> OpenResponsesProvider:
    return OpenResponsesProvider(
        api_key=config.provider.api_key or None,
        api_base=config.provider.api_base,
        default_model=config.agent.model,
        timeout=config.provider.timeout,
        extra_headers=config.provider.extra_headers,
    )


def create_channels(config: Config, bus: MessageBus) -> list[BaseChannel]:
    """Instantiate every enabled channel."""
    channels: list[BaseChannel] = []
    if config.channels.cli.enabled:
        from nekobot.channels.cli import CLIChannel

        channels.append(CLIChannel(config.channels.cli, bus))
    if config.channels.telegram.enabled:
        from nekobot.channels.telegram import TelegramChannel

        channels.append(TelegramChannel(config.channels.telegram, bus))
        logger.info("Telegram channel enabled")
    return channels


class Gateway:
    """
    Long-running process hosting every interactive and scheduled invocation.

    Interactive turns are serialized per session; scheduled jobs run with no
    session history and deliver their result to the job's announce target.
    """

    def __init__(
        self,
        config: Config,
        provider: LLMProvider | None = None,
        channels: list[BaseChannel] | None = None,
        data_dir: Path | None = None,
        mcp_connector: Connector = stdio_session,
    ):
        self.config = config
        data_dir = data_dir or get_data_dir()
        workspace = config.workspace_path

        self.bus = MessageBus()
        self.memory = MemoryStore(workspace, core_cap_chars=config.memory.core_cap_chars)
        self.jobs = JobStore(data_dir / "cron")
        self.sessions = SessionManager(
            data_dir / "sessions", idle_timeout_minutes=config.session.idle_timeout_minutes
        )
        self.processes = ProcessManager()
        self.tools = build_default_registry(config, self.memory, self.jobs, self.processes)
        self.mcp = MCPManager(config.tools.mcp_servers, connector=mcp_connector)

        self.agent = AgentLoop(
            provider=provider or create_provider(config),
            tools=self.tools,
            context=ContextBuilder(workspace, self.memory, config.agent.instructions_file),
            model=config.agent.model,
            max_iterations=config.agent.max_tool_iterations,
            max_tokens=config.agent.max_tokens,
            temperature=config.agent.temperature,
        )

        self.router = ChannelRouter(channels if channels is not None else create_channels(config, self.bus))
        self.cron = CronService(
            self.jobs,
            on_job=self.run_scheduled,
            router=self.router,
            tick_seconds=config.cron.tick_seconds,
            job_timeout=config.cron.job_timeout_seconds,
        )
        self.api = (
            ApiServer(self, config.api.host, config.api.port, config.api.token) if config.api.enabled else None
        )

        self._tasks: list[asyncio.Task] = []
        self._stopped = asyncio.Event()

    # -- Invocations --

    @staticmethod
    def is_reset_command(text: str) -> bool:
        return text.strip().lower() in RESET_COMMANDS

    async def reset_session(self, key: str) -> None:
        """Clear a session's history, waiting for any turn in progress on it."""
        async with self.sessions.lock(key):
            self.sessions.clear(key)

    async def run_turn(
        self, channel: str, chat_id: str, content: str, origin: str | None = None
    ) -> AgentResult:
        """Run one interactive turn and persist it, including the working directory."""
        key = f"{channel}:{chat_id}"
        async with self.sessions.lock(key):
            session = self.sessions.get_or_create(key, origin=origin)
            request = InvocationRequest(
                channel=channel,
                chat_id=chat_id,
                text=content,
                session_key=key,
                # Jobs created from a channel we cannot deliver to are silent.
                origin=session.origin if channel in self.router.channels else None,
                history=session.get_history(self.config.session.max_history_messages),
                cwd=self._session_cwd(session),
            )
            result = await self.agent.run(request)

            session.add_message("user", content)
            session.add_message("assistant", result.text, tools_used=[r.name for r in result.tool_trace])
            self._remember_cwd(session, result.cwd)
            self.sessions.save(session)

        if self.config.memory.recall_enabled:
            try:
                await asyncio.to_thread(self.memory.append_recall, key, content, result.text)
            except OSError as e:
                logger.error(f"Memory: recall append for {key} failed: {e}")
        return result

    async def converse(self, channel: str, chat_id: str, content: str, origin: str | None = None) -> str:
        """Run one interactive turn and persist it. Returns the reply text."""
        result = await self.run_turn(channel, chat_id, content, origin=origin)
        return result.text

    async def handle_message(self, msg: InboundMessage) -> None:
        """Process one inbound message and deliver the reply to its origin."""
        key = msg.session_key
        if self.is_reset_command(msg.content):
            await self.reset_session(key)
            await self.router.deliver(key, "🐱 New session started.")
            return

        attachments = []
        try:
            result = await self.run_turn(msg.channel, msg.chat_id, msg.content)
            reply, attachments = result.text, result.attachments
        except Exception as e:
            logger.error(f"Error processing message from {key}: {e}")
            reply = f"Sorry, I encountered an error: {e}"

        origin = self.sessions.get_or_create(key).origin or key
        await self.router.deliver(origin, reply, attachments)

    async def run_scheduled(self, job: CronJob) -> str:
        """Scheduler callback: run a job's prompt with the full tool set."""
        if job.announce:
            channel, chat_id = parse_destination(job.announce)
        else:
            channel, chat_id = "cron", job.id
        request = InvocationRequest(
            channel=channel,
            chat_id=chat_id,
            text=job.prompt,
            session_key=f"cron:{job.id}",
            origin=job.announce,
        )
        result = await self.agent.run(request)
        if result.attachments:
            if job.announce:
                # Files go out now; the scheduler announces the text once the run is recorded.
                await self.router.deliver_files(job.announce, result.attachments)
            else:
                logger.info(f"Cron: job '{job.name}' has no announce target, dropping {len(result.attachments)} file(s)")
        return result.text

    def _session_cwd(self, session: Session) -> Path | None:
        """Working directory saved on the session, if it is still valid."""
        saved = session.metadata.get("cwd")
        if not saved:
            return None
        try:
            cwd = validate_workspace_path(
                saved, self.config.workspace_path, self.config.tools.restrict_to_workspace
            )
        except WorkspaceSecurityError:
            logger.warning(f"Session {session.key}: ignoring saved cwd {saved!r} outside the workspace")
            return None
        return cwd if cwd.is_dir() else None

    def _remember_cwd(self, session: Session, cwd: Path | None) -> None:
        workspace = self.config.workspace_path.resolve()
        if cwd is None or cwd == workspace:
            session.metadata.pop("cwd", None)
            return
        try:
            session.metadata["cwd"] = cwd.relative_to(workspace).as_posix()
        except ValueError:
            session.metadata["cwd"] = str(cwd)

    # -- Lifecycle --

    async def start(self) -> None:
        self.memory.init()

        for tool in await self.mcp.start():
            self.tools.register(tool)

        await self.router.start_all()
        if self.config.cron.enabled:
            await self.cron.start()
        if self.api:
            await self.api.start()

        self._tasks = [
            asyncio.create_task(self._consume(), name="gateway:consume"),
            asyncio.create_task(self._evict_idle(), name="gateway:evict"),
        ]
        logger.info(
            f"Gateway started: {len(self.tools)} tools, channels: {', '.join(self.router.enabled_channels) or 'none'}"
        )

    async def stop(self) -> None:
        """Stop accepting work, let running jobs finish (bounded), then close everything."""
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        if self.api:
            await self.api.stop()
        if self.config.cron.enabled:
            await self.cron.stop(grace=self.config.cron.shutdown_grace_seconds)
        await self.router.stop_all()
        await self.processes.shutdown()
        await self.mcp.stop()
        self._stopped.set()
        logger.info("Gateway stopped")

    async def run(self) -> None:
        """Start, then block until cancelled."""
        await self.start()
        try:
            await self._stopped.wait()
        finally:
            if not self._stopped.is_set():
                await self.stop()

    async def _consume(self) -> None:
        while True:
            msg = await self.bus.consume_inbound()
            # Different sessions proceed concurrently; the session lock orders turns within one.
            task = asyncio.create_task(self.handle_message(msg))
            task.add_done_callback(self._log_task_error)

    async def _evict_idle(self) -> None:
        while True:
            await asyncio.sleep(EVICT_INTERVAL_SECONDS)
            self.sessions.evict_idle()

    @staticmethod
    def _log_task_error(task: asyncio.Task) -> None:
        if not task.cancelled() and task.exception():
            logger.error(f"Message handler crashed: {task.exception()}")
