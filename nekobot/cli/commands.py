"""CLI commands for nekobot."""

import asyncio
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, AsyncIterator

import typer
from rich.console import Console
from rich.markdown import Markdown
from rich.table import Table

from nekobot import __logo__, __version__
from nekobot.errors import NekobotError

if TYPE_CHECKING:
    from nekobot.gateway import Gateway

app = typer.Typer(
    name="nekobot",
    help=f"{__logo__} nekobot - Autonomous personal agent",
    no_args_is_help=True,
)

console = Console()


def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} nekobot v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-v", callback=version_callback, is_eager=True
    ),
    log_level: str = typer.Option(None, "--log-level", help="DEBUG, INFO, WARNING, ..."),
):
    """nekobot - Autonomous personal agent."""
    from nekobot.logging_config import setup_logging

    setup_logging(log_level.upper() if log_level else None)


# ============================================================================
# Shared helpers
# ============================================================================


def _fail(message: str) -> None:
    console.print(f"[red]Error: {message}[/red]")
    raise typer.Exit(1)


def _load_config():
    from nekobot.config.loader import load_config

    try:
        return load_config()
    except NekobotError as e:
        _fail(str(e))


def _job_store():
    from nekobot.config.loader import get_data_dir
    from nekobot.cron.store import JobStore

    return JobStore(get_data_dir() / "cron")


def _validate_api_key(config) -> None:
    if not config.provider.api_key:
        console.print("[red]Error: No API key configured.[/red]")
        console.print("Set provider.apiKey in ~/.nekobot/config.json or NEKOBOT_PROVIDER__API_KEY")
        raise typer.Exit(1)


@asynccontextmanager
async def _direct_gateway(config) -> AsyncIterator["Gateway"]:
    """A gateway without polling channels, with MCP tools connected."""
    from nekobot.channels.cli import CLIChannel
    from nekobot.gateway import Gateway

    gw = Gateway(config, channels=[CLIChannel(console=console)])
    gw.memory.init()
    for tool in await gw.mcp.start():
        gw.tools.register(tool)
    try:
        yield gw
    finally:
        await gw.processes.shutdown()
        await gw.mcp.stop()


def _print_reply(result) -> None:
    console.print(f"\n{__logo__} ", end="")
    console.print(Markdown(result.text))
    for attachment in result.attachments:
        console.print(f"[dim]📎 {attachment.path} ({attachment.mime_type})[/dim]")


def _split_session(session_id: str) -> tuple[str, str]:
    if ":" in session_id:
        channel, chat_id = session_id.split(":", 1)
        return channel, chat_id
    return "cli", session_id


# ============================================================================
# Onboard / Setup
# ============================================================================


AGENTS_TEMPLATE = """# Agent Instructions

You are nekobot, a helpful AI assistant with persistent memory. Be concise,
accurate, and friendly.

## Memory

- `memory/MEMORY.md` is your core memory. Keep it short and current.
- Use today's daily log for notes about what happened in a session.
- Search past conversations with `memory_search`.

## Scheduling

Use `cron_manage` to set reminders or recurring checks for yourself.
"""


@app.command()
def onboard():
    """Initialize nekobot configuration and workspace."""
    from nekobot.config.loader import get_config_path, save_config
    from nekobot.config.schema import Config
    from nekobot.memory.store import MemoryStore
    from nekobot.utils.helpers import ensure_dir

    config_path = get_config_path()

    if config_path.exists():
        console.print(f"[yellow]Config already exists at {config_path}[/yellow]")
        if not typer.confirm("Overwrite?"):
            raise typer.Exit()

    config = Config()
    save_config(config, config_path)
    console.print(f"[green]✓[/green] Created config at {config_path}")

    workspace = ensure_dir(config.workspace_path)
    console.print(f"[green]✓[/green] Created workspace at {workspace}")

    agents_file = workspace / config.agent.instructions_file
    if not agents_file.exists():
        agents_file.write_text(AGENTS_TEMPLATE, encoding="utf-8")
        console.print(f"  [dim]Created {agents_file.name}[/dim]")

    MemoryStore(workspace).init()
    console.print("  [dim]Created memory/MEMORY.md[/dim]")

    console.print(f"\n{__logo__} nekobot is ready!")
    console.print("\nNext steps:")
    console.print("  1. Add your API key to [cyan]~/.nekobot/config.json[/cyan]")
    console.print('  2. Chat: [cyan]nekobot agent -m "Hello!"[/cyan]')
    console.print("  3. Run [cyan]nekobot gateway[/cyan] for Telegram and scheduled jobs")


# ============================================================================
# Gateway / Agent
# ============================================================================


@app.command()
def gateway():
    """Start the gateway: channels, scheduler and MCP servers."""
    from nekobot.gateway import Gateway

    config = _load_config()
    _validate_api_key(config)

    console.print(f"{__logo__} Starting nekobot gateway...")
    gw = Gateway(config)
    channels = gw.router.enabled_channels
    if channels:
        console.print(f"[green]✓[/green] Channels: {', '.join(channels)}")
    else:
        console.print("[yellow]Warning: No channels enabled[/yellow]")
    if config.cron.enabled:
        console.print(f"[green]✓[/green] Scheduler: tick every {config.cron.tick_seconds:g}s")
    if config.api.enabled:
        auth = "bearer token" if config.api.token else "no auth"
        console.print(f"[green]✓[/green] API: http://{config.api.host}:{config.api.port} ({auth})")

    try:
        asyncio.run(gw.run())
    except KeyboardInterrupt:
        console.print("\nShutting down...")


@app.command()
def agent(
    message: str = typer.Option(None, "--message", "-m", help="Message to send to the agent"),
    session_id: str = typer.Option("cli:default", "--session", "-s", help="Session ID"),
):
    """Interact with the agent directly."""
    config = _load_config()
    _validate_api_key(config)
    channel, chat_id = _split_session(session_id)

    async def run_once():
        async with _direct_gateway(config) as gw:
            result = await gw.run_turn(channel, chat_id, message)
        _print_reply(result)

    async def run_interactive():
        async with _direct_gateway(config) as gw:
            while True:
                try:
                    user_input = console.input("[bold blue]You:[/bold blue] ")
                except (KeyboardInterrupt, EOFError):
                    console.print("\nGoodbye!")
                    break
                if not user_input.strip():
                    continue
                if gw.is_reset_command(user_input):
                    await gw.reset_session(f"{channel}:{chat_id}")
                    console.print("[dim]New session started.[/dim]")
                    continue
                result = await gw.run_turn(channel, chat_id, user_input)
                _print_reply(result)
                console.print()

    try:
        if message:
            asyncio.run(run_once())
        else:
            console.print(f"{__logo__} Interactive mode (Ctrl+C to exit)\n")
            asyncio.run(run_interactive())
    except NekobotError as e:
        _fail(str(e))


# ============================================================================
# Cron Commands
# ============================================================================


cron_app = typer.Typer(help="Manage scheduled jobs")
app.add_typer(cron_app, name="cron")


def _announce_option(value: str | None) -> str | None:
    from nekobot.agent.tools.cron import normalize_announce

    return normalize_announce(value)


@cron_app.command("list")
def cron_list(
    all: bool = typer.Option(False, "--all", "-a", help="Include disabled jobs"),
):
    """List scheduled jobs."""
    from nekobot.cron.schedule import format_ms

    try:
        jobs = _job_store().list_jobs(include_disabled=all)
    except NekobotError as e:
        _fail(str(e))

    if not jobs:
        console.print("No scheduled jobs.")
        return

    table = Table(title="Scheduled Jobs")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Schedule")
    table.add_column("Status")
    table.add_column("Next Run")
    table.add_column("Announce")

    for job in jobs:
        if not job.enabled:
            status = "[dim]disabled[/dim]"
        elif job.state.status == "backing_off":
            status = f"[yellow]backing off ({job.state.consecutive_failures})[/yellow]"
        elif job.state.status == "running":
            status = "[blue]running[/blue]"
        else:
            status = f"[green]{job.state.status}[/green]"
        table.add_row(
            job.id,
            job.name,
            job.trigger.describe(),
            status,
            format_ms(job.state.next_run_at_ms),
            job.announce or "",
        )

    console.print(table)


@cron_app.command("add")
def cron_add(
    prompt: str = typer.Argument(..., help="Prompt the agent runs when the job fires"),
    schedule: str = typer.Option(None, "--schedule", "-c", help="Cron expression (e.g. '0 9 * * *')"),
    at: str = typer.Option(None, "--at", help="Run once at 'YYYY-MM-DD HH:MM' (local) or RFC 3339"),
    name: str = typer.Option(None, "--name", "-n", help="Job name (defaults to the id)"),
    announce: str = typer.Option(None, "--announce", help="Deliver results to 'channel:recipient'"),
    keep: bool = typer.Option(False, "--keep", help="Keep a one-shot job after it finishes"),
):
    """Add a scheduled job."""
    from nekobot.cron.schedule import format_ms, make_trigger

    try:
        trigger = make_trigger(schedule=schedule, at=at)
        job = _job_store().add_job(
            prompt=prompt,
            trigger=trigger,
            name=name,
            announce=_announce_option(announce) or None,
            keep_after_run=keep,
        )
    except NekobotError as e:
        _fail(str(e))

    console.print(f"[green]✓[/green] Added job '{job.name}' ({job.id}), next run {format_ms(job.state.next_run_at_ms)}")


@cron_app.command("edit")
def cron_edit(
    job_id: str = typer.Argument(..., help="Job ID or name"),
    prompt: str = typer.Option(None, "--prompt", help="New prompt"),
    schedule: str = typer.Option(None, "--schedule", "-c", help="New cron expression"),
    at: str = typer.Option(None, "--at", help="New one-shot time"),
    name: str = typer.Option(None, "--name", "-n", help="New name"),
    announce: str = typer.Option(None, "--announce", help="'channel:recipient', or 'none' to clear"),
    enable: bool = typer.Option(None, "--enable/--disable", help="Enable or disable the job"),
):
    """Edit a scheduled job."""
    from nekobot.cron.schedule import make_trigger

    try:
        trigger = make_trigger(schedule=schedule, at=at) if (schedule or at) else None
        job = _job_store().edit_job(
            job_id,
            prompt=prompt,
            trigger=trigger,
            name=name,
            announce=_announce_option(announce),
            enabled=enable,
        )
    except NekobotError as e:
        _fail(str(e))

    console.print(f"[green]✓[/green] Updated job '{job.name}' ({job.id})")


@cron_app.command("remove")
def cron_remove(
    job_id: str = typer.Argument(..., help="Job ID or name to remove"),
):
    """Remove a scheduled job."""
    try:
        job = _job_store().remove_job(job_id)
    except NekobotError as e:
        _fail(str(e))

    console.print(f"[green]✓[/green] Removed job '{job.name}' ({job.id})")


@cron_app.command("history")
def cron_history(
    lines: int = typer.Option(20, "--lines", "-n", help="Number of entries to show"),
    job: str = typer.Option(None, "--job", "-j", help="Only this job (id or name)"),
):
    """Show recent job executions."""
    from nekobot.cron.schedule import format_ms

    try:
        entries = _job_store().read_history(lines=lines, job=job)
    except NekobotError as e:
        _fail(str(e))

    if not entries:
        console.print("No job history.")
        return

    table = Table(title="Job History")
    table.add_column("Started")
    table.add_column("Job", style="cyan")
    table.add_column("Attempt", justify="right")
    table.add_column("Status")
    table.add_column("Duration", justify="right")
    table.add_column("Result")

    colors = {"ok": "green", "error": "red", "interrupted": "yellow"}
    for e in entries:
        status = f"[{colors[e.status]}]{e.status}[/{colors[e.status]}]"
        if e.terminal:
            status += " (final)"
        result = e.error if e.status != "ok" else (e.response or "")
        table.add_row(
            format_ms(e.started_at_ms),
            e.job_name,
            str(e.attempt),
            status,
            f"{e.duration_ms / 1000:.1f}s",
            (result or "").replace("\n", " ")[:80],
        )

    console.print(table)


@cron_app.command("run")
def cron_run(
    job_id: str = typer.Argument(..., help="Job ID or name to run"),
    force: bool = typer.Option(False, "--force", "-f", help="Run even if disabled"),
):
    """Run a job now and record it in the history."""
    config = _load_config()
    _validate_api_key(config)

    async def run():
        async with _direct_gateway(config) as gw:
            return await gw.cron.run_job(job_id, force=force)

    try:
        entry = asyncio.run(run())
    except NekobotError as e:
        _fail(str(e))

    if entry.status == "ok":
        console.print(f"[green]✓[/green] Job '{entry.job_name}' executed")
        if entry.response:
            console.print(Markdown(entry.response))
    else:
        console.print(f"[red]Job '{entry.job_name}' failed: {entry.error}[/red]")
        raise typer.Exit(1)


# ============================================================================
# Memory Commands
# ============================================================================


memory_app = typer.Typer(help="Inspect the agent's memory")
app.add_typer(memory_app, name="memory")


def _memory_store():
    from nekobot.memory.store import MemoryStore

    config = _load_config()
    return MemoryStore(config.workspace_path, core_cap_chars=config.memory.core_cap_chars)


@memory_app.command("list")
def memory_list():
    """List memory files, newest first."""
    store = _memory_store()
    files = store.list_files()
    if not files:
        console.print("No memory files.")
        return

    table = Table(title="Memory Files")
    table.add_column("File", style="cyan")
    table.add_column("Chars", justify="right")
    table.add_column("Modified")
    for f in files:
        chars = str(f.chars)
        if f.file_id == "MEMORY.md" and f.chars > store.core_cap:
            chars = f"[yellow]{f.chars}/{store.core_cap}[/yellow]"
        table.add_row(f.file_id, chars, f.modified.strftime("%Y-%m-%d %H:%M"))
    console.print(table)


@memory_app.command("search")
def memory_search(
    query: str = typer.Argument(..., help="Text (or regex with --regex) to search for"),
    regex: bool = typer.Option(False, "--regex", "-r", help="Treat query as a regular expression"),
    case_sensitive: bool = typer.Option(False, "--case-sensitive", help="Match case"),
    limit: int = typer.Option(None, "--limit", "-n", help="Maximum results"),
):
    """Search every memory file line by line."""
    config = _load_config()
    store = _memory_store()
    try:
        hits = store.search(
            query,
            regex=regex,
            case_insensitive=not case_sensitive,
            max_results=limit or config.memory.search_max_results,
        )
    except NekobotError as e:
        _fail(str(e))

    if not hits:
        console.print(f"No matches for '{query}'.")
        return
    for hit in hits:
        console.print(f"[cyan]{hit.file_id}:{hit.line_no}[/cyan]: {hit.text}", highlight=False, markup=True)


# ============================================================================
# Session Commands
# ============================================================================


sessions_app = typer.Typer(help="Manage conversation sessions")
app.add_typer(sessions_app, name="sessions")


def _session_manager():
    from nekobot.config.loader import get_data_dir
    from nekobot.session.manager import SessionManager

    return SessionManager(get_data_dir() / "sessions")


@sessions_app.command("list")
def sessions_list():
    """List stored sessions, most recently active first."""
    sessions = _session_manager().list_sessions()
    if not sessions:
        console.print("No sessions.")
        return

    table = Table(title="Sessions")
    table.add_column("Key", style="cyan")
    table.add_column("Origin")
    table.add_column("Updated")
    for s in sessions:
        table.add_row(s["key"], s.get("origin") or "", (s.get("updated_at") or "")[:19])
    console.print(table)


@sessions_app.command("clear")
def sessions_clear(
    key: str = typer.Argument(..., help="Session key, e.g. telegram:12345"),
):
    """Clear a session's conversation history."""
    manager = _session_manager()
    if not any(s["key"] == key for s in manager.list_sessions()):
        _fail(f"Session '{key}' not found")
    manager.clear(key)
    console.print(f"[green]✓[/green] Cleared session {key}")


if __name__ == "__main__":
    app()
