"""cron_manage: lets the agent schedule, edit and remove its own jobs."""

import asyncio
from typing import Any

from nekobot.agent.tools.base import Tool, ToolContext
from nekobot.channels.router import parse_destination
from nekobot.cron.schedule import format_ms, make_trigger
from nekobot.cron.store import JobStore
from nekobot.errors import InvalidArgumentsError


def normalize_announce(value: str | None, default: str | None = None) -> str | None:
    """``None`` -> default, ``"none"``/empty -> no target, else a validated ``channel:recipient``."""
    if value is None:
        return default
    value = value.strip()
    if value.lower() in ("", "none"):
        return ""
    try:
        parse_destination(value)
    except ValueError as e:
        raise InvalidArgumentsError(str(e)) from None
    return value


class CronManageTool(Tool):
    """
    Same operations as the ``nekobot cron`` commands, through the same
    JobStore. When no announce target is given on add, results go back to the
    conversation that created the job.
    """

    needs_context = True

    def __init__(self, store: JobStore):
        self.store = store

    @property
    def name(self) -> str:
        return "cron_manage"

    @property
    def description(self) -> str:
        return (
            "Schedule prompts for yourself to run later. Actions: add, list, edit, remove, history. "
            "Use 'schedule' (5-field cron, e.g. '0 9 * * *') for recurring jobs or 'at' "
            "('YYYY-MM-DD HH:MM' local time) for one-shot reminders. Results are announced "
            "to the current conversation unless 'announce' says otherwise ('none' for silent)."
        )

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "action": {
                    "type": "string",
                    "enum": ["add", "list", "edit", "remove", "history"],
                    "description": "Action to perform",
                },
                "prompt": {"type": "string", "description": "What to do when the job runs (add/edit)"},
                "schedule": {"type": "string", "description": "Cron expression for recurring jobs"},
                "at": {"type": "string", "description": "One-shot time, 'YYYY-MM-DD HH:MM' or RFC 3339"},
                "name": {"type": "string", "description": "Job name (add/edit)"},
                "job": {"type": "string", "description": "Job id or name (edit/remove/history)"},
                "announce": {"type": "string", "description": "'channel:recipient' or 'none'"},
                "enabled": {"type": "boolean", "description": "Enable or disable (edit)"},
                "keep_after_run": {"type": "boolean", "description": "Keep a one-shot job after it finishes"},
            },
            "required": ["action"],
        }

    async def execute(self, ctx: ToolContext, action: str, **kwargs: Any) -> str:
        # JobStore calls block on the jobs-file lock
        return await asyncio.to_thread(self._run, ctx, action, kwargs)

    def _run(self, ctx: ToolContext, action: str, kwargs: dict[str, Any]) -> str:
        if action == "add":
            return self._add(ctx, **kwargs)
        if action == "list":
            return self._list()
        if action == "edit":
            return self._edit(**kwargs)
        if action == "remove":
            return self._remove(kwargs.get("job"))
        if action == "history":
            return self._history(kwargs.get("job"))
        raise InvalidArgumentsError(f"Unknown action: {action}")

    def _add(
        self,
        ctx: ToolContext,
        prompt: str | None = None,
        schedule: str | None = None,
        at: str | None = None,
        name: str | None = None,
        announce: str | None = None,
        keep_after_run: bool = False,
        **kwargs: Any,
    ) -> str:
        if not prompt:
            raise InvalidArgumentsError("prompt is required for add")
        trigger = make_trigger(schedule=schedule, at=at)
        target = normalize_announce(announce, default=ctx.origin)
        job = self.store.add_job(
            prompt=prompt,
            trigger=trigger,
            name=name,
            announce=target or None,
            keep_after_run=keep_after_run,
        )
        where = f", announcing to {job.announce}" if job.announce else ""
        return (
            f"Created job '{job.name}' (id: {job.id}), {trigger.describe()}, "
            f"next run {format_ms(job.state.next_run_at_ms)}{where}"
        )

    def _list(self) -> str:
        jobs = self.store.list_jobs()
        if not jobs:
            return "No scheduled jobs."
        lines = []
        for j in jobs:
            flags = [j.trigger.describe(), j.state.status if j.enabled else "disabled"]
            if j.state.next_run_at_ms:
                flags.append(f"next {format_ms(j.state.next_run_at_ms)}")
            if j.state.consecutive_failures:
                flags.append(f"{j.state.consecutive_failures} failure(s)")
            if j.announce:
                flags.append(f"-> {j.announce}")
            lines.append(f"- {j.name} (id: {j.id}; {'; '.join(flags)}): {j.prompt[:80]}")
        return "Scheduled jobs:\n" + "\n".join(lines)

    def _edit(
        self,
        job: str | None = None,
        prompt: str | None = None,
        schedule: str | None = None,
        at: str | None = None,
        name: str | None = None,
        announce: str | None = None,
        enabled: bool | None = None,
        keep_after_run: bool | None = None,
        **kwargs: Any,
    ) -> str:
        if not job:
            raise InvalidArgumentsError("job (id or name) is required for edit")
        trigger = make_trigger(schedule=schedule, at=at) if (schedule or at) else None
        updated = self.store.edit_job(
            job,
            prompt=prompt,
            trigger=trigger,
            name=name,
            announce=normalize_announce(announce),
            enabled=enabled,
            keep_after_run=keep_after_run,
        )
        return f"Updated job '{updated.name}' (id: {updated.id}), next run {format_ms(updated.state.next_run_at_ms) or 'none'}"

    def _remove(self, job: str | None) -> str:
        if not job:
            raise InvalidArgumentsError("job (id or name) is required for remove")
        removed = self.store.remove_job(job)
        return f"Removed job '{removed.name}' (id: {removed.id})"

    def _history(self, job: str | None) -> str:
        entries = self.store.read_history(lines=10, job=job)
        if not entries:
            return "No job history."
        lines = []
        for e in entries:
            detail = e.error if e.status != "ok" else (e.response or "")[:80]
            lines.append(f"- {format_ms(e.started_at_ms)} {e.job_name} [{e.status}] attempt {e.attempt}: {detail}")
        return "\n".join(lines)
