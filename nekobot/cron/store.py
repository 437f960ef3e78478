"""Job store: ``cron/jobs.json`` (array of jobs) and ``cron/history.jsonl``.

Every mutation is a read-modify-write under an exclusive flock followed by
an atomic rename, so the gateway, the CLI and the agent's own cron_manage
calls never clobber each other. An unreadable file is reported, never reset.
"""

import json
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from loguru import logger
from pydantic import ValidationError

from nekobot.cron.schedule import compute_next_run, now_ms
from nekobot.cron.types import CronJob, CronJobState, CronTrigger, HistoryEntry
from nekobot.errors import CronError, JobNotFoundError, PersistenceError
from nekobot.utils.helpers import append_line, atomic_write_text, ensure_dir, file_lock


class JobStore:
    """Persistent job definitions and execution history."""

    def __init__(self, cron_dir: Path):
        self.cron_dir = ensure_dir(cron_dir)
        self.jobs_path = cron_dir / "jobs.json"
        self.history_path = cron_dir / "history.jsonl"
        self._lock_path = cron_dir / ".jobs.lock"

    # -- Raw persistence --

    def _read(self) -> list[CronJob]:
        if not self.jobs_path.exists():
            return []
        raw = self.jobs_path.read_text(encoding="utf-8")
        if not raw.strip():
            return []
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise PersistenceError(f"{self.jobs_path} is not valid JSON: {e}") from e
        if not isinstance(data, list):
            raise PersistenceError(f"{self.jobs_path} must contain a JSON array of jobs")
        try:
            return [CronJob.model_validate(item) for item in data]
        except ValidationError as e:
            raise PersistenceError(f"{self.jobs_path} has an invalid job record: {e}") from e

    def _write(self, jobs: list[CronJob]) -> None:
        data = [job.model_dump(by_alias=True, mode="json") for job in jobs]
        atomic_write_text(self.jobs_path, json.dumps(data, indent=2, ensure_ascii=False))

    @contextmanager
    def transaction(self) -> Iterator[list[CronJob]]:
        """Lock, load, let the caller mutate the list in place, save.

        Nothing is written if the block raises.
        """
        with file_lock(self._lock_path):
            jobs = self._read()
            yield jobs
            self._write(jobs)

    # -- Queries --

    def list_jobs(self, include_disabled: bool = True) -> list[CronJob]:
        with file_lock(self._lock_path):
            jobs = self._read()
        if not include_disabled:
            jobs = [j for j in jobs if j.enabled]
        return sorted(jobs, key=lambda j: j.state.next_run_at_ms or float("inf"))

    def get(self, id_or_name: str) -> CronJob:
        with file_lock(self._lock_path):
            return _find(self._read(), id_or_name)

    # -- Mutations --

    def add_job(
        self,
        prompt: str,
        trigger: CronTrigger,
        name: str | None = None,
        announce: str | None = None,
        keep_after_run: bool = False,
    ) -> CronJob:
        """Create a job; its first due time is computed from the trigger."""
        if not prompt.strip():
            raise CronError("Job prompt must not be empty")
        now = now_ms()
        with self.transaction() as jobs:
            job_id = _new_id(jobs)
            name = (name or "").strip() or job_id
            if any(j.name == name or j.id == name for j in jobs):
                raise CronError(f"A job named '{name}' already exists")
            job = CronJob(
                id=job_id,
                name=name,
                prompt=prompt,
                trigger=trigger,
                announce=announce or None,
                keep_after_run=keep_after_run,
                state=CronJobState(next_run_at_ms=compute_next_run(trigger, now)),
                created_at_ms=now,
                updated_at_ms=now,
            )
            jobs.append(job)
        logger.info(f"Cron: added job '{job.name}' ({job.id}) {trigger.describe()}")
        return job

    def edit_job(
        self,
        id_or_name: str,
        *,
        prompt: str | None = None,
        trigger: CronTrigger | None = None,
        name: str | None = None,
        announce: str | None = None,
        enabled: bool | None = None,
        keep_after_run: bool | None = None,
    ) -> CronJob:
        """
        Update fields that are not None. ``announce=""`` clears the target.

        A new trigger, or re-enabling a disabled job, resets the retry state
        and recomputes the next due time.
        """
        now = now_ms()
        with self.transaction() as jobs:
            job = _find(jobs, id_or_name)
            reschedule = False

            if prompt is not None:
                if not prompt.strip():
                    raise CronError("Job prompt must not be empty")
                job.prompt = prompt
            if name is not None and name != job.name:
                if any(j is not job and (j.name == name or j.id == name) for j in jobs):
                    raise CronError(f"A job named '{name}' already exists")
                job.name = name
            if announce is not None:
                job.announce = announce or None
            if keep_after_run is not None:
                job.keep_after_run = keep_after_run
            if trigger is not None:
                job.trigger = trigger
                reschedule = True
            if enabled is not None and enabled != job.enabled:
                job.enabled = enabled
                reschedule = reschedule or enabled

            if reschedule:
                job.state.consecutive_failures = 0
                job.state.backoff_seconds = 0
                job.state.next_run_at_ms = compute_next_run(job.trigger, now)
                if job.state.status != "running":
                    job.state.status = "scheduled"
            job.updated_at_ms = now
            result = job.model_copy(deep=True)
        logger.info(f"Cron: edited job '{result.name}' ({result.id})")
        return result

    def remove_job(self, id_or_name: str) -> CronJob:
        with self.transaction() as jobs:
            job = _find(jobs, id_or_name)
            jobs.remove(job)
        logger.info(f"Cron: removed job '{job.name}' ({job.id})")
        return job

    def claim_due(self, now: int) -> list[CronJob]:
        """
        Atomically move every due job to ``running`` and return copies.

        A job already running is never claimed again, so overlapping ticks
        (or processes) cannot fire the same job twice.
        """
        claimed: list[CronJob] = []
        with self.transaction() as jobs:
            for job in jobs:
                due = job.state.next_run_at_ms is not None and job.state.next_run_at_ms <= now
                if job.enabled and due and job.state.status in ("scheduled", "backing_off"):
                    job.state.status = "running"
                    job.state.running_since_ms = now
                    claimed.append(job.model_copy(deep=True))
        return claimed

    def claim(self, id_or_name: str, now: int, force: bool = False) -> CronJob:
        """Claim one job for a manual run, regardless of its due time."""
        with self.transaction() as jobs:
            job = _find(jobs, id_or_name)
            if job.state.status == "running":
                raise CronError(f"Job '{job.name}' is already running")
            if not job.enabled and not force:
                raise CronError(f"Job '{job.name}' is disabled (use force to run anyway)")
            job.state.status = "running"
            job.state.running_since_ms = now
            return job.model_copy(deep=True)

    # -- History --

    def append_history(self, entry: HistoryEntry) -> None:
        append_line(
            self.history_path,
            json.dumps(entry.model_dump(by_alias=True, mode="json"), ensure_ascii=False),
        )

    def read_history(self, lines: int | None = 20, job: str | None = None) -> list[HistoryEntry]:
        """Last ``lines`` entries (oldest first), optionally for one job id or name."""
        if not self.history_path.exists():
            return []
        entries: list[HistoryEntry] = []
        with open(self.history_path, encoding="utf-8") as f:
            for line_no, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(HistoryEntry.model_validate_json(line))
                except ValidationError as e:
                    raise PersistenceError(
                        f"{self.history_path}:{line_no} is not a valid history entry: {e}"
                    ) from e
        if job:
            entries = [e for e in entries if job in (e.job_id, e.job_name)]
        if lines is not None and lines >= 0:
            entries = entries[-lines:] if lines else []
        return entries


def _find(jobs: list[CronJob], id_or_name: str) -> CronJob:
    for job in jobs:
        if job.id == id_or_name:
            return job
    for job in jobs:
        if job.name == id_or_name:
            return job
    raise JobNotFoundError(f"Job '{id_or_name}' not found")


def _new_id(jobs: list[CronJob]) -> str:
    taken = {j.id for j in jobs}
    while True:
        job_id = uuid.uuid4().hex[:8]
        if job_id not in taken:
            return job_id
