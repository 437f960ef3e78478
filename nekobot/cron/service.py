"""Cron service: the tick loop that fires due jobs."""

import asyncio
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from loguru import logger

from nekobot.cron.schedule import BACKOFF_CAP, backoff_seconds, compute_next_run, now_ms
from nekobot.cron.store import JobStore
from nekobot.cron.types import CronJob, HistoryEntry, RunStatus
from nekobot.errors import JobExecutionError
from nekobot.utils.helpers import truncate_string

if TYPE_CHECKING:
    from nekobot.channels.router import ChannelRouter

JobCallback = Callable[[CronJob], Awaitable[str | None]]

HISTORY_RESPONSE_CHARS = 1000


def apply_outcome(job: CronJob, status: RunStatus, started_ms: int, finished_ms: int, error: str | None = None) -> bool:
    """
    Move a job out of ``running`` after an attempt. Returns True if terminal.

    Success resets the failure count. A recurring job then gets its next
    occurrence; a one-shot job becomes terminal. Failure bumps the count and
    delays by the backoff ladder; a one-shot job that fails while already at
    the capped backoff becomes terminal. An interrupted attempt leaves the
    retry state and due time untouched.
    """
    state = job.state
    state.running_since_ms = None
    state.last_run_at_ms = started_ms
    state.last_status = status
    job.updated_at_ms = finished_ms

    if status == "interrupted":
        state.last_error = error
        state.status = "backing_off" if state.consecutive_failures else "scheduled"
        return False

    if status == "ok":
        state.last_error = None
        state.consecutive_failures = 0
        state.backoff_seconds = 0
        if job.is_one_shot:
            state.status = "terminal"
            state.next_run_at_ms = None
            job.enabled = False
            return True
        state.status = "scheduled"
        state.next_run_at_ms = compute_next_run(job.trigger, finished_ms)
        return False

    state.last_error = error
    exhausted = job.is_one_shot and state.backoff_seconds >= BACKOFF_CAP
    state.consecutive_failures += 1
    if exhausted:
        state.status = "terminal"
        state.next_run_at_ms = None
        job.enabled = False
        return True
    state.backoff_seconds = backoff_seconds(state.consecutive_failures)
    state.status = "backing_off"
    state.next_run_at_ms = finished_ms + state.backoff_seconds * 1000
    return False


class CronService:
    """
    Fires due jobs on a fixed tick.

    Due-job selection is serialized (one tick at a time, and the store claims
    jobs atomically); each claimed job then runs in its own task so a slow job
    never delays the next tick.
    """

    def __init__(
        self,
        store: JobStore,
        on_job: JobCallback | None = None,
        router: "ChannelRouter | None" = None,
        tick_seconds: float = 15.0,
        job_timeout: float | None = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.store = store
        self.on_job = on_job  # Runs the agent for a job, returns response text
        self.router = router
        self.tick_seconds = tick_seconds
        self.job_timeout = job_timeout
        self._clock = clock
        self._tick_lock = asyncio.Lock()
        self._loop_task: asyncio.Task | None = None
        self._inflight: dict[str, asyncio.Task] = {}
        self._running = False

    # -- Lifecycle --

    async def start(self) -> None:
        """Recover jobs left running by a previous process and start ticking."""
        self._running = True
        await asyncio.to_thread(self._recover_stale)
        self._loop_task = asyncio.create_task(self._run_loop())
        jobs = await asyncio.to_thread(self.store.list_jobs)
        logger.info(f"Cron service started with {len(jobs)} jobs (tick {self.tick_seconds:g}s)")

    async def stop(self, grace: float = 30.0) -> None:
        """
        Stop ticking, give in-flight jobs ``grace`` seconds, then cancel them.

        Cancelled jobs are recorded as interrupted in the history.
        """
        self._running = False
        if self._loop_task:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        tasks = list(self._inflight.values())
        if not tasks:
            return
        logger.info(f"Cron: waiting up to {grace:g}s for {len(tasks)} running job(s)")
        _, pending = await asyncio.wait(tasks, timeout=grace)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.tick()
            except Exception as e:
                # e.g. PersistenceError: keep the loop alive, never rewrite the file
                logger.error(f"Cron: tick failed: {e}")
            await asyncio.sleep(self.tick_seconds)

    def _recover_stale(self) -> None:
        now = self._clock()
        stale: list[CronJob] = []
        with self.store.transaction() as jobs:
            for job in jobs:
                if job.state.status == "running":
                    started = job.state.running_since_ms or now
                    apply_outcome(job, "interrupted", started, now, "process exited during run")
                    stale.append(job.model_copy(deep=True))
        for job in stale:
            logger.warning(f"Cron: job '{job.name}' ({job.id}) was interrupted by a restart")
            self.store.append_history(self._entry(job, "interrupted", job.state.last_run_at_ms or now, now,
                                                  error="process exited during run"))

    # -- Ticking --

    async def tick(self) -> list[asyncio.Task]:
        """Claim every due job and start it. Returns the started tasks."""
        async with self._tick_lock:
            claimed = await asyncio.to_thread(self.store.claim_due, self._clock())
            tasks = []
            for job in claimed:
                task = asyncio.create_task(self._execute_job(job))
                self._inflight[job.id] = task
                task.add_done_callback(lambda _t, job_id=job.id: self._inflight.pop(job_id, None))
                tasks.append(task)
            return tasks

    async def run_job(self, id_or_name: str, force: bool = False) -> HistoryEntry:
        """Run one job now, outside its schedule, and wait for it."""
        job = await asyncio.to_thread(self.store.claim, id_or_name, self._clock(), force)
        task = asyncio.create_task(self._execute_job(job))
        self._inflight[job.id] = task
        try:
            return await task
        finally:
            self._inflight.pop(job.id, None)

    async def _execute_job(self, job: CronJob) -> HistoryEntry:
        """Run one claimed job and record the outcome. Never raises except on cancellation."""
        started = self._clock()
        attempt = job.state.consecutive_failures + 1
        logger.info(f"Cron: executing job '{job.name}' ({job.id}) attempt {attempt}")

        response: str | None = None
        error: str | None = None
        try:
            if self.on_job:
                coro = self.on_job(job)
                response = await (asyncio.wait_for(coro, self.job_timeout) if self.job_timeout else coro)
            status: RunStatus = "ok"
        except asyncio.CancelledError:
            await self._finish(job, "interrupted", started, attempt, error="cancelled during shutdown")
            raise
        except asyncio.TimeoutError:
            status, error = "error", str(JobExecutionError(f"timed out after {self.job_timeout}s"))
        except Exception as e:
            status, error = "error", str(JobExecutionError(f"{type(e).__name__}: {e}"))

        entry = await self._finish(job, status, started, attempt, response=response, error=error)

        if status == "ok":
            logger.info(f"Cron: job '{job.name}' completed")
            if job.announce and response and self.router:
                await self.router.deliver(job.announce, response)
        else:
            logger.error(f"Cron: job '{job.name}' failed: {error}")
        return entry

    async def _finish(
        self,
        job: CronJob,
        status: RunStatus,
        started: int,
        attempt: int,
        response: str | None = None,
        error: str | None = None,
    ) -> HistoryEntry:
        entry = self._entry(job, status, started, self._clock(), response=response, error=error, attempt=attempt)
        # The store blocks on its file lock; keep the event loop free meanwhile.
        return await asyncio.to_thread(self._record, job, entry)

    def _record(self, job: CronJob, entry: HistoryEntry) -> HistoryEntry:
        """Apply the outcome to the stored job and append the history entry."""
        status, started, finished = entry.status, entry.started_at_ms, entry.finished_at_ms
        with self.store.transaction() as jobs:
            current = next((j for j in jobs if j.id == job.id), None)
            if current is None:
                logger.info(f"Cron: job '{job.name}' was removed while running")
            else:
                entry.terminal = apply_outcome(current, status, started, finished, entry.error)
                if entry.terminal and not current.keep_after_run:
                    jobs.remove(current)
                    logger.info(f"Cron: one-shot job '{job.name}' finished and was removed")
                elif current.state.status == "backing_off":
                    logger.info(
                        f"Cron: job '{job.name}' backing off {current.state.backoff_seconds}s "
                        f"after {current.state.consecutive_failures} failure(s)"
                    )

        self.store.append_history(entry)
        return entry

    @staticmethod
    def _entry(
        job: CronJob,
        status: RunStatus,
        started: int,
        finished: int,
        response: str | None = None,
        error: str | None = None,
        attempt: int = 1,
        terminal: bool = False,
    ) -> HistoryEntry:
        return HistoryEntry(
            job_id=job.id,
            job_name=job.name,
            prompt=job.prompt,
            started_at_ms=started,
            finished_at_ms=finished,
            duration_ms=max(0, finished - started),
            status=status,
            response=truncate_string(response, HISTORY_RESPONSE_CHARS) if response else None,
            error=error,
            attempt=attempt,
            terminal=terminal,
        )

    # -- Introspection --

    def status(self) -> dict[str, Any]:
        """Get service status."""
        jobs = self.store.list_jobs()
        due = [j.state.next_run_at_ms for j in jobs if j.enabled and j.state.next_run_at_ms]
        return {
            "enabled": self._running,
            "jobs": len(jobs),
            "running": sorted(self._inflight),
            "next_wake_at_ms": min(due) if due else None,
        }
