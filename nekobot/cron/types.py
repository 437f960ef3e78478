"""Cron types (Pydantic models with camelCase JSON aliases)."""

import time
from typing import Literal

from pydantic import BaseModel, Field

JobStatus = Literal["scheduled", "running", "backing_off", "terminal"]
RunStatus = Literal["ok", "error", "interrupted"]


class CronTrigger(BaseModel):
    """When a job fires: a 5-field cron expression or a one-shot timestamp."""

    kind: Literal["cron", "at"]
    expr: str | None = None
    at_ms: int | None = Field(None, alias="atMs")

    model_config = {"populate_by_name": True}

    def describe(self) -> str:
        if self.kind == "cron":
            return self.expr or ""
        if self.at_ms is None:
            return "at ?"
        return "at " + time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(self.at_ms / 1000))


class CronJobState(BaseModel):
    """Runtime state of a job, mutated by the scheduler."""

    status: JobStatus = "scheduled"
    next_run_at_ms: int | None = Field(None, alias="nextRunAtMs")
    last_run_at_ms: int | None = Field(None, alias="lastRunAtMs")
    last_status: RunStatus | None = Field(None, alias="lastStatus")
    last_error: str | None = Field(None, alias="lastError")
    consecutive_failures: int = Field(0, alias="consecutiveFailures")
    backoff_seconds: int = Field(0, alias="backoffSeconds")
    running_since_ms: int | None = Field(None, alias="runningSinceMs")

    model_config = {"populate_by_name": True}


class CronJob(BaseModel):
    """A scheduled job."""

    id: str
    name: str
    prompt: str
    trigger: CronTrigger
    announce: str | None = None  # channel:recipient
    enabled: bool = True
    keep_after_run: bool = Field(False, alias="keepAfterRun")
    state: CronJobState = Field(default_factory=CronJobState)
    created_at_ms: int = Field(0, alias="createdAtMs")
    updated_at_ms: int = Field(0, alias="updatedAtMs")

    model_config = {"populate_by_name": True}

    @property
    def is_one_shot(self) -> bool:
        return self.trigger.kind == "at"


class HistoryEntry(BaseModel):
    """One line of history.jsonl: a single completed (or interrupted) attempt."""

    job_id: str = Field(alias="jobId")
    job_name: str = Field(alias="jobName")
    prompt: str = ""
    started_at_ms: int = Field(alias="startedAtMs")
    finished_at_ms: int = Field(alias="finishedAtMs")
    duration_ms: int = Field(0, alias="durationMs")
    status: RunStatus
    response: str | None = None
    error: str | None = None
    attempt: int = 1
    terminal: bool = False

    model_config = {"populate_by_name": True}
