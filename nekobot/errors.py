"""Shared error types for nekobot.

Goal: don't silently turn infrastructure failures into model "content".
Memory and tool failures are raised as typed errors and converted into
structured tool results at the registry boundary; persistence corruption
propagates so the caller fails loudly instead of resetting state.
"""


class NekobotError(Exception):
    """Base error for nekobot."""

    kind: str = "Error"
    retryable: bool = False


# Memory store

class InvalidTargetError(NekobotError):
    """Memory target escapes the memory root or names an unknown file."""

    kind = "InvalidTarget"


class MemoryNotFoundError(NekobotError):
    """A replace found nothing to replace."""

    kind = "NotFound"


class InvalidPatternError(NekobotError):
    """A regular expression failed to compile."""

    kind = "InvalidPattern"


# Tool registry

class ToolNotFoundError(NekobotError):
    """Tool name requested by the agent isn't registered."""

    kind = "ToolNotFound"


class InvalidArgumentsError(NekobotError):
    """Tool arguments failed schema validation."""

    kind = "InvalidArguments"


class ExecutionTimeoutError(NekobotError):
    """Tool exceeded its timeout and was cancelled."""

    kind = "ExecutionTimeout"


class ToolExecutionError(NekobotError):
    """Tool threw while executing."""

    kind = "ExecutionError"


class ConnectionLostError(NekobotError):
    """Transport to an MCP server went away. Safe to reconnect and retry."""

    kind = "ConnectionLost"
    retryable = True


class ProtocolError(NekobotError):
    """MCP server answered with a protocol-level error."""

    kind = "ProtocolError"


# Channel router

class DeliveryFailedError(NekobotError):
    """A channel could not deliver a message."""

    kind = "DeliveryFailed"


# Scheduler / job store

class CronError(NekobotError):
    """Base error for job store operations."""

    kind = "CronError"


class JobNotFoundError(CronError):
    kind = "JobNotFound"


class InvalidScheduleError(CronError):
    """Bad cron expression, bad timestamp, or conflicting trigger flags."""

    kind = "InvalidSchedule"


class JobExecutionError(CronError):
    """Wraps any failure raised during a job's agent invocation."""

    kind = "ExecutionError"


class PersistenceError(NekobotError):
    """On-disk state is unreadable. Never reset automatically."""

    kind = "PersistenceError"


# Agent loop

class ProviderCallError(NekobotError):
    """LLM/provider call failed (network/auth/model/etc.)."""

    kind = "ProviderError"
    retryable = True
