"""Time arithmetic for jobs: next occurrence, backoff ladder, --at parsing."""

import time
from datetime import datetime

from croniter import croniter

from nekobot.cron.types import CronTrigger
from nekobot.errors import InvalidScheduleError

# Seconds to wait after the Nth consecutive failure (1-based); the last
# step is the cap and is reused for every further failure.
BACKOFF_LADDER: tuple[int, ...] = (30, 60, 300, 900, 3600)
BACKOFF_CAP = BACKOFF_LADDER[-1]

_AT_FORMATS = (
    "%Y-%m-%d %H:%M",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%dT%H:%M",
    "%Y-%m-%dT%H:%M:%S",
)


def now_ms() -> int:
    return int(time.time() * 1000)


def backoff_seconds(failures: int) -> int:
    """Backoff after ``failures`` consecutive failures."""
    if failures <= 0:
        return 0
    return BACKOFF_LADDER[min(failures, len(BACKOFF_LADDER)) - 1]


def validate_cron_expr(expr: str) -> str:
    expr = (expr or "").strip()
    if len(expr.split()) != 5 or not croniter.is_valid(expr):
        raise InvalidScheduleError(
            f"Invalid cron expression {expr!r}: expected 5 fields, e.g. '0 9 * * *'"
        )
    return expr


def compute_next_run(trigger: CronTrigger, from_ms: int) -> int | None:
    """
    Next due time in ms.

    One-shot triggers always return their timestamp, even when it has already
    passed, so that an overdue job fires on the next tick.
    """
    if trigger.kind == "at":
        return trigger.at_ms
    if not trigger.expr:
        return None
    base = datetime.fromtimestamp(from_ms / 1000).astimezone()
    return int(croniter(trigger.expr, base).get_next(float) * 1000)


def parse_at(text: str) -> int:
    """
    Parse a one-shot time into epoch ms.

    Accepts ``YYYY-MM-DD HH:MM[:SS]`` / ``YYYY-MM-DDTHH:MM[:SS]`` in local
    time, or RFC 3339 with an offset (``2026-03-01T09:00:00+01:00``, ``...Z``).
    """
    text = (text or "").strip()
    for fmt in _AT_FORMATS:
        try:
            return int(datetime.strptime(text, fmt).timestamp() * 1000)
        except ValueError:
            continue
    try:
        dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        raise InvalidScheduleError(
            f"Invalid time {text!r}: use 'YYYY-MM-DD HH:MM[:SS]' or RFC 3339"
        ) from None
    return int(dt.timestamp() * 1000)


def make_trigger(schedule: str | None = None, at: str | None = None) -> CronTrigger:
    """Build a trigger from exactly one of a cron expression or an ``at`` time."""
    if schedule and at:
        raise InvalidScheduleError("Give either a cron schedule or an 'at' time, not both")
    if schedule:
        return CronTrigger(kind="cron", expr=validate_cron_expr(schedule))
    if at:
        return CronTrigger(kind="at", at_ms=parse_at(at))
    raise InvalidScheduleError("A cron schedule or an 'at' time is required")


def format_ms(ms: int | None) -> str:
    if not ms:
        return ""
    return time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(ms / 1000))
