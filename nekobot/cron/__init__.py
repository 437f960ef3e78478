"""Cron service for scheduled agent tasks."""

from nekobot.cron.service import CronService
from nekobot.cron.store import JobStore
from nekobot.cron.types import CronJob, CronTrigger, HistoryEntry

__all__ = ["CronService", "JobStore", "CronJob", "CronTrigger", "HistoryEntry"]
