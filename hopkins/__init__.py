"""
hopkins

Cron-driven job scheduling daemon core: configuration generations, schedule
sets, task chains and priority dispatch queues.
"""

from hopkins.config import Config
from hopkins.dispatch import DispatchQueue, QueueManager, WaitingList
from hopkins.errors import ConfigError, HopkinsError, ParseError, QueueError, ScheduleError
from hopkins.models import (
    ChainLink,
    DatabaseSpec,
    Generation,
    JobResult,
    LoadStatus,
    PendingJob,
    QueueSpec,
    Task,
    clamp_priority,
)
from hopkins.schedule import OccurrenceSet, compute_occurrence_set

__version__ = "0.1.0"

__all__ = [
    "ChainLink",
    "Config",
    "ConfigError",
    "DatabaseSpec",
    "DispatchQueue",
    "Generation",
    "HopkinsError",
    "JobResult",
    "LoadStatus",
    "OccurrenceSet",
    "ParseError",
    "PendingJob",
    "QueueError",
    "QueueManager",
    "QueueSpec",
    "ScheduleError",
    "Task",
    "WaitingList",
    "clamp_priority",
    "compute_occurrence_set",
]
