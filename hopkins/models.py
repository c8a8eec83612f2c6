from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Tuple

if TYPE_CHECKING:
    from hopkins.schedule import OccurrenceSet

UTC = timezone.utc
DEFAULT_PRIORITY = 5
MIN_PRIORITY = 1
MAX_PRIORITY = 9
DEFAULT_CONCURRENCY = 1


def clamp_priority(value: Any) -> int:
    if value is None or isinstance(value, bool):
        return DEFAULT_PRIORITY
    try:
        priority = int(value)
    except (TypeError, ValueError):
        return DEFAULT_PRIORITY
    return max(MIN_PRIORITY, min(MAX_PRIORITY, priority))


def options_priority(options: Optional[Mapping[str, Any]]) -> int:
    return clamp_priority((options or {}).get("priority"))


@dataclass(frozen=True)
class ChainLink:
    task: str
    options: Dict[str, Any] = field(default_factory=dict)
    chain: Tuple["ChainLink", ...] = ()


@dataclass(frozen=True)
class Task:
    """A configured task that is available for enqueuing.

    ``links`` holds the chain as declared in the document; ``chain`` holds the
    derived successor tasks built from those links once chains are resolved.
    """

    name: str
    queue: Optional[str] = None
    class_name: Optional[str] = None
    cmd: Optional[str] = None
    enabled: bool = True
    options: Dict[str, Any] = field(default_factory=dict)
    schedule: Optional["OccurrenceSet"] = None
    links: Tuple[ChainLink, ...] = ()
    chain: Tuple["Task", ...] = ()
    onerror: Optional[str] = None
    run: Optional[str] = None

    @property
    def target(self) -> Optional[str]:
        return self.class_name or self.cmd

    @property
    def chain_only(self) -> bool:
        return self.schedule is None


@dataclass(frozen=True)
class QueueSpec:
    name: str
    concurrency: int = DEFAULT_CONCURRENCY
    onerror: Optional[str] = None
    onfatal: Optional[str] = None


@dataclass(frozen=True)
class DatabaseSpec:
    dsn: str = ""
    user: str = ""
    password: str = ""
    options: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Generation:
    """One validated configuration snapshot; never mutated after publish."""

    version: int
    state_root: Optional[Path]
    database: DatabaseSpec
    tasks: Dict[str, Task]
    queues: Dict[str, QueueSpec]
    plugins: Dict[str, Any]
    document: Dict[str, Any]
    loaded_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))


@dataclass
class LoadStatus:
    ok: bool = False
    parsed: bool = False
    failed: bool = False
    updated: bool = False
    store_modified: bool = False
    errors: List[str] = field(default_factory=list)

    def fail(self, message: str) -> None:
        self.failed = True
        self.errors.append(message)

    @property
    def errmsg(self) -> str:
        return "; ".join(self.errors)


@dataclass(frozen=True)
class PendingJob:
    task: Task
    options: Dict[str, Any]
    priority: int
    sequence: int
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    enqueued_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))

    @property
    def queue(self) -> Optional[str]:
        return self.task.queue

    def sort_key(self) -> Tuple[int, int]:
        return (self.priority, self.sequence)


@dataclass(frozen=True)
class JobResult:
    success: bool
    error: Optional[str] = None
    fatal: bool = False

    @staticmethod
    def coerce(outcome: Any) -> "JobResult":
        if isinstance(outcome, JobResult):
            return outcome
        if outcome is None:
            return JobResult(success=True)
        return JobResult(success=bool(outcome), error=None if outcome else "worker reported failure")
