from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

from hopkins.config import Config
from hopkins.dispatch import QueueManager
from hopkins.errors import ConfigError, QueueError
from hopkins.models import UTC, Generation, LoadStatus, PendingJob
from hopkins.schedule import ensure_aware_utc

module_logger = logging.getLogger(__name__)

DEFAULT_POLL_SECONDS = 10


@dataclass
class TaskState:
    next_fire: Optional[datetime]
    last_enqueued: Optional[datetime] = None


class Daemon:
    """Single scheduling authority: reloads config and enqueues due tasks."""

    def __init__(self, config: Config, manager: QueueManager, logger: Optional[logging.Logger] = None):
        self.config = config
        self.manager = manager
        self.logger = logger or module_logger
        self.states: Dict[str, TaskState] = {}
        self._stop_event = threading.Event()

    def start(self, now: Optional[datetime] = None) -> LoadStatus:
        status = self.config.load()
        generation = self.config.generation
        if not status.ok or generation is None:
            raise ConfigError(f"unable to load configuration {self.config.path}: {status.errmsg}")
        self._apply(generation, ensure_aware_utc(now or datetime.now(tz=UTC)))
        return status

    def reload(self, now: Optional[datetime] = None) -> LoadStatus:
        status = self.config.load()
        generation = self.config.generation
        if status.updated and generation is not None:
            if status.store_modified:
                self.logger.info("database settings changed in generation %s", generation.version)
            self._apply(generation, ensure_aware_utc(now or datetime.now(tz=UTC)))
        elif status.failed:
            self.logger.warning("keeping previous configuration: %s", status.errmsg)
        return status

    def _apply(self, generation: Generation, now: datetime) -> None:
        self.manager.sync(generation)
        states: Dict[str, TaskState] = {}
        for name, task in generation.tasks.items():
            if not task.enabled or task.schedule is None:
                continue
            previous = self.states.get(name)
            next_fire = task.schedule.next_after(now)
            # an occurrence that came due before this reload still fires on the next tick
            if previous and previous.next_fire is not None and previous.next_fire <= now:
                next_fire = previous.next_fire
            states[name] = TaskState(
                next_fire=next_fire,
                last_enqueued=previous.last_enqueued if previous else None,
            )
        self.states = states
        self.logger.info(
            "scheduling %s task(s) from generation %s", len(states), generation.version
        )

    def tick(self, now: Optional[datetime] = None) -> List[PendingJob]:
        current = ensure_aware_utc(now or datetime.now(tz=UTC))
        if self.config.scan():
            self.logger.info("configuration %s changed; reloading", self.config.path)
            self.reload(current)

        generation = self.config.generation
        if generation is None:
            return []

        enqueued: List[PendingJob] = []
        for name, state in self.states.items():
            task = generation.tasks.get(name)
            if task is None or task.schedule is None:
                continue
            if state.next_fire is None or state.next_fire > current:
                continue
            try:
                enqueued.append(self.manager.enqueue(task))
                state.last_enqueued = current
            except QueueError as exc:
                self.logger.error("unable to enqueue %s: %s", name, exc)
            state.next_fire = task.schedule.next_after(current)
        return enqueued

    def stop(self) -> None:
        self._stop_event.set()

    def run(self, poll_seconds: int = DEFAULT_POLL_SECONDS) -> int:
        self.logger.info(
            "Starting daemon with %s scheduled task(s), poll_seconds=%s",
            len(self.states),
            poll_seconds,
        )
        try:
            while not self._stop_event.is_set():
                self.tick()
                self._stop_event.wait(poll_seconds)
        except KeyboardInterrupt:
            self.logger.info("Daemon interrupted by user.")
            return 130
        finally:
            self.manager.shutdown()
        return 0
