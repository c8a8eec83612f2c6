from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from dataclasses import replace
from queue import Empty, Queue
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from hopkins.errors import QueueError
from hopkins.models import (
    Generation,
    JobResult,
    PendingJob,
    QueueSpec,
    Task,
    options_priority,
)

module_logger = logging.getLogger(__name__)

Worker = Callable[[PendingJob], Any]
FinishedCallback = Callable[["DispatchQueue", PendingJob, JobResult], None]
PolicyHandler = Callable[[QueueSpec, PendingJob, JobResult], None]

ENQUEUE = "enqueue"
DONE = "done"
CANCEL = "cancel"
STOP = "stop"
DEFAULT_REPLY_TIMEOUT = 5.0


class WaitingList:
    """Pending jobs ordered by priority (1 first), then by arrival."""

    def __init__(self) -> None:
        self._heap: List[Tuple[int, int, int, PendingJob]] = []
        self._tiebreak = itertools.count()

    def __len__(self) -> int:
        return len(self._heap)

    def push(self, job: PendingJob) -> None:
        heapq.heappush(self._heap, (job.priority, job.sequence, next(self._tiebreak), job))

    def pop(self) -> PendingJob:
        return heapq.heappop(self._heap)[-1]

    def peek(self) -> Optional[PendingJob]:
        return self._heap[0][-1] if self._heap else None

    def remove(self, job_id: str) -> Optional[PendingJob]:
        for idx, entry in enumerate(self._heap):
            if entry[-1].id == job_id:
                self._heap[idx] = self._heap[-1]
                self._heap.pop()
                heapq.heapify(self._heap)
                return entry[-1]
        return None

    def jobs(self) -> List[PendingJob]:
        return [entry[-1] for entry in sorted(self._heap)]

    def drain(self) -> List[PendingJob]:
        out = self.jobs()
        self._heap.clear()
        return out


class DispatchQueue:
    """Scheduling loop for one named queue.

    The loop thread owns the waiting list and the active slots; every other
    thread talks to it through the inbox. Each batch of inbox messages is
    applied in full before the next dispatch decision.
    """

    def __init__(
        self,
        spec: QueueSpec,
        worker: Worker,
        on_finished: Optional[FinishedCallback] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.spec = spec
        self.logger = logger or module_logger
        self._worker = worker
        self._on_finished = on_finished
        self._inbox: "Queue[Tuple[Any, ...]]" = Queue()
        self._waiting = WaitingList()
        self._active: Dict[str, PendingJob] = {}
        self._thread: Optional[threading.Thread] = None
        self._stopped = threading.Event()
        self._settled = threading.Condition()
        self._outstanding = 0

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def outstanding(self) -> int:
        with self._settled:
            return self._outstanding

    @property
    def pending_count(self) -> int:
        return len(self._waiting)

    @property
    def active_count(self) -> int:
        return len(self._active)

    def start(self) -> None:
        if self._thread is not None:
            raise QueueError(f"queue {self.name} already started")
        self._thread = threading.Thread(target=self._run, daemon=True, name=f"hopkins-queue-{self.name}")
        self._thread.start()

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stopped.is_set()

    def submit(self, job: PendingJob) -> None:
        if self._stopped.is_set():
            raise QueueError(f"queue {self.name} is stopped")
        with self._settled:
            self._outstanding += 1
        self._inbox.put((ENQUEUE, job))

    def cancel(self, job_id: str, timeout: float = DEFAULT_REPLY_TIMEOUT) -> bool:
        if not self.is_running():
            raise QueueError(f"queue {self.name} is not running")
        reply: "Queue[bool]" = Queue(maxsize=1)
        self._inbox.put((CANCEL, job_id, reply))
        try:
            return reply.get(timeout=timeout)
        except Empty as exc:
            raise QueueError(f"queue {self.name} did not answer cancel for {job_id}") from exc

    def stop(self, timeout: float = DEFAULT_REPLY_TIMEOUT) -> List[PendingJob]:
        """Stop the loop and hand back the jobs that were never dispatched."""
        if self._stopped.is_set():
            return []
        if self._thread is None or not self._thread.is_alive():
            self._stopped.set()
            while True:
                try:
                    message = self._inbox.get_nowait()
                except Empty:
                    break
                if message[0] == ENQUEUE:
                    self._waiting.push(message[1])
            leftovers = self._waiting.drain()
            self._settle(len(leftovers))
            return leftovers

        reply: "Queue[List[PendingJob]]" = Queue(maxsize=1)
        self._inbox.put((STOP, reply))
        try:
            leftovers = reply.get(timeout=timeout)
        except Empty as exc:
            raise QueueError(f"queue {self.name} did not stop within {timeout}s") from exc
        self._thread.join(timeout)
        return leftovers

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait until every submitted job has finished or been cancelled."""
        with self._settled:
            return self._settled.wait_for(lambda: self._outstanding == 0, timeout)

    def waiting_jobs(self) -> List[PendingJob]:
        return self._waiting.jobs()

    def _settle(self, count: int) -> None:
        if count <= 0:
            return
        with self._settled:
            self._outstanding -= count
            self._settled.notify_all()

    def _run(self) -> None:
        self.logger.info("queue %s started (concurrency=%s)", self.name, self.spec.concurrency)
        while True:
            batch = [self._inbox.get()]
            while True:
                try:
                    batch.append(self._inbox.get_nowait())
                except Empty:
                    break

            stop_reply: Optional["Queue[List[PendingJob]]"] = None
            for message in batch:
                kind = message[0]
                if kind == ENQUEUE:
                    self._waiting.push(message[1])
                elif kind == DONE:
                    self._release(message[1])
                elif kind == CANCEL:
                    message[2].put(self._cancel(message[1]))
                elif kind == STOP:
                    stop_reply = message[1]

            if stop_reply is not None:
                self._stopped.set()
                leftovers = self._waiting.drain()
                self._settle(len(leftovers))
                self.logger.info(
                    "queue %s stopped with %s undispatched job(s) and %s in flight",
                    self.name,
                    len(leftovers),
                    len(self._active),
                )
                stop_reply.put(leftovers)
                return

            self._dispatch()

    def _dispatch(self) -> None:
        while len(self._active) < self.spec.concurrency and len(self._waiting):
            job = self._waiting.pop()
            self._active[job.id] = job
            self.logger.info(
                "dispatching %s from queue %s (priority=%s, active=%s/%s)",
                job.task.name,
                self.name,
                job.priority,
                len(self._active),
                self.spec.concurrency,
            )
            thread = threading.Thread(
                target=self._execute,
                args=(job,),
                daemon=True,
                name=f"hopkins-worker-{self.name}-{job.id}",
            )
            thread.start()

    def _release(self, job_id: str) -> None:
        if self._active.pop(job_id, None) is not None:
            self._settle(1)

    def _cancel(self, job_id: str) -> bool:
        job = self._waiting.remove(job_id)
        if job is None:
            return False
        self.logger.info("cancelled pending job %s (%s) in queue %s", job_id, job.task.name, self.name)
        self._settle(1)
        return True

    def _execute(self, job: PendingJob) -> None:
        try:
            try:
                result = JobResult.coerce(self._worker(job))
            except Exception as exc:
                self.logger.exception("worker raised while running %s", job.task.name)
                result = JobResult(success=False, error=str(exc))

            if result.success:
                self.logger.info("task %s completed in queue %s", job.task.name, self.name)
            else:
                self.logger.error("task %s failed in queue %s: %s", job.task.name, self.name, result.error)

            if self._on_finished is not None:
                self._on_finished(self, job, result)
        finally:
            self._inbox.put((DONE, job.id))


class QueueManager:
    """Registry of dispatch queues, keyed by queue name.

    Successful jobs enqueue their resolved chain successors; failures are
    routed to the ``onerror`` handler, or ``onfatal`` when flagged fatal or
    when a queue reaches ``fatal_after`` consecutive failures.
    """

    def __init__(
        self,
        worker: Worker,
        on_error: Optional[PolicyHandler] = None,
        on_fatal: Optional[PolicyHandler] = None,
        logger: Optional[logging.Logger] = None,
        fatal_after: Optional[int] = None,
    ):
        self.logger = logger or module_logger
        self._worker = worker
        self._on_error = on_error or self._log_error
        self._on_fatal = on_fatal or self._log_fatal
        self._queues: Dict[str, DispatchQueue] = {}
        self._lock = threading.Lock()
        self._sequence = itertools.count(1)
        self.fatal_after = fatal_after
        self._failures: Dict[str, int] = {}

    def sync(self, generation: Generation) -> None:
        self.setup(generation.queues.values())

    def setup(self, specs: Iterable[QueueSpec]) -> None:
        wanted = {spec.name: spec for spec in specs}
        with self._lock:
            current = dict(self._queues)
            registry: Dict[str, DispatchQueue] = {}
            for name, spec in wanted.items():
                existing = current.pop(name, None)
                if existing is not None and existing.spec == spec:
                    registry[name] = existing
                    continue
                queue = self._spawn(spec)
                if existing is not None:
                    leftovers = existing.stop()
                    for job in leftovers:
                        queue.submit(job)
                    self.logger.info("re-created queue %s; moved %s pending job(s)", name, len(leftovers))
                registry[name] = queue
            self._queues = registry

        for name, queue in current.items():
            leftovers = queue.stop()
            if leftovers:
                self.logger.warning("queue %s removed; dropped %s pending job(s)", name, len(leftovers))
            else:
                self.logger.info("queue %s removed", name)

    def _spawn(self, spec: QueueSpec) -> DispatchQueue:
        self.logger.debug("spawning queue %s", spec.name)
        queue = DispatchQueue(spec, self._worker, on_finished=self._job_finished, logger=self.logger)
        queue.start()
        return queue

    def queue_names(self) -> List[str]:
        with self._lock:
            return list(self._queues)

    def get_queue(self, name: str) -> DispatchQueue:
        with self._lock:
            queue = self._queues.get(name)
        if queue is None:
            raise QueueError(f"no such queue {name}")
        return queue

    def is_running(self, name: str) -> bool:
        with self._lock:
            queue = self._queues.get(name)
        return queue is not None and queue.is_running()

    def enqueue(self, task: Task, options: Optional[Mapping[str, Any]] = None) -> PendingJob:
        effective = dict(task.options if options is None else options)
        with self._lock:
            queue = self._queues.get(task.queue or "")
            if queue is None:
                raise QueueError(f"no such queue {task.queue} for task {task.name}")
            job = PendingJob(
                task=task,
                options=effective,
                priority=options_priority(effective),
                sequence=next(self._sequence),
            )
            queue.submit(job)
        self.logger.debug("enqueued %s as job %s (priority=%s)", task.name, job.id, job.priority)
        return job

    def cancel(self, queue_name: str, job_id: str) -> bool:
        return self.get_queue(queue_name).cancel(job_id)

    def join(self, timeout: Optional[float] = None) -> bool:
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._lock:
                queues = list(self._queues.values())
            for queue in queues:
                remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
                if not queue.join(remaining):
                    return False
            if all(queue.outstanding == 0 for queue in queues):
                return True

    def shutdown(self) -> None:
        with self._lock:
            queues = self._queues
            self._queues = {}
        for name, queue in queues.items():
            leftovers = queue.stop()
            if leftovers:
                self.logger.warning("queue %s shut down; dropped %s pending job(s)", name, len(leftovers))

    def _job_finished(self, queue: DispatchQueue, job: PendingJob, result: JobResult) -> None:
        streak = self._count_failure(queue.name, result)
        if result.success:
            for successor in job.task.chain:
                try:
                    self.enqueue(successor)
                except QueueError as exc:
                    self.logger.error(
                        "unable to enqueue chained task %s after %s: %s",
                        successor.name,
                        job.task.name,
                        exc,
                    )
            return
        if not result.fatal and self.fatal_after and streak >= self.fatal_after:
            result = replace(result, fatal=True, error=f"{result.error} ({streak} consecutive failures)")
        if result.fatal:
            with self._lock:
                self._failures.pop(queue.name, None)
        handler = self._on_fatal if result.fatal else self._on_error
        handler(queue.spec, job, result)

    def _count_failure(self, queue_name: str, result: JobResult) -> int:
        with self._lock:
            if result.success:
                self._failures.pop(queue_name, None)
                return 0
            streak = self._failures.get(queue_name, 0) + 1
            self._failures[queue_name] = streak
            return streak

    def _log_error(self, spec: QueueSpec, job: PendingJob, result: JobResult) -> None:
        self.logger.error(
            "task %s failed in queue %s (onerror=%s): %s",
            job.task.name,
            spec.name,
            job.task.onerror or spec.onerror,
            result.error,
        )

    def _log_fatal(self, spec: QueueSpec, job: PendingJob, result: JobResult) -> None:
        self.logger.critical(
            "task %s failed fatally in queue %s (onfatal=%s): %s",
            job.task.name,
            spec.name,
            spec.onfatal,
            result.error,
        )
