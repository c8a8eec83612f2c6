from __future__ import annotations

import threading
import time
from typing import Any, List, Tuple

import pytest

from hopkins.dispatch import DispatchQueue, QueueManager, WaitingList
from hopkins.errors import QueueError
from hopkins.models import JobResult, PendingJob, QueueSpec, Task, clamp_priority


def _task(name: str, queue: str = "default", **kwargs: Any) -> Task:
    kwargs.setdefault("cmd", f"run-{name}")
    return Task(name=name, queue=queue, **kwargs)


def _job(name: str, priority: int, sequence: int) -> PendingJob:
    return PendingJob(task=_task(name), options={}, priority=priority, sequence=sequence)


def test_clamp_priority() -> None:
    assert clamp_priority(None) == 5
    assert clamp_priority(0) == 1
    assert clamp_priority(-4) == 1
    assert clamp_priority(10) == 9
    assert clamp_priority(7) == 7
    assert clamp_priority("3") == 3
    assert clamp_priority("urgent") == 5
    assert clamp_priority(True) == 5


def test_waiting_list_orders_by_priority_then_sequence() -> None:
    waiting = WaitingList()
    jobs = [_job("late", 5, 4), _job("nine", 9, 1), _job("first", 5, 2), _job("top", 1, 3)]
    for job in jobs:
        waiting.push(job)

    assert len(waiting) == 4
    assert waiting.peek().task.name == "top"
    assert [job.task.name for job in waiting.jobs()] == ["top", "first", "late", "nine"]

    removed = waiting.remove(jobs[2].id)
    assert removed is jobs[2]
    assert waiting.remove("missing") is None
    assert [waiting.pop().task.name for _ in range(3)] == ["top", "late", "nine"]
    assert waiting.peek() is None


def test_dispatch_order_is_priority_then_arrival() -> None:
    started = threading.Event()
    release = threading.Event()
    order: List[str] = []

    def worker(job: PendingJob) -> None:
        if job.task.name == "blocker":
            started.set()
            release.wait(5)
            return
        order.append(job.task.name)

    manager = QueueManager(worker)
    manager.setup([QueueSpec(name="default", concurrency=1)])
    try:
        manager.enqueue(_task("blocker"), {"priority": 1})
        assert started.wait(5)

        manager.enqueue(_task("nine"), {"priority": 9})
        manager.enqueue(_task("three-a"), {"priority": 3})
        manager.enqueue(_task("three-b"), {"priority": "3"})
        manager.enqueue(_task("unset"))
        manager.enqueue(_task("zero"), {"priority": 0})
        release.set()

        assert manager.join(5)
        assert order == ["zero", "three-a", "three-b", "unset", "nine"]
    finally:
        release.set()
        manager.shutdown()


def test_enqueue_uses_task_options_by_default() -> None:
    manager = QueueManager(lambda job: None)
    manager.setup([QueueSpec(name="default", concurrency=0)])
    try:
        job = manager.enqueue(_task("t", options={"priority": 12, "mode": "full"}))
        assert job.priority == 9
        assert job.options == {"priority": 12, "mode": "full"}
        assert job.queue == "default"
        assert manager.cancel("default", job.id)
    finally:
        manager.shutdown()


def test_concurrency_limit_is_respected() -> None:
    lock = threading.Lock()
    active = [0]
    peak = [0]
    finished: List[str] = []

    def worker(job: PendingJob) -> None:
        with lock:
            active[0] += 1
            peak[0] = max(peak[0], active[0])
        time.sleep(0.05)
        with lock:
            active[0] -= 1
            finished.append(job.task.name)

    manager = QueueManager(worker)
    manager.setup([QueueSpec(name="default", concurrency=2)])
    try:
        for idx in range(6):
            manager.enqueue(_task(f"job-{idx}"))
        assert manager.join(5)
    finally:
        manager.shutdown()

    assert 1 <= peak[0] <= 2
    assert sorted(finished) == [f"job-{idx}" for idx in range(6)]


def test_zero_concurrency_holds_jobs_until_cancelled() -> None:
    ran: List[str] = []
    manager = QueueManager(lambda job: ran.append(job.task.name))
    manager.setup([QueueSpec(name="held", concurrency=0)])
    try:
        job = manager.enqueue(_task("t", queue="held"))
        assert not manager.join(0.2)
        assert manager.cancel("held", job.id) is True
        assert manager.cancel("held", job.id) is False
        assert manager.join(1)
    finally:
        manager.shutdown()
    assert ran == []


def test_enqueue_to_unknown_queue_raises() -> None:
    manager = QueueManager(lambda job: None)
    manager.setup([QueueSpec(name="default")])
    try:
        with pytest.raises(QueueError, match="no such queue nowhere for task t"):
            manager.enqueue(_task("t", queue="nowhere"))
        with pytest.raises(QueueError):
            manager.get_queue("nowhere")
    finally:
        manager.shutdown()


def test_successful_job_enqueues_chain_successors() -> None:
    ran: List[Tuple[str, str, dict]] = []
    lock = threading.Lock()

    def worker(job: PendingJob) -> None:
        with lock:
            ran.append((job.task.name, job.task.queue or "", dict(job.options)))

    child = _task("child", queue="other", options={"mode": "fast"})
    parent = _task("parent", chain=(child,))

    manager = QueueManager(worker)
    manager.setup([QueueSpec(name="default"), QueueSpec(name="other")])
    try:
        manager.enqueue(parent)
        assert manager.join(5)
    finally:
        manager.shutdown()

    assert ran == [("parent", "default", {}), ("child", "other", {"mode": "fast"})]


def test_failures_are_routed_to_policy_handlers() -> None:
    errors: List[Tuple[str, str, Any]] = []
    fatals: List[Tuple[str, str, Any]] = []
    ran: List[str] = []
    lock = threading.Lock()

    def worker(job: PendingJob) -> Any:
        with lock:
            ran.append(job.task.name)
        if job.task.name == "bad":
            return JobResult(success=False, error="boom")
        if job.task.name == "fatal":
            return JobResult(success=False, error="dead", fatal=True)
        if job.task.name == "raises":
            raise RuntimeError("kaboom")
        if job.task.name == "falsey":
            return False
        return None

    def on_error(spec: QueueSpec, job: PendingJob, result: JobResult) -> None:
        with lock:
            errors.append((spec.name, job.task.name, result.error))

    def on_fatal(spec: QueueSpec, job: PendingJob, result: JobResult) -> None:
        with lock:
            fatals.append((spec.name, job.task.name, result.error))

    manager = QueueManager(worker, on_error=on_error, on_fatal=on_fatal)
    manager.setup([QueueSpec(name="default", concurrency=1, onerror="halt", onfatal="shutdown")])
    try:
        manager.enqueue(_task("bad", chain=(_task("never"),)))
        manager.enqueue(_task("fatal"))
        manager.enqueue(_task("raises"))
        manager.enqueue(_task("falsey"))
        assert manager.join(5)
    finally:
        manager.shutdown()

    assert "never" not in ran
    assert sorted(errors) == [
        ("default", "bad", "boom"),
        ("default", "falsey", "worker reported failure"),
        ("default", "raises", "kaboom"),
    ]
    assert fatals == [("default", "fatal", "dead")]


def test_setup_keeps_unchanged_and_recreates_changed_queues() -> None:
    ran: List[str] = []
    manager = QueueManager(lambda job: ran.append(job.task.name))
    manager.setup([QueueSpec(name="keep"), QueueSpec(name="held", concurrency=0), QueueSpec(name="gone")])
    try:
        kept = manager.get_queue("keep")
        manager.enqueue(_task("waiting", queue="held"))

        manager.setup([QueueSpec(name="keep"), QueueSpec(name="held", concurrency=1)])

        assert manager.get_queue("keep") is kept
        assert manager.get_queue("held").spec.concurrency == 1
        assert manager.is_running("held")
        assert not manager.is_running("gone")
        assert sorted(manager.queue_names()) == ["held", "keep"]
        assert manager.join(5)
        assert ran == ["waiting"]
    finally:
        manager.shutdown()
    assert not manager.is_running("keep")


def test_stop_before_start_returns_submitted_jobs() -> None:
    queue = DispatchQueue(QueueSpec(name="idle"), lambda job: None)
    job = _job("t", 5, 1)
    queue.submit(job)
    assert queue.outstanding == 1
    assert not queue.is_running()

    assert queue.stop() == [job]
    assert queue.outstanding == 0
    with pytest.raises(QueueError, match="is stopped"):
        queue.submit(_job("late", 5, 2))
    with pytest.raises(QueueError, match="not running"):
        queue.cancel(job.id)


def test_stop_hands_back_undispatched_jobs() -> None:
    queue = DispatchQueue(QueueSpec(name="held", concurrency=0), lambda job: None)
    queue.start()
    first = _job("a", 5, 1)
    second = _job("b", 1, 2)
    queue.submit(first)
    queue.submit(second)

    leftovers = queue.stop()
    assert leftovers == [second, first]
    assert not queue.is_running()
    assert queue.join(0)


def test_consecutive_failures_escalate_to_fatal() -> None:
    errors: List[str] = []
    fatals: List[Tuple[str, Any]] = []

    def worker(job: PendingJob) -> bool:
        return job.task.name.startswith("ok")

    manager = QueueManager(
        worker,
        on_error=lambda spec, job, result: errors.append(job.task.name),
        on_fatal=lambda spec, job, result: fatals.append((job.task.name, result.error)),
        fatal_after=2,
    )
    manager.setup([QueueSpec(name="default", concurrency=1)])
    try:
        for name in ["bad-1", "ok-1", "bad-2", "bad-3", "bad-4"]:
            manager.enqueue(_task(name))
        assert manager.join(5)
    finally:
        manager.shutdown()

    assert errors == ["bad-1", "bad-2", "bad-4"]
    assert fatals == [("bad-3", "worker reported failure (2 consecutive failures)")]
