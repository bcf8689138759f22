from __future__ import annotations

import asyncio
import threading
import time

import pytest

from witzo.ingestion_queue import IngestionQueue, IngestionQueueFull, IngestionTask


def _task(job_id: str, tenant_id: str) -> IngestionTask:
    return IngestionTask(job_id=job_id, tenant_id=tenant_id, source_url="https://example.com/", max_pages=5)


class OverlapTracker:
    def __init__(self, delay: float = 0.05) -> None:
        self.delay = delay
        self.lock = threading.Lock()
        self.running: dict[str, int] = {}
        self.max_per_tenant: dict[str, int] = {}
        self.max_total = 0

    def __call__(self, task: IngestionTask, cancel_event: threading.Event) -> None:
        with self.lock:
            self.running[task.tenant_id] = self.running.get(task.tenant_id, 0) + 1
            self.max_per_tenant[task.tenant_id] = max(
                self.max_per_tenant.get(task.tenant_id, 0), self.running[task.tenant_id]
            )
            self.max_total = max(self.max_total, sum(self.running.values()))
        time.sleep(self.delay)
        with self.lock:
            self.running[task.tenant_id] -= 1


@pytest.mark.asyncio
async def test_same_tenant_jobs_never_overlap() -> None:
    tracker = OverlapTracker()
    queue = IngestionQueue(tracker, max_queue=8, max_concurrency=4)
    tasks = [queue.submit(_task(f"job-{i}", "tenant-a")) for i in range(3)]
    tasks.append(queue.submit(_task("job-b", "tenant-b")))

    queue.start()
    await queue.join()
    await queue.shutdown()

    assert tracker.max_per_tenant["tenant-a"] == 1
    assert tracker.max_total >= 2
    assert all(task.status == "finished" for task in tasks)


@pytest.mark.asyncio
async def test_submit_raises_when_queue_is_full() -> None:
    queue = IngestionQueue(lambda task, cancel: None, max_queue=2)

    queue.submit(_task("job-1", "tenant-a"))
    queue.submit(_task("job-2", "tenant-b"))

    assert queue.full()
    with pytest.raises(IngestionQueueFull):
        queue.submit(_task("job-3", "tenant-c"))


@pytest.mark.asyncio
async def test_executor_errors_are_recorded_on_the_task() -> None:
    def explode(task: IngestionTask, cancel_event: threading.Event) -> None:
        raise RuntimeError("crawler exploded")

    queue = IngestionQueue(explode)
    task = queue.submit(_task("job-1", "tenant-a"))

    queue.start()
    assert await task.wait(timeout=2)
    await queue.shutdown()

    assert task.status == "error"
    assert task.error == "crawler exploded"


@pytest.mark.asyncio
async def test_missing_executor_marks_task_as_error() -> None:
    queue = IngestionQueue()
    task = queue.submit(_task("job-1", "tenant-a"))

    queue.start()
    assert await task.wait(timeout=2)
    await queue.shutdown()

    assert task.status == "error"
    assert task.error == "Ingestion executor not configured"


@pytest.mark.asyncio
async def test_shutdown_sets_cancel_event_and_rejects_new_work() -> None:
    seen: list[bool] = []
    started = threading.Event()

    def slow(task: IngestionTask, cancel_event: threading.Event) -> None:
        started.set()
        cancel_event.wait(2)
        seen.append(cancel_event.is_set())

    queue = IngestionQueue(slow)
    queue.submit(_task("job-1", "tenant-a"))
    queue.start()
    await asyncio.to_thread(started.wait, 2)

    await queue.shutdown()
    await asyncio.to_thread(lambda: time.sleep(0.05))

    assert queue.cancel_event.is_set()
    assert seen == [True]
    with pytest.raises(RuntimeError):
        queue.submit(_task("job-2", "tenant-a"))


@pytest.mark.asyncio
async def test_busy_tenant_does_not_starve_other_tenants() -> None:
    release = threading.Event()
    tenant_b_started = threading.Event()
    started: list[str] = []

    def executor(task: IngestionTask, cancel_event: threading.Event) -> None:
        started.append(task.job_id)
        if task.job_id == "job-a0":
            release.wait(2)
        if task.tenant_id == "tenant-b":
            tenant_b_started.set()

    queue = IngestionQueue(executor, max_queue=8, max_concurrency=2)
    for i in range(3):
        queue.submit(_task(f"job-a{i}", "tenant-a"))
    queue.submit(_task("job-b", "tenant-b"))
    queue.start()

    assert await asyncio.to_thread(tenant_b_started.wait, 2)
    assert started == ["job-a0", "job-b"]
    assert queue.pending() == 2

    release.set()
    await queue.join()
    await queue.shutdown()

    assert started == ["job-a0", "job-b", "job-a1", "job-a2"]
    assert queue.pending() == 0


@pytest.mark.asyncio
async def test_shutdown_cancels_parked_tasks() -> None:
    started = threading.Event()

    def slow(task: IngestionTask, cancel_event: threading.Event) -> None:
        started.set()
        cancel_event.wait(2)

    queue = IngestionQueue(slow, max_concurrency=2)
    first = queue.submit(_task("job-1", "tenant-a"))
    parked = queue.submit(_task("job-2", "tenant-a"))
    queue.start()
    await asyncio.to_thread(started.wait, 2)
    await asyncio.sleep(0.05)

    await queue.shutdown()

    assert first.status == "error"
    assert parked.status == "error"
    assert parked.error == "cancelled"
    assert queue.pending() == 0


@pytest.mark.asyncio
async def test_submit_from_a_thread_reaches_the_workers() -> None:
    ran: list[str] = []
    queue = IngestionQueue(lambda task, cancel: ran.append(task.job_id))
    queue.start()

    task = await asyncio.to_thread(queue.submit, _task("job-1", "tenant-a"))

    assert await task.wait(timeout=2)
    await queue.shutdown()
    assert ran == ["job-1"]
