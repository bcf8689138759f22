"""Bounded asyncio worker pool for ingestion jobs, serialised per tenant."""

from __future__ import annotations

import asyncio
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Set

from .observability import MetricsRecorder

logger = logging.getLogger(__name__)


class IngestionQueueFull(RuntimeError):
    """Raised when the pool cannot accept more work."""


@dataclass(slots=True)
class IngestionTask:
    """One queued ingestion run."""

    job_id: str
    tenant_id: str
    source_url: str
    max_pages: int
    widget_key: str = ""
    page_limit: int | None = None
    status: str = "queued"
    error: str | None = None
    _event: asyncio.Event = field(default_factory=asyncio.Event, init=False, repr=False)

    async def wait(self, timeout: float | None = None) -> bool:
        if self.status in {"finished", "error"}:
            return True
        try:
            await asyncio.wait_for(self._event.wait(), timeout)
            return True
        except asyncio.TimeoutError:
            return False

    def finish(self, status: str, error: str | None = None) -> None:
        self.status = status
        self.error = error
        self._event.set()


IngestionExecutor = Callable[[IngestionTask, threading.Event], Any]


class IngestionQueue:
    """Run ingestion tasks on a fixed number of workers.

    ``submit`` never blocks: when ``max_queue`` tasks are already waiting it
    raises :class:`IngestionQueueFull`. It may be called from the event loop or
    from a worker thread. At most one task per tenant runs at a time because
    namespace resets are destructive; a task whose tenant is busy is parked and
    handed to the worker already serving that tenant, so other tenants keep
    the free workers. Executors are synchronous and run in a thread; shutdown
    sets a shared ``threading.Event`` that the executor checks between steps.
    """

    def __init__(
        self,
        executor: IngestionExecutor | None = None,
        *,
        max_queue: int = 32,
        max_concurrency: int = 4,
        metrics: MetricsRecorder | None = None,
    ) -> None:
        self._executor = executor
        self._max_queue = max(1, max_queue)
        self._max_concurrency = max(1, max_concurrency)
        self._queue: asyncio.Queue[IngestionTask] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._lock = threading.Lock()
        self._waiting = 0
        self._busy_tenants: Set[str] = set()
        self._parked: Dict[str, Deque[IngestionTask]] = {}
        self._workers: List[asyncio.Task] = []
        self._cancel_event = threading.Event()
        self._shutdown = False
        self._active = 0
        self._metrics = metrics

    def configure_executor(self, executor: IngestionExecutor) -> None:
        self._executor = executor

    @property
    def cancel_event(self) -> threading.Event:
        return self._cancel_event

    def _get_queue(self) -> asyncio.Queue[IngestionTask]:
        if self._queue is None:
            self._queue = asyncio.Queue()
        return self._queue

    def pending(self) -> int:
        with self._lock:
            return self._waiting

    def full(self) -> bool:
        return self.pending() >= self._max_queue

    def submit(self, task: IngestionTask) -> IngestionTask:
        with self._lock:
            if self._shutdown:
                raise RuntimeError("IngestionQueue is shut down")
            if self._waiting >= self._max_queue:
                raise IngestionQueueFull("Ingestion queue is full")
            self._waiting += 1
            pending = self._waiting
        queue = self._get_queue()
        if self._loop is not None and self._running_loop() is not self._loop:
            self._loop.call_soon_threadsafe(queue.put_nowait, task)
        else:
            queue.put_nowait(task)
        logger.info("ingest.queue.submitted job_id=%s tenant=%s pending=%s", task.job_id, task.tenant_id, pending)
        if self._metrics:
            self._metrics.set_gauge("ingest.queue.pending", float(pending))
        return task

    def start(self) -> None:
        if self._workers:
            return
        self._loop = asyncio.get_running_loop()
        self._shutdown = False
        self._cancel_event.clear()
        self._get_queue()
        for _ in range(self._max_concurrency):
            self._workers.append(asyncio.create_task(self._worker_loop()))

    async def shutdown(self) -> None:
        with self._lock:
            self._shutdown = True
        self._cancel_event.set()
        for worker in self._workers:
            worker.cancel()
        for worker in self._workers:
            try:
                await worker
            except asyncio.CancelledError:
                pass
        self._workers.clear()
        for parked in self._parked.values():
            while parked:
                self._finish_unstarted(parked.popleft())
        self._parked.clear()

    async def join(self) -> None:
        await self._get_queue().join()

    async def _worker_loop(self) -> None:
        queue = self._get_queue()
        while not self._shutdown:
            try:
                task = await queue.get()
            except asyncio.CancelledError:
                break
            tenant_id = task.tenant_id
            if tenant_id in self._busy_tenants:
                self._parked.setdefault(tenant_id, deque()).append(task)
                logger.info("ingest.queue.parked job_id=%s tenant=%s", task.job_id, tenant_id)
                continue
            self._busy_tenants.add(tenant_id)
            try:
                next_task: IngestionTask | None = task
                while next_task is not None:
                    await self._run(next_task)
                    next_task = self._next_parked(tenant_id)
            finally:
                self._busy_tenants.discard(tenant_id)

    async def _run(self, task: IngestionTask) -> None:
        queue = self._get_queue()
        with self._lock:
            self._waiting = max(self._waiting - 1, 0)
        self._track_active(task.tenant_id, +1)
        try:
            if self._executor is None:
                raise RuntimeError("Ingestion executor not configured")
            task.status = "running"
            await asyncio.to_thread(self._executor, task, self._cancel_event)
            task.finish("finished")
        except asyncio.CancelledError:
            task.finish("error", "cancelled")
            raise
        except Exception as exc:
            logger.exception("ingest.queue.task_failed job_id=%s error=%s", task.job_id, exc)
            task.finish("error", str(exc))
        finally:
            self._track_active(task.tenant_id, -1)
            queue.task_done()

    def _next_parked(self, tenant_id: str) -> IngestionTask | None:
        parked = self._parked.get(tenant_id)
        if not parked:
            self._parked.pop(tenant_id, None)
            return None
        task = parked.popleft()
        if not parked:
            del self._parked[tenant_id]
        return task

    def _finish_unstarted(self, task: IngestionTask) -> None:
        with self._lock:
            self._waiting = max(self._waiting - 1, 0)
        task.finish("error", "cancelled")
        self._get_queue().task_done()

    @staticmethod
    def _running_loop() -> asyncio.AbstractEventLoop | None:
        try:
            return asyncio.get_running_loop()
        except RuntimeError:
            return None

    def _track_active(self, tenant_id: str, delta: int) -> None:
        self._active = max(self._active + delta, 0)
        if self._metrics:
            self._metrics.set_gauge("ingest.queue.active", float(self._active), tenant_id=tenant_id)
            self._metrics.set_gauge("ingest.queue.pending", float(self.pending()))


__all__ = ["IngestionQueue", "IngestionQueueFull", "IngestionTask", "IngestionExecutor"]
