"""Periodic background loops sharing one cancellation signal."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, List

from .analytics import AnalyticsBuffer
from .config import Settings
from .observability import MetricsRecorder
from .webhooks import WebhookDeliveryEngine

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PeriodicTask:
    name: str
    interval: float
    func: Callable[[], Any]


class BackgroundWorkers:
    """Run each registered task immediately and then every ``interval`` seconds until shutdown."""

    def __init__(self, *, metrics: MetricsRecorder | None = None) -> None:
        self._tasks: List[PeriodicTask] = []
        self._running: List[asyncio.Task] = []
        self._stop_event: asyncio.Event | None = None
        self._metrics = metrics

    @property
    def stop_event(self) -> asyncio.Event:
        if self._stop_event is None:
            self._stop_event = asyncio.Event()
        return self._stop_event

    @property
    def tasks(self) -> List[PeriodicTask]:
        return list(self._tasks)

    @property
    def running(self) -> bool:
        return bool(self._running)

    def add(self, name: str, interval: float, func: Callable[[], Any]) -> PeriodicTask:
        if interval <= 0:
            raise ValueError(f"interval for {name} must be positive")
        task = PeriodicTask(name=name, interval=interval, func=func)
        self._tasks.append(task)
        return task

    def start(self) -> None:
        if self._running:
            return
        self.stop_event.clear()
        for task in self._tasks:
            self._running.append(asyncio.create_task(self._loop(task), name=f"witzo-{task.name}"))
        logger.info(
            "workers.started tasks=%s",
            ",".join(f"{task.name}:{task.interval:g}s" for task in self._tasks),
        )

    async def shutdown(self, *, timeout: float = 10.0) -> None:
        if not self._running:
            return
        self.stop_event.set()
        done, pending = await asyncio.wait(self._running, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._running.clear()
        logger.info("workers.stopped")

    async def run_once(self, name: str) -> Any:
        for task in self._tasks:
            if task.name == name:
                return await self._invoke(task)
        raise KeyError(name)

    async def _loop(self, task: PeriodicTask) -> None:
        stop = self.stop_event
        while not stop.is_set():
            start = time.perf_counter()
            try:
                await self._invoke(task)
            except Exception as exc:
                logger.exception("workers.task.failed task=%s error=%s", task.name, exc)
                if self._metrics:
                    self._metrics.increment("workers.errors", task=task.name)
            else:
                if self._metrics:
                    self._metrics.record_timing("workers.run", time.perf_counter() - start, task=task.name)
            try:
                await asyncio.wait_for(stop.wait(), timeout=task.interval)
            except asyncio.TimeoutError:
                continue

    @staticmethod
    async def _invoke(task: PeriodicTask) -> Any:
        if inspect.iscoroutinefunction(task.func):
            return await task.func()
        return await asyncio.to_thread(task.func)


def build_background_workers(
    settings: Settings,
    *,
    webhook_engine: WebhookDeliveryEngine,
    analytics: AnalyticsBuffer,
    metrics: MetricsRecorder | None = None,
) -> BackgroundWorkers:
    workers = BackgroundWorkers(metrics=metrics)

    def sweep_webhooks() -> int:
        webhook_engine.reclaim_stale()
        return webhook_engine.process_pending()

    def flush_analytics() -> int:
        return analytics.flush(settings.analytics_flush_batch)

    def run_maintenance() -> None:
        pruned = analytics.prune(settings.analytics_retention_days)
        reclaimed = webhook_engine.reclaim_stale()
        logger.info("workers.maintenance pruned=%s reclaimed=%s", pruned, reclaimed)

    workers.add("webhook-sweep", settings.webhook_process_interval, sweep_webhooks)
    workers.add("analytics-flush", settings.analytics_flush_interval, flush_analytics)
    workers.add("maintenance", settings.maintenance_interval, run_maintenance)
    return workers


__all__ = ["BackgroundWorkers", "PeriodicTask", "build_background_workers"]
