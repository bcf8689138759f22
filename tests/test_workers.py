from __future__ import annotations

import asyncio
import threading
import time

import pytest

from witzo.analytics import AnalyticsBuffer, WidgetAnalyticsEvent
from witzo.config import Settings
from witzo.workers import BackgroundWorkers, build_background_workers


@pytest.mark.asyncio
async def test_tasks_run_immediately_and_stop_on_shutdown() -> None:
    calls: list[str] = []

    async def tick() -> None:
        calls.append("tick")

    workers = BackgroundWorkers()
    workers.add("tick", 3600, tick)
    workers.start()
    await asyncio.sleep(0.05)

    started = time.perf_counter()
    await workers.shutdown(timeout=2)

    assert calls == ["tick"]
    assert time.perf_counter() - started < 1
    assert workers.running is False


@pytest.mark.asyncio
async def test_failing_task_keeps_looping() -> None:
    attempts: list[int] = []

    def flaky() -> None:
        attempts.append(len(attempts))
        raise RuntimeError("database locked")

    workers = BackgroundWorkers()
    workers.add("flaky", 0.01, flaky)
    workers.start()
    await asyncio.sleep(0.1)
    await workers.shutdown(timeout=2)

    assert len(attempts) >= 2


@pytest.mark.asyncio
async def test_sync_tasks_run_off_the_event_loop() -> None:
    loop_thread = threading.get_ident()
    seen: list[int] = []

    workers = BackgroundWorkers()
    workers.add("sync", 60, lambda: seen.append(threading.get_ident()))

    await workers.run_once("sync")

    assert seen and seen[0] != loop_thread
    with pytest.raises(KeyError):
        await workers.run_once("missing")


def test_add_rejects_non_positive_interval() -> None:
    with pytest.raises(ValueError):
        BackgroundWorkers().add("broken", 0, lambda: None)


@pytest.mark.asyncio
async def test_builder_registers_sweep_flush_and_maintenance(database, clock) -> None:
    class EngineStub:
        def __init__(self) -> None:
            self.calls: list[str] = []

        def reclaim_stale(self) -> int:
            self.calls.append("reclaim")
            return 0

        def process_pending(self) -> int:
            self.calls.append("process")
            return 0

    settings = Settings()
    engine = EngineStub()
    analytics = AnalyticsBuffer(database, clock=clock)
    analytics.record(WidgetAnalyticsEvent(tenant_id="tenant-a", event_type="widget.opened", created_at=clock()))

    workers = build_background_workers(settings, webhook_engine=engine, analytics=analytics)  # type: ignore[arg-type]

    assert [(task.name, task.interval) for task in workers.tasks] == [
        ("webhook-sweep", 30.0),
        ("analytics-flush", 60.0),
        ("maintenance", 86400.0),
    ]
    assert await workers.run_once("webhook-sweep") == 0
    assert engine.calls == ["reclaim", "process"]
    assert await workers.run_once("analytics-flush") == 1
    await workers.run_once("maintenance")
    assert engine.calls[-1] == "reclaim"
