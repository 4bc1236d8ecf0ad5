from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Iterable, Optional, Tuple

from aidloop.core.errors import LedgerWriteError
from aidloop.core.glucose import GlucoseSample, GlucoseStore
from aidloop.core.insulin.doses import PumpEvent
from aidloop.core.insulin.models import InsulinKind
from aidloop.core.loop import LoopOrchestrator, LoopResult
from aidloop.core.safety.config import SafetyConfig

logger = logging.getLogger("aidloop.scheduler")

Job = Callable[[], Awaitable[Any]]


class SerialTaskQueue:
    """
    Runs submitted jobs one at a time, in submission order, on a single
    worker task.
    """

    def __init__(self) -> None:
        self._queue: Optional["asyncio.Queue[Tuple[Job, asyncio.Future]]"] = None
        self._worker: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def _ensure_worker(self) -> "asyncio.Queue[Tuple[Job, asyncio.Future]]":
        loop = asyncio.get_running_loop()
        if self._queue is None or self._loop is not loop:
            self._queue = asyncio.Queue()
            self._loop = loop
            self._worker = None
        if self._worker is None or self._worker.done():
            self._worker = loop.create_task(self._run(self._queue))
        return self._queue

    def submit(self, job: Job) -> "asyncio.Future":
        queue = self._ensure_worker()
        future = asyncio.get_running_loop().create_future()
        queue.put_nowait((job, future))
        return future

    async def _run(self, queue: "asyncio.Queue[Tuple[Job, asyncio.Future]]") -> None:
        while True:
            job, future = await queue.get()
            try:
                result = await job()
            except Exception as exc:
                if not future.done():
                    future.set_exception(exc)
            else:
                if not future.done():
                    future.set_result(result)
            finally:
                queue.task_done()

    async def drain(self, timeout: float) -> bool:
        """Wait for everything submitted so far. False if the wait timed out."""
        if self._queue is None or self._loop is not asyncio.get_running_loop():
            return True
        try:
            await asyncio.wait_for(self._queue.join(), timeout)
        except asyncio.TimeoutError:
            logger.error("Serial queue did not drain within %.1f s; continuing", timeout)
            return False
        return True

    async def close(self) -> None:
        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        self._worker = None


class LoopCoordinator:
    """
    Entry point for the three loop triggers.

    Readings and pump events are recorded through one ordered queue. Before
    a cycle runs, the queue is drained (bounded wait) so the cycle sees every
    event that arrived before its trigger; a lock keeps at most one cycle in
    flight and later triggers wait behind it.
    """

    def __init__(
        self,
        orchestrator: LoopOrchestrator,
        glucose_store: GlucoseStore,
        clock: Optional[Callable[[], datetime]] = None,
        safety_config: Optional[SafetyConfig] = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.glucose_store = glucose_store
        self.ledger = orchestrator.ledger
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.safety_config = safety_config or orchestrator.safety_config
        self.queue = SerialTaskQueue()
        self.last_loop_completed: Optional[datetime] = None
        self._cycle_lock: Optional[asyncio.Lock] = None
        self._lock_loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def min_loop_interval(self) -> timedelta:
        return timedelta(minutes=self.safety_config.min_loop_interval_minutes)

    def _lock(self) -> asyncio.Lock:
        loop = asyncio.get_running_loop()
        if self._cycle_lock is None or self._lock_loop is not loop:
            self._cycle_lock = asyncio.Lock()
            self._lock_loop = loop
        return self._cycle_lock

    async def on_new_glucose(
        self, readings: Iterable[GlucoseSample], now: Optional[datetime] = None
    ) -> Optional[LoopResult]:
        samples = list(readings)

        async def record() -> None:
            self.glucose_store.add_readings(samples)

        await self.queue.submit(record)
        return await self._cycle(now, gated=True)

    async def on_pump_events(
        self,
        events: Iterable[PumpEvent],
        last_sync_time: Optional[datetime],
        insulin_kind: Optional[InsulinKind] = None,
    ) -> None:
        pump_events = list(events)

        async def record() -> None:
            self.ledger.add_events(pump_events, last_sync_time, insulin_kind)

        try:
            await self.queue.submit(record)
        except LedgerWriteError as exc:
            logger.warning("Pump events kept in memory only: %s", exc)

    async def on_pump_heartbeat(self, now: Optional[datetime] = None) -> Optional[LoopResult]:
        return await self._cycle(now, gated=True)

    async def refresh(self, now: Optional[datetime] = None) -> Optional[LoopResult]:
        return await self._cycle(now, gated=False)

    async def _cycle(self, now: Optional[datetime], gated: bool) -> Optional[LoopResult]:
        at = now or self.clock()
        await self.queue.drain(self.safety_config.queue_drain_timeout_seconds)
        async with self._lock():
            if gated and self.last_loop_completed is not None and at - self.last_loop_completed < self.min_loop_interval:
                logger.debug("Skipping cycle at %s: last loop completed %s", at.isoformat(), self.last_loop_completed)
                return None
            await self._ensure_current_pump_data()
            result = await self.orchestrator.loop(at)
            if result.succeeded:
                self.last_loop_completed = at
            return result

    async def _ensure_current_pump_data(self) -> None:
        pump = self.orchestrator.pump
        if pump is None:
            return
        try:
            last_sync = await pump.ensure_current_pump_data()
        except Exception:
            logger.exception("Pump data refresh failed")
            return
        if last_sync is not None:
            await self.on_pump_events([], last_sync)
