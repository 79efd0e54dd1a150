"""Admission control: a shared rate gate plus a concurrency cap."""
from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, Dict, Optional

import structlog

from geoqueue.geocode.queue import QueueItem, RequestQueue
from geoqueue.observability.metrics import MetricsRegistry

LOGGER = structlog.get_logger(__name__)

Dispatcher = Callable[[QueueItem], Awaitable[None]]


class RateGate:
    """Enforces a minimum spacing between consecutive dispatches.

    The check and the timestamp update happen under one lock, so concurrent
    slots queue up behind each other instead of reading the same elapsed time.
    """

    def __init__(self, min_interval: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._min_interval = min_interval
        self._clock = clock
        self._lock = asyncio.Lock()
        self.last_dispatch: Optional[float] = None

    async def wait(self) -> float:
        """Suspend until a dispatch is allowed and return its timestamp."""
        async with self._lock:
            if self.last_dispatch is not None:
                while (remaining := self._min_interval - (self._clock() - self.last_dispatch)) > 0:
                    await asyncio.sleep(remaining)
            self.last_dispatch = self._clock()
            return self.last_dispatch

    def reset(self) -> None:
        self._lock = asyncio.Lock()
        self.last_dispatch = None


class AdmissionController:
    """Pulls queued work while fewer than ``max_concurrent`` requests are in flight."""

    def __init__(
        self,
        *,
        queue: RequestQueue,
        dispatcher: Dispatcher,
        max_concurrent: int,
        min_interval: float,
        metrics: Optional[MetricsRegistry] = None,
    ) -> None:
        self._queue = queue
        self._dispatcher = dispatcher
        self._max_concurrent = max_concurrent
        self._metrics = metrics or MetricsRegistry()
        self.gate = RateGate(min_interval)
        self.in_flight = 0
        self.peak_in_flight = 0
        self._tasks: Dict[asyncio.Task[None], QueueItem] = {}
        self._generation = 0

    def drain(self) -> None:
        """Start as many queued items as the concurrency cap allows."""
        while self.in_flight < self._max_concurrent:
            item = self._queue.dequeue()
            if item is None:
                break
            self.in_flight += 1
            self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
            task = asyncio.get_running_loop().create_task(self._run(item, self._generation))
            self._tasks[task] = item
            task.add_done_callback(self._forget)

    async def _run(self, item: QueueItem, generation: int) -> None:
        try:
            await self._dispatcher(item)
        except asyncio.CancelledError:
            item.complete(None)
            raise
        except Exception:
            LOGGER.exception("dispatch_crashed", query=item.query)
            item.complete(None)
        finally:
            self._schedule_release(generation)

    def _forget(self, task: "asyncio.Task[None]") -> None:
        self._tasks.pop(task, None)

    def _schedule_release(self, generation: int) -> None:
        # deferred to the next loop iteration so callbacks run before the next pull
        asyncio.get_running_loop().call_soon(self._release, generation)

    def _release(self, generation: int) -> None:
        if generation != self._generation:
            return
        self.in_flight -= 1
        self.drain()

    async def wait_rate(self) -> None:
        start = time.perf_counter()
        await self.gate.wait()
        self._metrics.incr("rate_wait_ms", int((time.perf_counter() - start) * 1000))

    async def join(self) -> None:
        """Wait until the backlog is empty and nothing is in flight."""
        while self._tasks or self.in_flight or not self._queue.empty():
            if self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)
            else:
                await asyncio.sleep(0)

    def reset(self) -> None:
        """Cancel in-flight work and forget admission state."""
        self._generation += 1
        for task, item in list(self._tasks.items()):
            task.cancel()
            # a task cancelled before its first step never runs its handlers
            item.complete(None)
        self._tasks.clear()
        self.in_flight = 0
        self.peak_in_flight = 0
        self.gate.reset()
