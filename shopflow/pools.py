"""Priority work pools bounding how many steps run at once."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, Hashable, Optional, Set, Tuple

from pydantic import BaseModel

from .config import PoolConfig
from .contracts import Priority

logger = logging.getLogger(__name__)

Invocation = Callable[[], Awaitable[Any]]


def _consume_exception(future: asyncio.Future) -> None:
    # handles are often dropped; keep asyncio from warning about them
    if not future.cancelled():
        future.exception()


class PoolStats(BaseModel):
    name: str
    max_parallelism: int
    running_count: int
    waiting: int
    scheduled_retries: int
    peak_running: int
    completed: int


class PoolHandle:
    """Awaitable handle for an enqueued invocation."""

    def __init__(self, future: asyncio.Future) -> None:
        self._future = future

    def __await__(self):
        return self._future.__await__()

    def done(self) -> bool:
        return self._future.done()

    def cancel(self) -> bool:
        """Drop the invocation if it has not been admitted yet."""
        return self._future.cancel()


class WorkPool:
    """Bounded-concurrency FIFO dispatcher for one priority tier."""

    def __init__(self, name: str, max_parallelism: int) -> None:
        if max_parallelism < 1:
            raise ValueError(f"Pool {name} needs max_parallelism >= 1")
        self.name = name
        self.max_parallelism = max_parallelism
        self._waiting: Deque[Tuple[Invocation, asyncio.Future]] = deque()
        self._running: Set[asyncio.Task] = set()
        self._timers: Dict[Hashable, asyncio.TimerHandle] = {}
        self.peak_running = 0
        self.completed = 0

    @property
    def running_count(self) -> int:
        return len(self._running)

    @property
    def waiting_count(self) -> int:
        return len(self._waiting)

    def is_idle(self) -> bool:
        return not (self._waiting or self._running or self._timers)

    def enqueue(self, invocation: Invocation) -> PoolHandle:
        """Queue ``invocation`` at the tail and admit work if a slot is free."""
        future = asyncio.get_running_loop().create_future()
        future.add_done_callback(_consume_exception)
        self._waiting.append((invocation, future))
        self._dispatch()
        return PoolHandle(future)

    def enqueue_later(
        self, delay_s: float, invocation: Invocation, key: Optional[Hashable] = None
    ) -> Hashable:
        """Enqueue ``invocation`` at the tail of the queue after ``delay_s``.

        Delayed work joins behind whatever is already waiting when the timer
        fires. ``key`` identifies the timer for ``cancel_scheduled``.
        """
        key = key if key is not None else object()
        self.cancel_scheduled(key)
        loop = asyncio.get_running_loop()
        self._timers[key] = loop.call_later(
            max(delay_s, 0.0), self._fire_timer, key, invocation
        )
        return key

    def cancel_scheduled(self, key: Hashable) -> bool:
        handle = self._timers.pop(key, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def has_scheduled(self, key: Hashable) -> bool:
        return key in self._timers

    def _fire_timer(self, key: Hashable, invocation: Invocation) -> None:
        self._timers.pop(key, None)
        self.enqueue(invocation)

    def _dispatch(self) -> None:
        loop = asyncio.get_running_loop()
        while self._waiting and len(self._running) < self.max_parallelism:
            invocation, future = self._waiting.popleft()
            if future.done():
                continue
            task = loop.create_task(self._run(invocation, future))
            self._running.add(task)
            task.add_done_callback(self._on_task_done)
            self.peak_running = max(self.peak_running, len(self._running))

    async def _run(self, invocation: Invocation, future: asyncio.Future) -> None:
        try:
            result = await invocation()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            logger.exception(f"Invocation in pool {self.name} raised: {e}")
            if not future.done():
                future.set_exception(e)
        else:
            if not future.done():
                future.set_result(result)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._running.discard(task)
        self.completed += 1
        if self._waiting:
            self._dispatch()

    def stats(self) -> PoolStats:
        return PoolStats(
            name=self.name,
            max_parallelism=self.max_parallelism,
            running_count=self.running_count,
            waiting=self.waiting_count,
            scheduled_retries=len(self._timers),
            peak_running=self.peak_running,
            completed=self.completed,
        )

    async def wait_idle(self, poll_interval: float = 0.01) -> None:
        while not self.is_idle():
            await asyncio.sleep(poll_interval)

    async def close(self) -> None:
        """Cancel timers, drop waiting work and cancel running invocations."""
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        while self._waiting:
            _, future = self._waiting.popleft()
            future.cancel()
        running = list(self._running)
        for task in running:
            task.cancel()
        if running:
            await asyncio.gather(*running, return_exceptions=True)


class WorkPools:
    """The three independent priority pools.

    Constructed once per process by the runtime and passed explicitly to the
    workflow manager; pools live for the process lifetime.
    """

    def __init__(self, config: Optional[PoolConfig] = None) -> None:
        config = config or PoolConfig()
        self._pools: Dict[Priority, WorkPool] = {
            Priority.HIGH: WorkPool(Priority.HIGH.value, config.high),
            Priority.DEFAULT: WorkPool(Priority.DEFAULT.value, config.default),
            Priority.LOW: WorkPool(Priority.LOW.value, config.low),
        }

    def get(self, priority: Priority | str) -> WorkPool:
        return self._pools[Priority(priority)]

    def __iter__(self):
        return iter(self._pools.values())

    def stats(self) -> list[PoolStats]:
        return [pool.stats() for pool in self._pools.values()]

    async def wait_idle(self, poll_interval: float = 0.01) -> None:
        while not all(pool.is_idle() for pool in self._pools.values()):
            await asyncio.sleep(poll_interval)

    async def close(self) -> None:
        for pool in self._pools.values():
            await pool.close()
