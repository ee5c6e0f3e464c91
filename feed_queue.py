#!/usr/bin/env python3
"""
Keyed task queue that serializes work per key.

Tasks submitted under the same key run strictly one at a time, in the order
they were submitted; tasks under different keys run concurrently, bounded by
a shared concurrency limit. Every submission runs exactly once: submissions
are queued, never merged. A failing task only fails its own future.
"""

from asyncio import CancelledError, Future, Semaphore, create_task, current_task, gather, get_running_loop
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, List, Tuple

from config import get_logger

logger = get_logger("queue")

TaskFactory = Callable[[], Awaitable[Any]]


class SingleFlightQueue:
    """Per-key FIFO lanes drained by one worker each, sharing a semaphore."""

    def __init__(self, concurrency: int):
        if concurrency < 1:
            raise ValueError(f"concurrency must be at least 1, got {concurrency}")
        self.concurrency = concurrency
        self._semaphore = Semaphore(concurrency)
        self._lanes: Dict[str, Deque[Tuple[TaskFactory, Future]]] = {}
        self._workers: Dict[str, Future] = {}
        self._closed = False

    @property
    def pending_count(self) -> int:
        """Submissions not yet started, across all keys."""
        return sum(len(lane) for lane in self._lanes.values())

    @property
    def active_keys(self) -> List[str]:
        """Keys that currently have queued or running work."""
        return list(self._workers)

    def submit(self, key: str, task: TaskFactory) -> Future:
        """Queue `task` under `key` and return a future for its result.

        `task` is a zero-argument callable returning an awaitable; it is
        called only when its turn comes.
        """
        if self._closed:
            raise RuntimeError("Queue is closed")
        future = get_running_loop().create_future()
        lane = self._lanes.setdefault(key, deque())
        lane.append((task, future))
        if key not in self._workers:
            self._workers[key] = create_task(self._drain(key, lane))
        return future

    async def _drain(self, key: str, lane: Deque[Tuple[TaskFactory, Future]]) -> None:
        try:
            while lane:
                # A submission leaves its lane only once it holds a concurrency slot
                async with self._semaphore:
                    task, future = lane.popleft()
                    if future.cancelled():
                        continue
                    try:
                        result = await task()
                    except CancelledError:
                        future.cancel()
                        # Only a cancelled worker stops the lane; a task cancelling itself just fails
                        if current_task().cancelling():
                            raise
                    except Exception as e:
                        if not future.done():
                            future.set_exception(e)
                    else:
                        if not future.done():
                            future.set_result(result)
        finally:
            # No await between the empty check and this cleanup, so no submission can slip in unseen
            self._workers.pop(key, None)
            self._lanes.pop(key, None)
            for _, future in lane:
                future.cancel()
            lane.clear()

    async def join(self) -> None:
        """Wait until every submitted task has settled."""
        while self._workers:
            await gather(*list(self._workers.values()), return_exceptions=True)

    async def close(self) -> None:
        """Stop accepting work and cancel everything queued or running."""
        self._closed = True
        workers = list(self._workers.values())
        for worker in workers:
            worker.cancel()
        if workers:
            await gather(*workers, return_exceptions=True)
        logger.debug(f"Queue closed ({len(workers)} workers cancelled)")
