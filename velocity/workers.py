"""
Worker Pool
===========

Fixed set of asyncio worker tasks consuming a bounded job queue. Every
measurement phase runs as one job, so the number of concurrently running
phases and the backlog waiting for a worker are both bounded. A full
queue is reported as a Capacity error instead of queueing without limit.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, List, Optional, Tuple

from velocity.errors import CapacityError

logger = logging.getLogger(__name__)

Job = Tuple[Callable[[], Awaitable[Any]], asyncio.Future]


class WorkerPool:
    """Bounded pool of asyncio workers"""

    def __init__(self, workers: int = 64, queue_size: int = 128, name: str = "phase"):
        self.worker_count = workers
        self.queue_size = queue_size
        self.name = name
        self._queue: Optional[asyncio.Queue] = None
        self._workers: List[asyncio.Task] = []
        self.running = False

        self.stats = {
            'jobs_completed': 0,
            'jobs_failed': 0,
            'jobs_cancelled': 0,
            'jobs_rejected': 0,
            'start_time': time.time()
        }

    async def start(self):
        if self.running:
            return
        self._queue = asyncio.Queue(maxsize=self.queue_size)
        self._workers = [
            asyncio.create_task(self._worker_loop(i), name=f"{self.name}-worker-{i}")
            for i in range(self.worker_count)
        ]
        self.running = True
        logger.info(f"🚀 Worker pool started: {self.worker_count} workers, queue size {self.queue_size}")

    async def stop(self):
        """Cancel workers and fail anything still queued"""
        if not self.running:
            return
        self.running = False

        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

        while not self._queue.empty():
            _, future = self._queue.get_nowait()
            if not future.done():
                future.cancel()
        logger.info("✅ Worker pool stopped")

    def full(self) -> bool:
        """True when a new job would be rejected"""
        return self._queue is not None and self._queue.full()

    async def run(self, job: Callable[[], Awaitable[Any]]) -> Any:
        """
        Queue ``job`` and wait for its result. Cancelling the caller cancels
        the job, whether it is still queued or already running.
        """
        if not self.running:
            raise RuntimeError("Worker pool is not running")

        future = asyncio.get_running_loop().create_future()
        try:
            self._queue.put_nowait((job, future))
        except asyncio.QueueFull:
            self.stats['jobs_rejected'] += 1
            logger.warning(f"Worker pool queue full ({self.queue_size}), rejecting job")
            raise CapacityError("Server is busy, please retry shortly")

        try:
            return await future
        except asyncio.CancelledError:
            future.cancel()
            raise

    async def _worker_loop(self, worker_id: int):
        while True:
            job, future = await self._queue.get()
            try:
                if future.cancelled():
                    self.stats['jobs_cancelled'] += 1
                    continue
                await self._execute(job, future)
            finally:
                self._queue.task_done()

    async def _execute(self, job: Callable[[], Awaitable[Any]], future: asyncio.Future):
        task = asyncio.ensure_future(job())

        def _propagate_cancel(f: asyncio.Future):
            if f.cancelled() and not task.done():
                task.cancel()

        future.add_done_callback(_propagate_cancel)
        try:
            result = await task
        except asyncio.CancelledError:
            self.stats['jobs_cancelled'] += 1
            if not future.done():
                future.cancel()
            if not task.done():
                # The worker itself is being stopped
                task.cancel()
                raise
        except Exception as e:
            self.stats['jobs_failed'] += 1
            if not future.done():
                future.set_exception(e)
        else:
            self.stats['jobs_completed'] += 1
            if not future.done():
                future.set_result(result)

    def get_stats(self) -> dict:
        return {
            'running': self.running,
            'workers': self.worker_count,
            'queue_size': self.queue_size,
            'queued': self._queue.qsize() if self._queue else 0,
            **self.stats
        }
