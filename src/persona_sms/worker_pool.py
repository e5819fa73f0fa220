"""Background worker pool.

Webhook handlers acknowledge immediately and hand the slow part of the turn
(context assembly, generation, delivery) to a fixed set of asyncio workers
reading from a bounded queue.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

from loguru import logger

from .config import WorkerConfig

JobFactory = Callable[[], Awaitable[None]]


@dataclass
class Job:
    name: str
    run: JobFactory
    enqueued_at: float


class WorkerPool:
    """Fixed-size asyncio worker pool with a failure boundary per job.

    A job that raises is counted and logged; it never takes its worker down.
    """

    def __init__(self, config: WorkerConfig | None = None):
        self.config = config or WorkerConfig()
        self._queue: asyncio.Queue[Job] = asyncio.Queue(maxsize=self.config.max_queue_size)
        self._workers: list[asyncio.Task] = []
        self._running = False

        self.total_received = 0
        self.total_processed = 0
        self.total_failed = 0
        self.total_dropped = 0

    @property
    def running(self) -> bool:
        return self._running

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def start(self) -> None:
        if self._running:
            logger.warning("WorkerPool is already running")
            return

        self._running = True
        for i in range(self.config.worker_count):
            self._workers.append(
                asyncio.create_task(self._worker(i), name=f"persona_sms_worker_{i}")
            )
        logger.info(f"WorkerPool started with {self.config.worker_count} workers")

    async def stop(self, timeout: float | None = None) -> None:
        """Drain queued jobs, then stop the workers.

        Args:
            timeout: Seconds to wait for the queue to drain before cancelling
        """
        if not self._running:
            return

        timeout = self.config.stop_timeout if timeout is None else timeout
        self._running = False
        try:
            await asyncio.wait_for(self._queue.join(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"WorkerPool stop timed out with {self._queue.qsize()} jobs pending"
            )

        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()
        logger.info(
            f"WorkerPool stopped (processed={self.total_processed}, "
            f"failed={self.total_failed}, dropped={self.total_dropped})"
        )

    def submit(self, name: str, run: JobFactory) -> bool:
        """Queue a job.

        Returns:
            bool: False when the pool is stopped or the queue is full
        """
        if not self._running:
            logger.warning(f"WorkerPool is not running, dropping job {name}")
            self.total_dropped += 1
            return False
        try:
            self._queue.put_nowait(Job(name=name, run=run, enqueued_at=time.monotonic()))
        except asyncio.QueueFull:
            logger.warning(f"WorkerPool queue full, dropping job {name}")
            self.total_dropped += 1
            return False
        self.total_received += 1
        return True

    async def join(self) -> None:
        """Wait until every queued job has finished."""
        await self._queue.join()

    async def _worker(self, worker_id: int) -> None:
        while True:
            job = await self._queue.get()
            try:
                await self._process(job, worker_id)
            finally:
                self._queue.task_done()

    async def _process(self, job: Job, worker_id: int) -> None:
        started = time.monotonic()
        try:
            await job.run()
            self.total_processed += 1
            logger.debug(
                f"Worker {worker_id} finished {job.name} in {time.monotonic() - started:.3f}s "
                f"(waited {started - job.enqueued_at:.3f}s)"
            )
        except asyncio.CancelledError:
            raise
        except Exception:
            self.total_failed += 1
            logger.exception(f"Worker {worker_id} job {job.name} failed")

    def stats(self) -> dict:
        return {
            "running": self._running,
            "workers": len(self._workers),
            "pending": self._queue.qsize(),
            "received": self.total_received,
            "processed": self.total_processed,
            "failed": self.total_failed,
            "dropped": self.total_dropped,
        }
