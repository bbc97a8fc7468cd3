"""
Crawl scheduler – bounded worker pool over a task queue, one global request
interval gate, per-URL failure isolation and graceful stop.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

from tqdm import tqdm

from oemcatalog.config import MAX_WORKERS, REQUEST_INTERVAL_SEC

logger = logging.getLogger("oemcatalog.scheduler")


class IntervalGate:
    """
    Global politeness gate: at most one request start per `interval_sec`,
    shared by every worker (and the fetcher's retries).
    """

    def __init__(self, interval_sec: float = REQUEST_INTERVAL_SEC, clock=time.monotonic, sleep=asyncio.sleep):
        self.interval_sec = max(0.0, interval_sec)
        self._clock = clock
        self._sleep = sleep
        self._next_start = 0.0
        self._lock = asyncio.Lock()
        self.starts = 0

    async def wait(self) -> None:
        async with self._lock:
            now = self._clock()
            delay = self._next_start - now
            if delay > 0:
                await self._sleep(delay)
                now = self._clock()
            self._next_start = max(now, self._next_start) + self.interval_sec
            self.starts += 1


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class CrawlTask:
    url: str
    status: TaskStatus = TaskStatus.PENDING
    error: BaseException | None = None
    result: Any = None
    started_at: float | None = None
    finished_at: float | None = None

    @property
    def terminal(self) -> bool:
        return self.status in (TaskStatus.SUCCEEDED, TaskStatus.FAILED)


TaskFn = Callable[[str], Awaitable[Any]]


class CrawlScheduler:
    def __init__(
        self,
        max_workers: int = MAX_WORKERS,
        request_interval_sec: float = REQUEST_INTERVAL_SEC,
        gate: IntervalGate | None = None,
        progress: bool = True,
    ):
        self.max_workers = max(1, max_workers)
        self.gate = gate if gate is not None else IntervalGate(request_interval_sec)
        self.progress = progress
        self._stopping = False

    @property
    def stopping(self) -> bool:
        return self._stopping

    def stop(self) -> None:
        """Stop handing out new tasks; in-flight tasks finish on their own."""
        if not self._stopping:
            logger.info("Stop requested; letting in-flight tasks finish.")
        self._stopping = True

    async def _worker(self, name: str, queue: asyncio.Queue, task_fn: TaskFn, pbar) -> None:
        while not self._stopping:
            try:
                task = queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            task.status = TaskStatus.IN_FLIGHT
            task.started_at = time.time()
            try:
                task.result = await task_fn(task.url)
                task.status = TaskStatus.SUCCEEDED
            except Exception as e:
                task.status = TaskStatus.FAILED
                task.error = e
                logger.warning("[%s] task failed for %s: %s: %s", name, task.url, type(e).__name__, e)
            finally:
                task.finished_at = time.time()
                queue.task_done()
                pbar.update(1)

    async def run(self, urls, task_fn: TaskFn) -> list[CrawlTask]:
        """
        Run task_fn(url) for every URL on up to max_workers concurrent workers.
        Returns once every worker has exited: all tasks are terminal unless stop()
        was called, in which case unstarted tasks remain PENDING.
        """
        tasks = [CrawlTask(url) for url in urls]
        if not tasks:
            return tasks
        queue: asyncio.Queue = asyncio.Queue()
        for task in tasks:
            queue.put_nowait(task)

        n_workers = min(self.max_workers, len(tasks))
        logger.info("Crawling %d URLs with %d workers (min %.2fs between requests)", len(tasks), n_workers, self.gate.interval_sec)
        pbar = tqdm(total=len(tasks), desc="Pages", unit="page", ncols=100, disable=not self.progress)
        try:
            workers = [
                asyncio.create_task(self._worker(f"w{i + 1}", queue, task_fn, pbar))
                for i in range(n_workers)
            ]
            await asyncio.gather(*workers)
        finally:
            pbar.close()

        pending = sum(1 for t in tasks if t.status == TaskStatus.PENDING)
        if pending:
            logger.warning("Stopped early: %d tasks never started", pending)
        return tasks
