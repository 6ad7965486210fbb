"""Asynchronous dispatch of accepted issues to the orchestrator.

Acceptance returns as soon as the workflow exists; the dispatcher's worker
tasks pull issue ids from a bounded queue and process them. Enqueueing never
waits: when the queue is full the id goes to an overflow backlog that workers
move into the queue as slots free up. Accepted issues are never dropped, and
their workflows stay running in the store until a worker reaches them.
"""

import asyncio
import logging
from collections import deque
from typing import Awaitable, Callable, Deque, List, Optional

from src.civicflow.errors import WorkflowFailed


logger = logging.getLogger(__name__)


IssueHandler = Callable[[str], Awaitable[object]]


class IssueDispatcher:
    """Bounded queue plus worker tasks.

    Attributes:
        handler: Coroutine function processing one issue id.
        workers: Number of worker tasks.
        max_size: Queue capacity; ids beyond it wait in the backlog.
    """

    def __init__(self, handler: IssueHandler, workers: int = 4, max_size: int = 1000):
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self.handler = handler
        self.workers = workers
        self.max_size = max_size
        self._queue: Optional[asyncio.Queue] = None
        self._backlog: Deque[str] = deque()
        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    @property
    def size(self) -> int:
        queued = self._queue.qsize() if self._queue is not None else 0
        return queued + len(self._backlog)

    @property
    def backlog(self) -> int:
        return len(self._backlog)

    def start(self) -> None:
        """Start the worker tasks on the running event loop."""
        if self._tasks:
            logger.warning("Dispatcher already started")
            return
        self._queue = asyncio.Queue(maxsize=self.max_size)
        self._tasks = [
            asyncio.create_task(self._worker(i), name=f"issue-dispatcher-{i}")
            for i in range(self.workers)
        ]
        logger.info("Issue dispatcher started", extra={"workers": self.workers})

    async def enqueue(self, issue_id: str) -> bool:
        """Queue an accepted issue without waiting.

        Returns True when the id went straight into the queue and False when
        the queue was full and it was parked in the backlog.
        """
        if self._queue is None:
            raise RuntimeError("Dispatcher not started. Call start() first.")
        try:
            self._queue.put_nowait(issue_id)
        except asyncio.QueueFull:
            self._backlog.append(issue_id)
            logger.warning(
                "Dispatch queue full; issue parked in backlog",
                extra={"issue_id": issue_id, "backlog": len(self._backlog)},
            )
            return False
        logger.debug("Issue queued", extra={"issue_id": issue_id, "queued": self.size})
        return True

    async def join(self) -> None:
        """Wait until every queued and backlogged issue has been processed."""
        if self._queue is not None:
            await self._queue.join()

    async def stop(self) -> None:
        """Finish queued work, then stop the workers."""
        if not self._tasks:
            return
        await self.join()
        for _ in self._tasks:
            await self._queue.put(None)
        await asyncio.gather(*self._tasks)
        self._tasks = []
        self._queue = None
        logger.info("Issue dispatcher stopped")

    def _refill(self) -> None:
        while self._backlog and not self._queue.full():
            self._queue.put_nowait(self._backlog.popleft())

    async def _worker(self, index: int) -> None:
        while True:
            issue_id = await self._queue.get()
            # Refill before task_done so join() cannot return with a backlog
            self._refill()
            try:
                if issue_id is None:
                    return
                await self.handler(issue_id)
            except WorkflowFailed as e:
                logger.error(
                    "Dispatched workflow failed",
                    extra={"issue_id": issue_id, "workflow_id": e.workflow_id, "error": e.reason},
                )
            except Exception:
                # The workflow state records progress; a resume picks it up again
                logger.exception(
                    "Dispatched issue processing crashed",
                    extra={"issue_id": issue_id, "worker": index},
                )
            finally:
                self._queue.task_done()
