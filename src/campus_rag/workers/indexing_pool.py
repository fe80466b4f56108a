"""Background worker pool for indexing runs."""

import asyncio
from typing import List, Optional

from campus_rag.config import get_settings
from campus_rag.utils.errors import RagException
from campus_rag.utils.logging import get_logger
from campus_rag.workers.indexing_coordinator import IndexingCoordinator

logger = get_logger("indexing_pool")
settings = get_settings()


class IndexingWorkerPool:
    """
    Fixed number of asyncio workers draining a queue of leased indexing runs.

    The worker count bounds how many documents (and therefore embedding calls)
    are processed at once. A failing run is recorded on its document and logged;
    the worker moves on to the next job.
    """

    def __init__(
        self,
        coordinator: IndexingCoordinator,
        concurrency: Optional[int] = None,
        queue_maxsize: Optional[int] = None,
    ):
        self.coordinator = coordinator
        self.concurrency = concurrency or settings.indexing.worker_concurrency
        self._queue: "asyncio.Queue[str]" = asyncio.Queue(
            maxsize=queue_maxsize if queue_maxsize is not None else settings.indexing.queue_maxsize
        )
        self._workers: List[asyncio.Task] = []

    @property
    def is_running(self) -> bool:
        return bool(self._workers)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def start(self) -> None:
        """Start the workers."""
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"indexing-worker-{i}")
            for i in range(self.concurrency)
        ]
        logger.info(f"Indexing worker pool started: workers={self.concurrency}")

    async def stop(self) -> None:
        """
        Cancel the workers and fail every run still waiting in the queue.

        Runs in progress are marked failed by the coordinator when cancelled.
        Queued runs already hold their document's lease, so each one is marked
        failed here to release it.
        """
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

        dropped = 0
        while True:
            try:
                document_id = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            await self.coordinator.mark_failed(document_id, "Indexing was cancelled")
            self._queue.task_done()
            dropped += 1

        logger.info(f"Indexing worker pool stopped: cancelled_pending={dropped}")

    def submit(self, document_id: str) -> None:
        """
        Queue a run for a document whose lease was already taken.

        Raises:
            RagException: If the queue is full (503)
        """
        try:
            self._queue.put_nowait(document_id)
        except asyncio.QueueFull as e:
            raise RagException(
                "Indexing queue is full, retry later",
                status_code=503,
                code="INDEXING_QUEUE_FULL",
                details={"document_id": document_id},
            ) from e
        logger.debug(f"Indexing run queued: document_id={document_id}, pending={self.pending}")

    async def join(self) -> None:
        """Wait until every queued run has finished."""
        await self._queue.join()

    async def _worker(self, number: int) -> None:
        while True:
            document_id = await self._queue.get()
            try:
                await self.coordinator.run_indexing(document_id)
            except RagException as e:
                logger.warning(
                    f"Indexing worker {number}: run failed for {document_id} - {e.code}: {e.message}"
                )
            except Exception as e:
                logger.error(
                    f"Indexing worker {number}: unexpected error for {document_id} - {e}",
                    exc_info=True,
                )
            finally:
                self._queue.task_done()
