"""Background workers that run queued transfers."""

import logging
import queue
import threading
from typing import Callable

from core.models import TransferRequest

logger = logging.getLogger(__name__)

Handler = Callable[[TransferRequest], None]

_STOP = object()


class TransferWorkerPool:
    """
    A work queue drained by a fixed number of daemon threads.

    Each worker runs one transfer at a time to completion, so a single job is
    never processed concurrently. Different jobs run in parallel.
    """

    def __init__(self, workers: int = 2):
        if workers < 1:
            raise ValueError("workers must be at least 1")
        self._size = workers
        self._queue: queue.Queue = queue.Queue()
        self._threads: list[threading.Thread] = []
        self._handler: Handler | None = None

    def start(self, handler: Handler) -> None:
        if self._threads:
            raise RuntimeError("Worker pool already started")
        self._handler = handler
        for i in range(self._size):
            thread = threading.Thread(target=self._work, name=f"transfer-worker-{i}", daemon=True)
            thread.start()
            self._threads.append(thread)
        logger.info(f"Started {self._size} transfer workers")

    def enqueue(self, request: TransferRequest) -> None:
        self._queue.put(request)

    def join(self) -> None:
        """Block until every queued transfer has been handled."""
        self._queue.join()

    def shutdown(self, wait: bool = True) -> None:
        for _ in self._threads:
            self._queue.put(_STOP)
        if wait:
            for thread in self._threads:
                thread.join()
        self._threads = []

    def _work(self) -> None:
        while True:
            request = self._queue.get()
            try:
                if request is _STOP:
                    return
                self._handler(request)
            except Exception:
                logger.exception(f"Worker failed on transfer {request.job_id}")
            finally:
                self._queue.task_done()
