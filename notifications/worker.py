"""
Background delivery of dispatch requests.

Checkout must never wait on a messaging provider, so receipts are handed to
a small thread pool. Each job runs one `dispatch` independently and reports
back through an optional completion callback.

Design decisions:
- In-memory job table bounded to the most recent finished jobs; it is a
  status view for UI polling, not a durable result store
- A dispatch that raises still ends its job as failed and fires the callback
- Callback exceptions are logged and never reach the worker thread
- Job status is one of pending, sent, failed
"""

import logging
import threading
import uuid
import concurrent.futures
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Iterable, Optional

from notifications.dispatcher import Dispatcher
from shared.errors import ErrorKind
from shared.models import DispatchRequest, DispatchResult, utcnow

logger = logging.getLogger("receipt_worker")

CompletionCallback = Callable[[DispatchResult], None]

MAX_RETAINED_JOBS = 1000


class JobStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


@dataclass
class DispatchJob:
    """One queued dispatch and, once finished, its result."""
    job_id: str
    request: DispatchRequest
    status: JobStatus = JobStatus.PENDING
    result: Optional[DispatchResult] = None
    submitted_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None


class DispatchWorker:
    """
    Thread pool running dispatches off the caller's thread.

    Example:
        worker = DispatchWorker(dispatcher, max_workers=4)
        job_id = worker.submit(request, on_complete=lambda r: print(r))
        worker.status(job_id)  # JobStatus.PENDING, then SENT or FAILED
    """

    def __init__(
        self,
        dispatcher: Dispatcher,
        max_workers: int = 4,
        max_retained_jobs: int = MAX_RETAINED_JOBS,
    ):
        self.dispatcher = dispatcher
        self.max_retained_jobs = max_retained_jobs
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="dispatch-worker",
        )
        self._jobs: dict[str, DispatchJob] = {}
        self._futures: dict[str, Future] = {}
        # Finished job ids, oldest first
        self._finished: deque[str] = deque()
        self._lock = threading.Lock()

    def submit(
        self,
        request: DispatchRequest,
        on_complete: Optional[CompletionCallback] = None,
    ) -> str:
        """
        Queue a request and return its job id immediately.

        Raises:
            RuntimeError: If the worker has been shut down
        """
        job = DispatchJob(job_id=uuid.uuid4().hex, request=request)
        with self._lock:
            self._jobs[job.job_id] = job
            self._futures[job.job_id] = self._executor.submit(self._run, job, on_complete)
        logger.info(
            f"Queued {request.message_type.value} job {job.job_id} "
            f"({request.channel.value} to {request.recipient_address})"
        )
        return job.job_id

    def _run(self, job: DispatchJob, on_complete: Optional[CompletionCallback]) -> None:
        try:
            result = self.dispatcher.dispatch(job.request)
        except Exception as e:
            logger.exception(f"Dispatch for job {job.job_id} raised")
            result = DispatchResult(
                succeeded=False,
                error=ErrorKind.TRANSPORT_FAILURE,
                diagnostic=f"Unexpected error: {e}",
            )
        job.result = result
        job.status = JobStatus.SENT if result.succeeded else JobStatus.FAILED
        job.finished_at = utcnow()
        logger.info(f"Job {job.job_id} finished: {result}")

        if on_complete is not None:
            try:
                on_complete(result)
            except Exception as e:
                logger.error(f"Completion callback for job {job.job_id} failed: {e}")
        self._retire(job.job_id)

    def _retire(self, job_id: str) -> None:
        with self._lock:
            self._futures.pop(job_id, None)
            self._finished.append(job_id)
            while len(self._finished) > self.max_retained_jobs:
                self._jobs.pop(self._finished.popleft(), None)

    def get_job(self, job_id: str) -> Optional[DispatchJob]:
        with self._lock:
            return self._jobs.get(job_id)

    def status(self, job_id: str) -> Optional[JobStatus]:
        job = self.get_job(job_id)
        return job.status if job else None

    def wait(self, job_ids: Iterable[str], timeout: Optional[float] = None) -> bool:
        """
        Block until the given jobs finish. Returns False on timeout.

        Jobs that already finished, or are no longer retained, do not block.
        """
        with self._lock:
            futures = [self._futures[j] for j in job_ids if j in self._futures]
        _, not_done = concurrent.futures.wait(futures, timeout=timeout)
        return not not_done

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
        logger.info("Dispatch worker stopped")
