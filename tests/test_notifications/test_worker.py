"""
Tests for the background dispatch worker.
"""

import threading

import pytest

from notifications.dispatcher import Dispatcher
from notifications.worker import DispatchWorker, JobStatus
from shared.errors import ErrorKind
from shared.models import ChannelFamily, DispatchRequest, MessageType, ProviderId


@pytest.fixture
def request_for(receipt_payload):
    def build(address: str = "alice@example.com") -> DispatchRequest:
        return DispatchRequest(
            channel=ChannelFamily.EMAIL,
            recipient_address=address,
            message_type=MessageType.RECEIPT,
            payload=receipt_payload,
        )
    return build


@pytest.fixture
def worker(dispatcher):
    worker = DispatchWorker(dispatcher, max_workers=2)
    yield worker
    worker.shutdown(wait=True)


class TestDispatchWorker:
    """Tests for job submission, status and callbacks."""

    def test_job_completes_as_sent(self, worker, request_for, mailketing):
        job_id = worker.submit(request_for())

        assert worker.wait([job_id], timeout=5) is True
        assert worker.status(job_id) == JobStatus.SENT
        assert worker.get_job(job_id).result.provider_used == ProviderId.MAILKETING
        assert mailketing.get_sent_count() == 1

    def test_failed_job(self, worker, request_for):
        """Test an invalid request ends as a failed job, not an exception."""
        job_id = worker.submit(request_for("not-an-email"))

        worker.wait([job_id], timeout=5)

        assert worker.status(job_id) == JobStatus.FAILED

    def test_callback_receives_result(self, worker, request_for):
        received = []
        done = threading.Event()

        def on_complete(result):
            received.append(result)
            done.set()

        worker.submit(request_for(), on_complete)

        assert done.wait(timeout=5)
        assert received[0].succeeded is True

    def test_callback_exception_is_contained(self, worker, request_for):
        """Test a failing callback does not affect the job."""
        def on_complete(result):
            raise RuntimeError("ui gone")

        job_id = worker.submit(request_for(), on_complete)
        worker.wait([job_id], timeout=5)

        assert worker.status(job_id) == JobStatus.SENT

    def test_jobs_are_independent(self, worker, request_for, mailketing):
        job_ids = [worker.submit(request_for(f"user{i}@example.com")) for i in range(5)]

        worker.wait(job_ids, timeout=5)

        assert all(worker.status(j) == JobStatus.SENT for j in job_ids)
        assert mailketing.get_sent_count() == 5

    def test_unknown_job(self, worker):
        assert worker.status("missing") is None

    def test_submit_after_shutdown(self, dispatcher: Dispatcher, request_for):
        worker = DispatchWorker(dispatcher, max_workers=1)
        worker.shutdown()

        with pytest.raises(RuntimeError):
            worker.submit(request_for())

    def test_dispatch_exception_fails_job(self, worker, dispatcher, request_for, monkeypatch):
        """Test a raising dispatch still finishes the job and fires the callback."""
        def broken_dispatch(request):
            raise RuntimeError("boom")

        monkeypatch.setattr(dispatcher, "dispatch", broken_dispatch)
        received = []
        done = threading.Event()

        def on_complete(result):
            received.append(result)
            done.set()

        job_id = worker.submit(request_for(), on_complete)

        assert done.wait(timeout=5)
        worker.wait([job_id], timeout=5)
        assert worker.status(job_id) == JobStatus.FAILED
        assert received[0].error == ErrorKind.TRANSPORT_FAILURE
        assert "boom" in received[0].diagnostic

    def test_finished_jobs_are_bounded(self, dispatcher, request_for):
        """Test only the most recent finished jobs are kept for polling."""
        worker = DispatchWorker(dispatcher, max_workers=1, max_retained_jobs=2)
        try:
            job_ids = [worker.submit(request_for()) for _ in range(4)]
            assert worker.wait(job_ids, timeout=5) is True
        finally:
            worker.shutdown(wait=True)

        assert [worker.status(j) for j in job_ids] == [None, None, JobStatus.SENT, JobStatus.SENT]
