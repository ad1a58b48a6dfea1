"""Tests for job status tracking and the poll loop."""

import threading
import time
from datetime import timedelta
from unittest.mock import Mock

import pytest

from conftest import make_hand
from hand_pipeline.errors import NotFoundError, ReconciliationError, RemoteServiceError, ValidationError
from hand_pipeline.models import AnalysisJob, JobStatus, PipelineStatus, RemoteJobStatus, Segment, Stream, utcnow
from hand_pipeline.reconciler import HandReconciler
from hand_pipeline.tracker import JobPoller, JobStatusTracker


@pytest.fixture
def reconciler(store):
    return Mock(wraps=HandReconciler(store, threshold=5.0))


@pytest.fixture
def tracker(store, reconciler, config, client):
    return JobStatusTracker(store, reconciler, config, client)


def status(job_id, value, progress=0, error=None):
    return RemoteJobStatus(job_id=job_id, status=JobStatus.parse(value), progress=progress, error_message=error)


class TestProgress:
    def test_executing_updates_job_and_stream(self, tracker, store, dispatched):
        job = tracker.apply_status(dispatched.job_id, status(dispatched.job_id, "EXECUTING", 40))

        assert job.status == JobStatus.EXECUTING
        assert job.progress == 40
        stream = store.get_stream(dispatched.stream_id)
        assert stream.pipeline_status == PipelineStatus.ANALYZING
        assert stream.pipeline_progress == 40

    def test_progress_is_clamped(self, tracker, store, dispatched):
        tracker.apply_status(dispatched.job_id, status(dispatched.job_id, "executing", 150))
        assert store.get_stream(dispatched.stream_id).pipeline_progress == 100


class TestSuccess:
    def test_success_reconciles_and_completes(self, tracker, store, dispatched):
        store.add_hands(dispatched.stream_id, [
            make_hand("h1", 10, 40),
            make_hand("h2", 12, 30),
            make_hand("h3", 95, 180),
        ])

        job = tracker.apply_status(dispatched.job_id, status(dispatched.job_id, "SUCCESS", 100))

        assert job.status == JobStatus.SUCCESS
        assert job.completed_at is not None
        stream = store.get_stream(dispatched.stream_id)
        assert stream.pipeline_status == PipelineStatus.COMPLETED
        assert stream.pipeline_progress == 100
        assert stream.hand_count == 2
        assert stream.current_job_id == dispatched.job_id

    def test_duplicate_success_reconciles_once(self, tracker, reconciler, dispatched):
        tracker.apply_status(dispatched.job_id, status(dispatched.job_id, "SUCCESS", 100))
        tracker.apply_status(dispatched.job_id, status(dispatched.job_id, "SUCCESS", 100))
        assert reconciler.reconcile_locked.call_count == 1

    def test_late_progress_after_success_is_ignored(self, tracker, store, dispatched):
        tracker.apply_status(dispatched.job_id, status(dispatched.job_id, "SUCCESS", 100))
        job = tracker.apply_status(dispatched.job_id, status(dispatched.job_id, "EXECUTING", 20))

        assert job.status == JobStatus.SUCCESS
        assert store.get_stream(dispatched.stream_id).pipeline_status == PipelineStatus.COMPLETED

    def test_reconciliation_failure_fails_stream(self, tracker, reconciler, store, dispatched):
        reconciler.reconcile_locked.side_effect = ReconciliationError("hand table locked")

        job = tracker.apply_status(dispatched.job_id, status(dispatched.job_id, "SUCCESS", 100))

        assert job.status == JobStatus.SUCCESS
        stream = store.get_stream(dispatched.stream_id)
        assert stream.pipeline_status == PipelineStatus.FAILED
        assert stream.pipeline_error == "Reconciliation failed: hand table locked"

    def test_stream_left_analyzing_is_finalized_on_redelivery(self, tracker, store, dispatched):
        # Job finalized without its stream, e.g. a crash between the two writes
        store.update_job(dispatched.job_id, JobStatus.SUCCESS, 100, completed_at=utcnow())
        assert store.get_stream(dispatched.stream_id).pipeline_status == PipelineStatus.ANALYZING

        tracker.apply_status(dispatched.job_id, status(dispatched.job_id, "SUCCESS", 100))

        assert store.get_stream(dispatched.stream_id).pipeline_status == PipelineStatus.COMPLETED

    def test_concurrent_success_deliveries_reconcile_once(self, store, config, dispatched):
        real = HandReconciler(store, threshold=5.0)

        def slow_reconcile(stream_id):
            time.sleep(0.2)
            return real.reconcile_locked(stream_id)

        reconciler = Mock(wraps=real)
        reconciler.reconcile_locked.side_effect = slow_reconcile
        tracker = JobStatusTracker(store, reconciler, config)

        barrier = threading.Barrier(2)
        errors = []

        def deliver():
            barrier.wait()
            try:
                tracker.apply_status(dispatched.job_id, status(dispatched.job_id, "SUCCESS", 100))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=deliver) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=5)

        assert errors == []
        assert reconciler.reconcile_locked.call_count == 1
        assert store.get_stream(dispatched.stream_id).pipeline_status == PipelineStatus.COMPLETED


class TestRecovery:
    def test_recover_stream_completes_finished_job(self, tracker, store, dispatched):
        store.update_job(dispatched.job_id, JobStatus.SUCCESS, 100, completed_at=utcnow())

        assert tracker.recover_stream(store.get_stream(dispatched.stream_id)) is True
        assert store.get_stream(dispatched.stream_id).pipeline_status == PipelineStatus.COMPLETED

    def test_recover_stream_fails_failed_job(self, tracker, store, dispatched):
        store.update_job(dispatched.job_id, JobStatus.FAILURE, 0, error_message="decode error", completed_at=utcnow())

        assert tracker.recover_stream(store.get_stream(dispatched.stream_id)) is True
        stream = store.get_stream(dispatched.stream_id)
        assert stream.pipeline_status == PipelineStatus.FAILED
        assert stream.pipeline_error == "decode error"

    def test_recover_stream_ignores_active_job(self, tracker, store, dispatched):
        assert tracker.recover_stream(store.get_stream(dispatched.stream_id)) is False
        assert store.get_stream(dispatched.stream_id).pipeline_status == PipelineStatus.ANALYZING


class TestFailure:
    def test_failure_marks_stream_failed(self, tracker, store, dispatched):
        job = tracker.apply_status(dispatched.job_id, status(dispatched.job_id, "FAILURE", error="decode error"))

        assert job.status == JobStatus.FAILURE
        assert job.error_message == "decode error"
        stream = store.get_stream(dispatched.stream_id)
        assert stream.pipeline_status == PipelineStatus.FAILED
        assert stream.pipeline_error == "decode error"
        assert stream.current_job_id == dispatched.job_id

    def test_failure_without_message(self, tracker, store, dispatched):
        tracker.apply_status(dispatched.job_id, status(dispatched.job_id, "failure"))
        assert store.get_stream(dispatched.stream_id).pipeline_error == "Analysis failed"

    def test_stalled_job_times_out(self, tracker, store):
        store.create_stream(Stream(id="s1", name="stalled", video_locator="gs://vods/a.mp4"))
        job = AnalysisJob(id="j1", stream_id="s1", segments=[Segment(0, 600)])
        job.created_at = utcnow() - timedelta(minutes=31)
        store.record_dispatch(job)

        updated = tracker.apply_status("j1", status("j1", "EXECUTING", 0))

        assert updated.status == JobStatus.FAILURE
        stream = store.get_stream("s1")
        assert stream.pipeline_status == PipelineStatus.FAILED
        assert stream.pipeline_error == "Analysis timed out: no progress after 31 minutes"

    def test_recent_job_without_progress_is_not_stalled(self, tracker, dispatched):
        job = tracker.apply_status(dispatched.job_id, status(dispatched.job_id, "PENDING", 0))
        assert job.status == JobStatus.PENDING


class TestLookups:
    def test_unknown_job(self, tracker):
        with pytest.raises(NotFoundError):
            tracker.apply_status("missing", status("missing", "SUCCESS"))

    def test_mismatched_job_id(self, tracker, dispatched):
        with pytest.raises(ValidationError):
            tracker.apply_status(dispatched.job_id, status("someone-else", "SUCCESS"))


class TestPolling:
    def test_reconcile_polls_remote_status(self, tracker, client, store, dispatched):
        client.statuses[dispatched.job_id] = status(dispatched.job_id, "EXECUTING", 55)
        job = tracker.reconcile(dispatched.job_id)
        assert job.progress == 55
        assert store.get_stream(dispatched.stream_id).pipeline_progress == 55

    def test_remote_error_leaves_job_unchanged(self, tracker, client, store, dispatched):
        client.statuses[dispatched.job_id] = RemoteServiceError("Analysis Service unreachable")
        with pytest.raises(RemoteServiceError):
            tracker.reconcile(dispatched.job_id)
        assert store.get_job(dispatched.job_id).status == JobStatus.PENDING

    def test_poller_runs_until_terminal(self, tracker, client, config, store, dispatched):
        client.statuses[dispatched.job_id] = status(dispatched.job_id, "SUCCESS", 100)
        poller = JobPoller(tracker, config)

        assert poller.watch(dispatched.job_id) is True
        assert poller.watch(dispatched.job_id) is False

        deadline = time.monotonic() + 5
        while poller.watched_jobs() and time.monotonic() < deadline:
            time.sleep(0.01)

        assert poller.watched_jobs() == []
        assert store.get_stream(dispatched.stream_id).pipeline_status == PipelineStatus.COMPLETED

    def test_poller_stop(self, tracker, client, config, dispatched):
        client.statuses[dispatched.job_id] = status(dispatched.job_id, "EXECUTING", 10)
        poller = JobPoller(tracker, config)
        poller.watch(dispatched.job_id)
        poller.stop()
        assert poller.watched_jobs() == []
