"""
Job status tracking.

Applies remote job status (from callbacks or polling) to the local job and
stream records until the job is terminal. On success the stream's hands are
reconciled before the stream is marked completed.
"""

import logging
import threading
from typing import Dict, List, Optional

from .adapters.base import StateStore
from .analysis_client import AnalysisServiceClient, client_from_config
from .config import PipelineConfig
from .errors import NotFoundError, ReconciliationError, ValidationError
from .logging_setup import log_exception
from .models import AnalysisJob, JobStatus, PipelineStatus, RemoteJobStatus, Stream, utcnow
from .pipeline_state import Actor, check_transition
from .reconciler import HandReconciler
from .util import clamp_progress

logger = logging.getLogger("hand_pipeline")

DEFAULT_FAILURE_MESSAGE = "Analysis failed"


class JobStatusTracker:
    """Drives analysis jobs and their streams to a terminal state"""

    def __init__(self, store: StateStore, reconciler: HandReconciler, config: PipelineConfig,
                 client: Optional[AnalysisServiceClient] = None):
        self.store = store
        self.reconciler = reconciler
        self.config = config
        self.client = client

    def _get_client(self) -> AnalysisServiceClient:
        if self.client is None:
            self.client = client_from_config(self.config)
        return self.client

    def _get_job(self, job_id: str) -> AnalysisJob:
        job = self.store.get_job(job_id)
        if not job:
            raise NotFoundError(f"Job not found: {job_id}")
        return job

    def reconcile(self, job_id: str) -> AnalysisJob:
        """
        Poll the Analysis Service once and apply the reported status.

        Raises:
            NotFoundError: if the job is unknown
            RemoteServiceError: if the status could not be fetched (job unchanged)
        """
        job = self._get_job(job_id)
        if job.is_terminal:
            self._finalize_stream(job)
            return job

        remote = self._get_client().get_status(job_id)
        return self._apply(job, remote)

    def apply_status(self, job_id: str, remote_status: RemoteJobStatus) -> AnalysisJob:
        """
        Apply a status pushed by the Analysis Service.

        Repeated or late deliveries for a terminal job are no-ops.
        """
        if remote_status.job_id != job_id:
            raise ValidationError(f"Status is for job {remote_status.job_id}, not {job_id}")

        job = self._get_job(job_id)
        if job.is_terminal:
            logger.debug(f"Ignoring {remote_status.status.value} for terminal job {job_id}")
            self._finalize_stream(job)
            return job

        return self._apply(job, remote_status)

    def recover_stream(self, stream: Stream) -> bool:
        """
        Finalize a stream left analyzing a job that is already terminal.

        Returns:
            True if the stream's current job was terminal and finalization ran
        """
        if stream.pipeline_status != PipelineStatus.ANALYZING or not stream.current_job_id:
            return False
        job = self.store.get_job(stream.current_job_id)
        if not job or not job.is_terminal:
            return False

        logger.warning(f"Stream {stream.id} left analyzing finished job {job.id}, finalizing it")
        self._finalize_stream(job)
        return True

    def _apply(self, job: AnalysisJob, remote: RemoteJobStatus) -> AnalysisJob:
        if remote.status == JobStatus.SUCCESS:
            return self._complete(job, remote)

        if remote.status == JobStatus.FAILURE:
            return self._fail(job, remote.error_message or DEFAULT_FAILURE_MESSAGE, remote.progress)

        stalled_minutes = self._stalled_minutes(job, remote)
        if stalled_minutes is not None:
            logger.warning(f"Job {job.id} made no progress for {stalled_minutes} minutes, failing it")
            return self._fail(job, f"Analysis timed out: no progress after {stalled_minutes} minutes", 0)

        check_transition(PipelineStatus.ANALYZING, PipelineStatus.ANALYZING, Actor.TRACKER)
        progress = clamp_progress(remote.progress)
        updated = self.store.update_job(
            job.id, remote.status, progress,
            stream_changes={"pipeline_progress": progress}
        )
        if updated is None:
            return self._get_job(job.id)

        logger.debug(f"Job {job.id} {remote.status.value} at {progress}%")
        return updated

    def _stalled_minutes(self, job: AnalysisJob, remote: RemoteJobStatus) -> Optional[int]:
        if remote.progress > 0 or not self.config.STALL_TIMEOUT_SEC:
            return None
        elapsed = (utcnow() - job.created_at).total_seconds()
        if elapsed < self.config.STALL_TIMEOUT_SEC:
            return None
        return int(elapsed // 60)

    def _complete(self, job: AnalysisJob, remote: RemoteJobStatus) -> AnalysisJob:
        updated = self.store.update_job(
            job.id, JobStatus.SUCCESS, 100,
            completed_at=remote.completed_at or utcnow()
        )
        if updated is None:
            # Another delivery finalized the job first
            return self._get_job(job.id)

        logger.info(f"Job {job.id} succeeded, reconciling hands for stream {job.stream_id}")
        self._finalize_stream(updated)
        return updated

    def _fail(self, job: AnalysisJob, message: str, progress: int) -> AnalysisJob:
        check_transition(PipelineStatus.ANALYZING, PipelineStatus.FAILED, Actor.TRACKER)
        updated = self.store.update_job(
            job.id, JobStatus.FAILURE, clamp_progress(progress),
            error_message=message,
            completed_at=utcnow(),
            stream_changes={
                "pipeline_status": PipelineStatus.FAILED,
                "pipeline_error": message,
            }
        )
        if updated is None:
            return self._get_job(job.id)

        logger.error(f"FAILED: job {job.id} for stream {job.stream_id}: {message}")
        return updated

    def _finalize_stream(self, job: AnalysisJob) -> None:
        """Bring a stream still analyzing a terminal job to completed/failed"""
        # Concurrent deliveries of the same result finalize the stream once
        with self.store.stream_lock(job.stream_id):
            self._finalize_stream_locked(job)

    def _finalize_stream_locked(self, job: AnalysisJob) -> None:
        stream = self.store.get_stream(job.stream_id)
        if not stream or stream.pipeline_status != PipelineStatus.ANALYZING or stream.current_job_id != job.id:
            return

        if job.status == JobStatus.FAILURE:
            message = job.error_message or DEFAULT_FAILURE_MESSAGE
            self.store.update_stream(
                job.stream_id,
                {"pipeline_status": PipelineStatus.FAILED, "pipeline_error": message},
                expect_job_id=job.id
            )
            return

        try:
            result = self.reconciler.reconcile_locked(job.stream_id)
        except ReconciliationError as e:
            check_transition(PipelineStatus.ANALYZING, PipelineStatus.FAILED, Actor.TRACKER)
            self.store.update_stream(
                job.stream_id,
                {"pipeline_status": PipelineStatus.FAILED, "pipeline_error": f"Reconciliation failed: {e}"},
                expect_job_id=job.id
            )
            logger.error(f"FAILED: stream {job.stream_id} reconciliation after job {job.id}: {e}")
            return

        check_transition(PipelineStatus.ANALYZING, PipelineStatus.COMPLETED, Actor.TRACKER)
        self.store.update_stream(
            job.stream_id,
            {
                "pipeline_status": PipelineStatus.COMPLETED,
                "pipeline_progress": 100,
                "pipeline_error": None,
            },
            expect_job_id=job.id
        )
        logger.info(f"COMPLETED: stream {job.stream_id} with {result.kept_count} hands (job {job.id})")


class JobPoller:
    """Background poll loops, one daemon thread per watched job"""

    def __init__(self, tracker: JobStatusTracker, config: PipelineConfig):
        self.tracker = tracker
        self.config = config
        self._watches: Dict[str, threading.Event] = {}
        self._lock = threading.Lock()

    def watch(self, job_id: str) -> bool:
        """
        Start polling a job until it is terminal.

        Returns:
            True if a new poll loop was started, False if already watched
        """
        with self._lock:
            if job_id in self._watches:
                return False
            stop_event = threading.Event()
            self._watches[job_id] = stop_event

        thread = threading.Thread(
            target=self._run,
            args=(job_id, stop_event),
            name=f"poll-{job_id}",
            daemon=True
        )
        thread.start()
        logger.info(f"Polling job {job_id} every {self.config.POLL_INTERVAL_MS}ms")
        return True

    def cancel(self, job_id: str) -> None:
        with self._lock:
            stop_event = self._watches.pop(job_id, None)
        if stop_event:
            stop_event.set()

    def stop(self) -> None:
        """Stop all poll loops"""
        with self._lock:
            events = list(self._watches.values())
            self._watches.clear()
        for stop_event in events:
            stop_event.set()
        logger.info(f"Job poller stopped ({len(events)} loops)")

    def watched_jobs(self) -> List[str]:
        with self._lock:
            return list(self._watches)

    def _run(self, job_id: str, stop_event: threading.Event) -> None:
        interval = self.config.POLL_INTERVAL_MS
        try:
            while not stop_event.wait(interval / 1000.0):
                try:
                    job = self.tracker.reconcile(job_id)
                except NotFoundError:
                    logger.warning(f"Job {job_id} no longer exists, stopping poll loop")
                    return
                except Exception as e:
                    log_exception(logger, f"Error polling job {job_id}: {e}")
                    interval = min(interval * self.config.BACKOFF_MULTIPLIER, self.config.MAX_BACKOFF_MS)
                    continue

                if job.is_terminal:
                    logger.info(f"Job {job_id} reached {job.status.value}, stopping poll loop")
                    return
                interval = self.config.POLL_INTERVAL_MS
        finally:
            with self._lock:
                if self._watches.get(job_id) is stop_event:
                    del self._watches[job_id]
