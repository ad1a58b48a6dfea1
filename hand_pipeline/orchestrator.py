"""
Pipeline orchestration and operator actions.

Wires the dispatcher, tracker, reconciler and poller around one state store
and exposes the operations the HTTP layer and operators use: analyze,
retry, reset, publish, hand-count sync and stream deletion.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from .adapters.base import StateStore
from .analysis_client import AnalysisServiceClient
from .config import PipelineConfig
from .dispatcher import JobDispatcher
from .errors import ConflictError, NotFoundError, PipelineError
from .models import AnalysisJob, DispatchResult, PipelineStatus, RemoteJobStatus, Stream
from .pipeline_state import Actor, check_transition
from .reconciler import HandReconciler
from .segments import PlanInput
from .tracker import JobPoller, JobStatusTracker

logger = logging.getLogger("hand_pipeline")


class PipelineOrchestrator:
    """Entry point for every pipeline operation"""

    def __init__(self, config: PipelineConfig, store: StateStore,
                 client: Optional[AnalysisServiceClient] = None):
        self.config = config
        self.store = store
        self.reconciler = HandReconciler(store, config.DEDUP_THRESHOLD_SEC)
        self.dispatcher = JobDispatcher(store, config, client)
        self.tracker = JobStatusTracker(store, self.reconciler, config, client)
        self.poller = JobPoller(self.tracker, config) if config.ENABLE_POLLING else None
        self.stats = {
            'dispatched': 0,
            'dispatch_errors': 0,
            'status_updates': 0,
            'start_time': datetime.now()
        }

    def analyze(self, video_locator: Optional[str], plan_input: PlanInput,
                stream_id: Optional[str] = None, platform_hint: Optional[str] = None,
                stream_name: Optional[str] = None) -> DispatchResult:
        """
        Dispatch analysis for a new or existing stream.

        Args:
            video_locator: Source video (may be None for an existing stream)
            plan_input: Total duration or explicit ranges
            stream_id: Existing stream, or None to create one
            platform_hint: Optional source platform
            stream_name: Display name for a newly created stream

        Returns:
            DispatchResult of the accepted job
        """
        try:
            result = self.dispatcher.dispatch(
                stream_id, video_locator, plan_input,
                platform_hint=platform_hint, stream_name=stream_name
            )
        except PipelineError as e:
            self.stats['dispatch_errors'] += 1
            logger.warning(f"Dispatch rejected for stream {stream_id or '<new>'}: {e}")
            raise

        self.stats['dispatched'] += 1
        if self.poller:
            self.poller.watch(result.job_id)
        return result

    def retry(self, stream_id: str, plan_input: PlanInput,
              platform_hint: Optional[str] = None) -> DispatchResult:
        """Re-dispatch a stream using its stored video locator"""
        return self.analyze(None, plan_input, stream_id=stream_id, platform_hint=platform_hint)

    def handle_status(self, job_id: str, remote_status: RemoteJobStatus) -> AnalysisJob:
        """Apply a status callback from the Analysis Service"""
        job = self.tracker.apply_status(job_id, remote_status)
        self.stats['status_updates'] += 1
        if job.is_terminal and self.poller:
            self.poller.cancel(job_id)
        return job

    def refresh_job(self, job_id: str) -> AnalysisJob:
        """Poll the Analysis Service once for a job"""
        job = self.tracker.reconcile(job_id)
        self.stats['status_updates'] += 1
        return job

    def get_stream(self, stream_id: str) -> Stream:
        stream = self.store.get_stream(stream_id)
        if not stream:
            raise NotFoundError(f"Stream not found: {stream_id}")
        return stream

    def list_jobs(self, stream_id: str) -> List[AnalysisJob]:
        self.get_stream(stream_id)
        return self.store.list_jobs(stream_id)

    def reset(self, stream_id: str, delete_hands: bool = True) -> Stream:
        """
        Move a failed stream back to pending.

        Clears progress, error and current job. Hands from earlier attempts
        are deleted unless delete_hands is False, so a re-analysis does not
        duplicate them.
        """
        with self.store.stream_lock(stream_id):
            stream = self.get_stream(stream_id)
            check_transition(stream.pipeline_status, PipelineStatus.PENDING, Actor.OPERATOR)
            deleted = self.store.reset_stream(stream_id, delete_hands=delete_hands)

        logger.info(f"RESET: stream {stream_id} to pending ({deleted} hands deleted)")
        return self.get_stream(stream_id)

    def publish(self, stream_id: str) -> Stream:
        """Mark a completed stream as published"""
        with self.store.stream_lock(stream_id):
            stream = self.get_stream(stream_id)
            check_transition(stream.pipeline_status, PipelineStatus.PUBLISHED, Actor.REVIEWER)
            updated = self.store.update_stream(stream_id, {"pipeline_status": PipelineStatus.PUBLISHED})

        logger.info(f"PUBLISHED: stream {stream_id} ({updated.hand_count} hands)")
        return updated

    def sync_hand_count(self, stream_id: str) -> int:
        """Recount hand rows into the stream's hand_count"""
        with self.store.stream_lock(stream_id):
            stream = self.get_stream(stream_id)
            count = self.store.count_hands(stream_id)
            if count != stream.hand_count:
                self.store.update_stream(stream_id, {"hand_count": count})
                logger.info(f"Synced hand count for stream {stream_id}: {stream.hand_count} -> {count}")
        return count

    def delete_stream(self, stream_id: str) -> None:
        """Delete a stream with its hands and jobs; refused while a job is active"""
        with self.store.stream_lock(stream_id):
            self.get_stream(stream_id)
            active = self.store.get_active_job(stream_id)
            if active:
                raise ConflictError(
                    f"Stream {stream_id} has an active job ({active.id}); wait for it to finish",
                    stream_id=stream_id, job_id=active.id
                )
            self.store.delete_stream(stream_id)

        logger.info(f"Deleted stream {stream_id}")

    def resume_polling(self) -> int:
        """
        Pick up work left behind by a previous run.

        Streams still analyzing a job that already finished are finalized,
        then every pending/executing job is watched when polling is enabled.

        Returns:
            Number of jobs now being polled
        """
        recovered = sum(
            1 for stream in self.store.list_streams_by_status(PipelineStatus.ANALYZING)
            if self.tracker.recover_stream(stream)
        )
        if recovered:
            logger.info(f"Finalized {recovered} streams left analyzing finished jobs")

        if not self.poller:
            return 0
        jobs = self.store.list_active_jobs()
        for job in jobs:
            self.poller.watch(job.id)
        if jobs:
            logger.info(f"Resumed polling for {len(jobs)} active jobs")
        return len(jobs)

    def shutdown(self) -> None:
        if self.poller:
            self.poller.stop()

    def get_stats(self) -> Dict[str, Any]:
        """Get orchestrator statistics"""
        uptime = (datetime.now() - self.stats['start_time']).total_seconds()
        return {
            'dispatched': self.stats['dispatched'],
            'dispatch_errors': self.stats['dispatch_errors'],
            'status_updates': self.stats['status_updates'],
            'watched_jobs': len(self.poller.watched_jobs()) if self.poller else 0,
            'uptime_seconds': uptime,
            'store': self.store.get_stats()
        }
