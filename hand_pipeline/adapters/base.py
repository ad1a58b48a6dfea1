"""
Abstract base class for the pipeline state store.

The state store is the single source of truth for streams, analysis jobs
and hands. Every component reads and writes pipeline state through this
interface, enabling easy swapping between backends (Postgres, in-memory).
"""

from abc import ABC, abstractmethod
from typing import ContextManager, Optional, Dict, Any, List

from ..models import Stream, AnalysisJob, Hand, JobStatus, PipelineStatus

# Stream columns that may be changed through update_stream()
STREAM_MUTABLE_FIELDS = frozenset({
    "name",
    "video_locator",
    "pipeline_status",
    "pipeline_progress",
    "pipeline_error",
    "current_job_id",
    "analysis_attempts",
    "hand_count",
    "platform",
})

ACTIVE_JOB_STATUSES = (JobStatus.PENDING, JobStatus.EXECUTING)


class StateStore(ABC):
    """Abstract base class for pipeline state store adapters"""

    def connect(self) -> None:
        """Open connections / bootstrap schema. No-op by default."""

    def close(self) -> None:
        """Release resources. No-op by default."""

    @abstractmethod
    def stream_lock(self, stream_id: str) -> ContextManager[None]:
        """
        Exclusive per-stream lock.

        Dispatch and reconciliation run inside this lock so two callers
        cannot mutate the same stream's pipeline concurrently. Locks are
        not reentrant; never nest them for the same stream.

        Args:
            stream_id: ID of the stream to lock
        """
        pass

    # Streams

    @abstractmethod
    def create_stream(self, stream: Stream) -> Stream:
        """
        Persist a new stream.

        Args:
            stream: Stream to create (id must be unique)

        Returns:
            The stored stream
        """
        pass

    @abstractmethod
    def get_stream(self, stream_id: str) -> Optional[Stream]:
        """
        Get a stream by ID.

        Returns:
            Stream if found, None otherwise
        """
        pass

    @abstractmethod
    def update_stream(
        self,
        stream_id: str,
        changes: Dict[str, Any],
        expect_job_id: Optional[str] = None,
    ) -> Optional[Stream]:
        """
        Apply field changes to a stream.

        Args:
            stream_id: ID of the stream
            changes: Mapping of STREAM_MUTABLE_FIELDS to new values
            expect_job_id: When given, only apply the changes while the
                stream is analyzing and current_job_id equals this value

        Returns:
            Updated stream, or None if the stream is missing or the
            expectation did not hold
        """
        pass

    @abstractmethod
    def delete_stream(self, stream_id: str) -> bool:
        """
        Delete a stream together with its hands and jobs, atomically.

        Returns:
            True if deleted, False if not found
        """
        pass

    @abstractmethod
    def list_streams_by_status(self, status: PipelineStatus) -> List[Stream]:
        """
        List streams in one pipeline status, oldest first.

        Args:
            status: Pipeline status to filter on
        """
        pass

    @abstractmethod
    def count_streams_by_status(self) -> Dict[str, int]:
        """
        Count streams per pipeline status (for monitoring).

        Returns:
            Mapping of status value to count
        """
        pass

    # Jobs

    @abstractmethod
    def record_dispatch(self, job: AnalysisJob, new_stream: Optional[Stream] = None) -> Stream:
        """
        Atomically persist a new job and move its stream to analyzing.

        Sets pipeline_status=analyzing, pipeline_progress=0, clears
        pipeline_error, points current_job_id at the job and increments
        analysis_attempts.

        Args:
            job: Newly accepted job (status pending)
            new_stream: Stream not stored yet; inserted in the same
                transaction as the job

        Returns:
            Updated stream

        Raises:
            NotFoundError: if the stream does not exist
            ConflictError: if the stream already has an active job, or
                new_stream's id is taken
        """
        pass

    @abstractmethod
    def get_job(self, job_id: str) -> Optional[AnalysisJob]:
        """
        Get a job by ID.

        Returns:
            AnalysisJob if found, None otherwise
        """
        pass

    @abstractmethod
    def get_active_job(self, stream_id: str) -> Optional[AnalysisJob]:
        """
        Get the non-terminal job of a stream, if any.

        Returns:
            AnalysisJob in pending/executing status, None otherwise
        """
        pass

    @abstractmethod
    def list_active_jobs(self) -> List[AnalysisJob]:
        """
        List every pending/executing job across all streams.

        Used on startup to resume status polling after a restart.
        """
        pass

    @abstractmethod
    def list_jobs(self, stream_id: str) -> List[AnalysisJob]:
        """
        List all jobs of a stream, newest first.

        Returns:
            List of jobs, including superseded ones
        """
        pass

    @abstractmethod
    def update_job(
        self,
        job_id: str,
        status: JobStatus,
        progress: int,
        error_message: Optional[str] = None,
        completed_at=None,
        stream_changes: Optional[Dict[str, Any]] = None,
    ) -> Optional[AnalysisJob]:
        """
        Update a non-terminal job, optionally together with its stream.

        The job is only updated while it is still pending/executing.
        stream_changes are applied in the same transaction, and only while
        the stream is analyzing this job.

        Returns:
            Updated job, or None if the job is missing or already terminal
        """
        pass

    # Hands

    @abstractmethod
    def add_hands(self, stream_id: str, hands: List[Hand]) -> List[Hand]:
        """
        Bulk insert hands produced by the Analysis Service.

        Returns:
            The stored hands
        """
        pass

    @abstractmethod
    def list_hands(self, stream_id: str) -> List[Hand]:
        """
        List all hands of a stream (unordered).

        Returns:
            List of hands
        """
        pass

    @abstractmethod
    def count_hands(self, stream_id: str) -> int:
        """Count hand rows of a stream"""
        pass

    @abstractmethod
    def apply_reconciliation(
        self,
        stream_id: str,
        renumber: Dict[str, int],
        remove_ids: List[str],
        hand_count: int,
    ) -> None:
        """
        Atomically apply a reconciliation plan.

        Args:
            stream_id: ID of the stream
            renumber: hand id -> new number, only for hands whose number changed
            remove_ids: duplicate hand ids to delete (child data included)
            hand_count: surviving hand count stored on the stream
        """
        pass

    @abstractmethod
    def reset_stream(self, stream_id: str, delete_hands: bool = True) -> int:
        """
        Atomically move a stream back to pending.

        Clears progress, pipeline_error and current_job_id; deletes the
        stream's hands when requested and zeroes hand_count.

        Returns:
            Number of deleted hands
        """
        pass

    def get_stats(self) -> Dict[str, Any]:
        """Get storage statistics for monitoring"""
        return {"streams": self.count_streams_by_status()}
