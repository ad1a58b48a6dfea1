"""
In-memory state store.

Keeps streams, jobs and hands in dictionaries guarded by a lock. Used for
local development (STORAGE_TYPE=memory) and by the test-suite; state does
not survive a restart.
"""

import copy
import logging
import threading
from contextlib import contextmanager
from typing import Optional, Dict, Any, List

from .base import StateStore, STREAM_MUTABLE_FIELDS, ACTIVE_JOB_STATUSES
from ..errors import ConflictError, NotFoundError
from ..models import Stream, AnalysisJob, Hand, JobStatus, PipelineStatus, utcnow

logger = logging.getLogger("hand_pipeline")


class MemoryStateStore(StateStore):
    """In-memory implementation of the state store"""

    def __init__(self):
        self._streams: Dict[str, Stream] = {}
        self._jobs: Dict[str, AnalysisJob] = {}
        self._hands: Dict[str, Hand] = {}
        self._data_lock = threading.RLock()
        # stream id -> [lock, holders and waiters]
        self._stream_locks: Dict[str, list] = {}
        self._stream_locks_guard = threading.Lock()

    def connect(self):
        logger.info("In-memory state store initialized")

    @contextmanager
    def stream_lock(self, stream_id: str):
        with self._stream_locks_guard:
            entry = self._stream_locks.setdefault(stream_id, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._stream_locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._stream_locks[stream_id]

    def create_stream(self, stream: Stream) -> Stream:
        with self._data_lock:
            if stream.id in self._streams:
                raise ConflictError(f"Stream already exists: {stream.id}", stream_id=stream.id)
            self._streams[stream.id] = copy.deepcopy(stream)
            return copy.deepcopy(stream)

    def get_stream(self, stream_id: str) -> Optional[Stream]:
        with self._data_lock:
            stream = self._streams.get(stream_id)
            return copy.deepcopy(stream) if stream else None

    def update_stream(self, stream_id: str, changes: Dict[str, Any],
                      expect_job_id: Optional[str] = None) -> Optional[Stream]:
        unknown = set(changes) - STREAM_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update stream fields: {sorted(unknown)}")

        with self._data_lock:
            stream = self._streams.get(stream_id)
            if not stream:
                return None
            if expect_job_id is not None and not self._is_analyzing_job(stream, expect_job_id):
                return None
            self._apply_stream_changes(stream, changes)
            return copy.deepcopy(stream)

    def delete_stream(self, stream_id: str) -> bool:
        with self._data_lock:
            if stream_id not in self._streams:
                return False
            self._delete_hands_of(stream_id)
            for job_id in [j.id for j in self._jobs.values() if j.stream_id == stream_id]:
                del self._jobs[job_id]
            del self._streams[stream_id]
            return True

    def list_streams_by_status(self, status: PipelineStatus) -> List[Stream]:
        with self._data_lock:
            streams = [s for s in self._streams.values() if s.pipeline_status == status]
            streams.sort(key=lambda s: s.created_at)
            return copy.deepcopy(streams)

    def count_streams_by_status(self) -> Dict[str, int]:
        with self._data_lock:
            counts = {status.value: 0 for status in PipelineStatus}
            for stream in self._streams.values():
                counts[stream.pipeline_status.value] += 1
            return counts

    def record_dispatch(self, job: AnalysisJob, new_stream: Optional[Stream] = None) -> Stream:
        with self._data_lock:
            if new_stream is not None:
                if new_stream.id in self._streams:
                    raise ConflictError(f"Stream already exists: {new_stream.id}", stream_id=new_stream.id)
                self._streams[new_stream.id] = copy.deepcopy(new_stream)

            stream = self._streams.get(job.stream_id)
            if not stream:
                raise NotFoundError(f"Stream not found: {job.stream_id}")

            active = self._find_active_job(job.stream_id)
            if active:
                raise ConflictError(
                    f"Stream {job.stream_id} is already analyzing (job {active.id})",
                    stream_id=job.stream_id, job_id=active.id
                )

            self._jobs[job.id] = copy.deepcopy(job)
            self._apply_stream_changes(stream, {
                "pipeline_status": PipelineStatus.ANALYZING,
                "pipeline_progress": 0,
                "pipeline_error": None,
                "current_job_id": job.id,
                "analysis_attempts": stream.analysis_attempts + 1,
            })
            return copy.deepcopy(stream)

    def get_job(self, job_id: str) -> Optional[AnalysisJob]:
        with self._data_lock:
            job = self._jobs.get(job_id)
            return copy.deepcopy(job) if job else None

    def get_active_job(self, stream_id: str) -> Optional[AnalysisJob]:
        with self._data_lock:
            job = self._find_active_job(stream_id)
            return copy.deepcopy(job) if job else None

    def list_active_jobs(self) -> List[AnalysisJob]:
        with self._data_lock:
            return [copy.deepcopy(j) for j in self._jobs.values() if j.status in ACTIVE_JOB_STATUSES]

    def list_jobs(self, stream_id: str) -> List[AnalysisJob]:
        with self._data_lock:
            jobs = [j for j in self._jobs.values() if j.stream_id == stream_id]
            jobs.sort(key=lambda j: j.created_at, reverse=True)
            return copy.deepcopy(jobs)

    def update_job(self, job_id: str, status: JobStatus, progress: int,
                   error_message: Optional[str] = None, completed_at=None,
                   stream_changes: Optional[Dict[str, Any]] = None) -> Optional[AnalysisJob]:
        if stream_changes:
            unknown = set(stream_changes) - STREAM_MUTABLE_FIELDS
            if unknown:
                raise ValueError(f"Cannot update stream fields: {sorted(unknown)}")

        with self._data_lock:
            job = self._jobs.get(job_id)
            if not job or job.is_terminal:
                return None

            job.status = status
            job.progress = progress
            if error_message is not None:
                job.error_message = error_message
            if completed_at is not None:
                job.completed_at = completed_at

            stream = self._streams.get(job.stream_id)
            if stream_changes and stream and self._is_analyzing_job(stream, job_id):
                self._apply_stream_changes(stream, stream_changes)

            return copy.deepcopy(job)

    def add_hands(self, stream_id: str, hands: List[Hand]) -> List[Hand]:
        with self._data_lock:
            if stream_id not in self._streams:
                raise NotFoundError(f"Stream not found: {stream_id}")
            stored = []
            for hand in hands:
                hand = copy.deepcopy(hand)
                hand.stream_id = stream_id
                self._hands[hand.id] = hand
                stored.append(copy.deepcopy(hand))
            return stored

    def list_hands(self, stream_id: str) -> List[Hand]:
        with self._data_lock:
            return [copy.deepcopy(h) for h in self._hands.values() if h.stream_id == stream_id]

    def count_hands(self, stream_id: str) -> int:
        with self._data_lock:
            return sum(1 for h in self._hands.values() if h.stream_id == stream_id)

    def apply_reconciliation(self, stream_id: str, renumber: Dict[str, int],
                             remove_ids: List[str], hand_count: int) -> None:
        with self._data_lock:
            stream = self._streams.get(stream_id)
            if not stream:
                raise NotFoundError(f"Stream not found: {stream_id}")

            # Validate the whole plan before touching anything
            for hand_id in list(renumber) + list(remove_ids):
                hand = self._hands.get(hand_id)
                if not hand or hand.stream_id != stream_id:
                    raise NotFoundError(f"Hand {hand_id} not found for stream {stream_id}")

            for hand_id, number in renumber.items():
                self._hands[hand_id].number = number
            for hand_id in remove_ids:
                del self._hands[hand_id]
            self._apply_stream_changes(stream, {"hand_count": hand_count})

    def reset_stream(self, stream_id: str, delete_hands: bool = True) -> int:
        with self._data_lock:
            stream = self._streams.get(stream_id)
            if not stream:
                raise NotFoundError(f"Stream not found: {stream_id}")

            deleted = self._delete_hands_of(stream_id) if delete_hands else 0
            changes = {
                "pipeline_status": PipelineStatus.PENDING,
                "pipeline_progress": 0,
                "pipeline_error": None,
                "current_job_id": None,
            }
            if delete_hands:
                changes["hand_count"] = 0
            self._apply_stream_changes(stream, changes)
            return deleted

    def get_stats(self) -> Dict[str, Any]:
        with self._data_lock:
            job_counts = {status.value: 0 for status in JobStatus}
            for job in self._jobs.values():
                job_counts[job.status.value] += 1
            return {
                "streams": self.count_streams_by_status(),
                "jobs": job_counts,
                "hands": len(self._hands),
            }

    def _find_active_job(self, stream_id: str) -> Optional[AnalysisJob]:
        for job in self._jobs.values():
            if job.stream_id == stream_id and job.status in ACTIVE_JOB_STATUSES:
                return job
        return None

    def _delete_hands_of(self, stream_id: str) -> int:
        hand_ids = [h.id for h in self._hands.values() if h.stream_id == stream_id]
        for hand_id in hand_ids:
            del self._hands[hand_id]
        return len(hand_ids)

    @staticmethod
    def _is_analyzing_job(stream: Stream, job_id: str) -> bool:
        return stream.pipeline_status == PipelineStatus.ANALYZING and stream.current_job_id == job_id

    @staticmethod
    def _apply_stream_changes(stream: Stream, changes: Dict[str, Any]) -> None:
        now = utcnow()
        if "pipeline_status" in changes:
            changes = dict(changes, pipeline_status=PipelineStatus(changes["pipeline_status"]))
            if changes["pipeline_status"] != stream.pipeline_status:
                stream.pipeline_updated_at = now
        for key, value in changes.items():
            setattr(stream, key, value)
        stream.updated_at = now
