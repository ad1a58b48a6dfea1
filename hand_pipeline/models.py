"""
Domain models for the analysis pipeline.

Defines the core data structures shared by the planner, dispatcher,
tracker, reconciler and the state store adapters.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Dict, Any


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PipelineStatus(str, Enum):
    """Lifecycle state of a stream"""
    PENDING = "pending"
    ANALYZING = "analyzing"
    COMPLETED = "completed"
    PUBLISHED = "published"
    FAILED = "failed"


class JobStatus(str, Enum):
    """Status of a single analysis job, as reported by the Analysis Service"""
    PENDING = "pending"
    EXECUTING = "executing"
    SUCCESS = "success"
    FAILURE = "failure"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.SUCCESS, JobStatus.FAILURE)

    @classmethod
    def parse(cls, value: str) -> "JobStatus":
        """Parse a remote status string ('EXECUTING', 'success', ...)"""
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"Unknown job status: {value!r}")


@dataclass(frozen=True)
class Segment:
    """A bounded time range of a video, in seconds"""
    start: float
    end: float

    @property
    def duration(self) -> float:
        return self.end - self.start

    def to_dict(self) -> Dict[str, float]:
        return {"start": self.start, "end": self.end}


@dataclass
class Stream:
    """Per-video analysis record"""
    id: str
    name: str
    video_locator: str
    pipeline_status: PipelineStatus = PipelineStatus.PENDING
    pipeline_progress: int = 0
    pipeline_error: Optional[str] = None
    current_job_id: Optional[str] = None
    analysis_attempts: int = 0
    hand_count: int = 0
    platform: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    pipeline_updated_at: Optional[datetime] = None


@dataclass
class AnalysisJob:
    """One dispatch attempt against the Analysis Service"""
    id: str
    stream_id: str
    segments: List[Segment]
    status: JobStatus = JobStatus.PENDING
    progress: int = 0
    error_message: Optional[str] = None
    platform: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


@dataclass
class Hand:
    """One extracted poker hand, anchored to a range of the source video"""
    id: str
    stream_id: str
    number: int
    video_timestamp_start: float
    video_timestamp_end: float
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RemoteJobStatus:
    """Job status as reported by the Analysis Service (poll or callback)"""
    job_id: str
    status: JobStatus
    progress: int = 0
    error_message: Optional[str] = None
    completed_at: Optional[datetime] = None


@dataclass
class DispatchResult:
    """Outcome of a successful dispatch"""
    job_id: str
    stream_id: str
    segments: List[Segment]
    created_stream: bool = False


@dataclass
class ReconcileResult:
    """Outcome of a hand reconciliation pass"""
    kept_count: int
    removed_count: int
    renumbered_count: int = 0
