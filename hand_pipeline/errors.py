"""
Error taxonomy for the analysis pipeline.

Every failure that crosses a component boundary is one of these types so
callers (HTTP layer, poller, operators) can decide whether to retry,
surface, or ignore it without parsing messages.
"""

from typing import Optional


class PipelineError(Exception):
    """Base class for all pipeline errors"""


class ValidationError(PipelineError):
    """Malformed input (bad durations, ranges or video locators). Never retried."""


class ConfigurationError(PipelineError):
    """Required configuration is missing. Not retryable until fixed."""


class NotFoundError(PipelineError):
    """Referenced stream or job does not exist"""


class ConflictError(PipelineError):
    """An analysis job is already active for the stream"""

    def __init__(self, message: str, stream_id: Optional[str] = None, job_id: Optional[str] = None):
        super().__init__(message)
        self.stream_id = stream_id
        self.job_id = job_id


class InvalidTransitionError(PipelineError):
    """A pipeline status change that the state machine does not allow"""


class RemoteServiceError(PipelineError):
    """The Analysis Service was unreachable, timed out or returned an error"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ReconciliationError(PipelineError):
    """Hand reconciliation failed after a successful remote job"""
