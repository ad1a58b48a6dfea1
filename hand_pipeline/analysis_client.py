"""
HTTP client for the remote Analysis Service.

The service accepts analysis work (POST /analyze) and reports job status
(GET /status/{jobId}). Every transport failure, timeout or non-2xx reply
is raised as RemoteServiceError.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx

from .errors import RemoteServiceError
from .models import JobStatus, RemoteJobStatus, Segment
from .util import clamp_progress

logger = logging.getLogger("hand_pipeline")


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Ignoring unparseable completedAt value: {value!r}")
        return None


def parse_status_payload(payload: Dict[str, Any], job_id: Optional[str] = None) -> RemoteJobStatus:
    """
    Build a RemoteJobStatus from a status body (poll reply or callback).

    Accepts both camelCase and snake_case keys. Status strings are matched
    case-insensitively.

    Raises:
        RemoteServiceError: if the payload has no job id or an unknown status
    """
    if not isinstance(payload, dict):
        raise RemoteServiceError(f"Malformed status payload: {payload!r}")

    resolved_id = payload.get("jobId") or payload.get("job_id") or payload.get("id") or job_id
    if not resolved_id:
        raise RemoteServiceError("Status payload is missing the job id")

    try:
        status = JobStatus.parse(payload.get("status"))
    except ValueError as e:
        raise RemoteServiceError(str(e))

    error_message = payload.get("errorMessage") or payload.get("error_message") or payload.get("error")

    return RemoteJobStatus(
        job_id=str(resolved_id),
        status=status,
        progress=clamp_progress(payload.get("progress", 0)),
        error_message=str(error_message) if error_message else None,
        completed_at=_parse_timestamp(payload.get("completedAt") or payload.get("completed_at"))
    )


class AnalysisServiceClient:
    """Synchronous client for the Analysis Service"""

    def __init__(self, base_url: str, timeout: float = 10.0, transport: Optional[httpx.BaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(base_url=self.base_url, timeout=self.timeout, transport=self.transport)

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            with self._client() as client:
                response = client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise RemoteServiceError(f"Analysis Service timed out after {self.timeout}s: {e}")
        except httpx.HTTPError as e:
            raise RemoteServiceError(f"Analysis Service unreachable: {e}")

        if not 200 <= response.status_code < 300:
            detail = self._error_detail(response)
            raise RemoteServiceError(
                f"Analysis Service returned {response.status_code} for {method} {path}: {detail}",
                status_code=response.status_code
            )

        try:
            body = response.json()
        except ValueError:
            raise RemoteServiceError(
                f"Analysis Service returned a non-JSON body for {method} {path}",
                status_code=response.status_code
            )
        if not isinstance(body, dict):
            raise RemoteServiceError(
                f"Analysis Service returned an unexpected body for {method} {path}",
                status_code=response.status_code
            )
        return body

    @staticmethod
    def _error_detail(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text[:200] if response.text else "no body"
        if isinstance(body, dict) and body.get("error"):
            return str(body["error"])
        return str(body)[:200]

    def submit(self, stream_id: str, video_locator: str, segments: List[Segment],
               platform_hint: Optional[str] = None) -> str:
        """
        Submit analysis work for a stream.

        Args:
            stream_id: Stream the work belongs to
            video_locator: Canonical locator of the source video
            segments: Planned analysis segments
            platform_hint: Optional source platform (e.g. "youtube")

        Returns:
            Job id issued by the Analysis Service
        """
        payload: Dict[str, Any] = {
            "streamId": stream_id,
            "videoLocator": video_locator,
            "segments": [s.to_dict() for s in segments],
        }
        if platform_hint:
            payload["platformHint"] = platform_hint

        body = self._request("POST", "/analyze", json=payload)
        job_id = body.get("jobId")
        if not job_id:
            raise RemoteServiceError("Analysis Service accepted the request but returned no jobId")

        logger.debug(f"Analysis Service accepted {len(segments)} segments for stream {stream_id} as job {job_id}")
        return str(job_id)

    def get_status(self, job_id: str) -> RemoteJobStatus:
        """Fetch the current status of a job"""
        body = self._request("GET", f"/status/{job_id}")
        return parse_status_payload(body, job_id=job_id)


def client_from_config(config) -> AnalysisServiceClient:
    """Build a client from PipelineConfig; raises ConfigurationError when the URL is unset"""
    return AnalysisServiceClient(
        base_url=config.require_analysis_service_url(),
        timeout=config.REQUEST_TIMEOUT_SEC
    )
