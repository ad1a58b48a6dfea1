"""Tests for the Analysis Service client, against httpx.MockTransport."""

import json
from datetime import datetime, timezone

import httpx
import pytest

from hand_pipeline.analysis_client import AnalysisServiceClient, client_from_config, parse_status_payload
from hand_pipeline.errors import ConfigurationError, RemoteServiceError
from hand_pipeline.models import JobStatus, Segment


def make_client(handler):
    return AnalysisServiceClient("http://analysis.test/", timeout=2.0, transport=httpx.MockTransport(handler))


class TestSubmit:
    def test_posts_plan_and_returns_job_id(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(202, json={"jobId": "job-42"})

        job_id = make_client(handler).submit(
            "stream-1", "gs://vods/a.mp4", [Segment(0, 1800), Segment(1800, 2400)], platform_hint="youtube"
        )

        assert job_id == "job-42"
        assert seen["url"] == "http://analysis.test/analyze"
        assert seen["body"] == {
            "streamId": "stream-1",
            "videoLocator": "gs://vods/a.mp4",
            "segments": [{"start": 0, "end": 1800}, {"start": 1800, "end": 2400}],
            "platformHint": "youtube",
        }

    def test_missing_job_id(self):
        client = make_client(lambda request: httpx.Response(200, json={"ok": True}))
        with pytest.raises(RemoteServiceError, match="no jobId"):
            client.submit("stream-1", "gs://vods/a.mp4", [Segment(0, 60)])

    def test_error_body_is_surfaced(self):
        client = make_client(lambda request: httpx.Response(500, json={"error": "GPU quota exhausted"}))
        with pytest.raises(RemoteServiceError, match="GPU quota exhausted") as exc_info:
            client.submit("stream-1", "gs://vods/a.mp4", [Segment(0, 60)])
        assert exc_info.value.status_code == 500

    def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("read timed out", request=request)

        with pytest.raises(RemoteServiceError, match="timed out"):
            make_client(handler).submit("stream-1", "gs://vods/a.mp4", [Segment(0, 60)])

    def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(RemoteServiceError, match="unreachable"):
            make_client(handler).submit("stream-1", "gs://vods/a.mp4", [Segment(0, 60)])


class TestGetStatus:
    def test_parses_upper_case_status(self):
        def handler(request):
            assert request.url.path == "/status/job-42"
            return httpx.Response(200, json={"id": "job-42", "status": "EXECUTING", "progress": 42})

        status = make_client(handler).get_status("job-42")

        assert status.job_id == "job-42"
        assert status.status == JobStatus.EXECUTING
        assert status.progress == 42

    def test_not_found(self):
        client = make_client(lambda request: httpx.Response(404, json={"error": "Job not found"}))
        with pytest.raises(RemoteServiceError) as exc_info:
            client.get_status("job-42")
        assert exc_info.value.status_code == 404


class TestParseStatusPayload:
    def test_failure_payload(self):
        status = parse_status_payload({
            "jobId": "job-1",
            "status": "FAILURE",
            "errorMessage": "decode error",
            "completedAt": "2024-06-01T12:00:00Z",
        })
        assert status.status == JobStatus.FAILURE
        assert status.error_message == "decode error"
        assert status.completed_at == datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

    def test_unknown_status(self):
        with pytest.raises(RemoteServiceError, match="Unknown job status"):
            parse_status_payload({"jobId": "job-1", "status": "PAUSED"})

    def test_missing_job_id(self):
        with pytest.raises(RemoteServiceError):
            parse_status_payload({"status": "SUCCESS"})

    def test_progress_is_clamped(self):
        assert parse_status_payload({"jobId": "j", "status": "executing", "progress": "250"}).progress == 100


def test_client_from_config_requires_url(config):
    config.ANALYSIS_SERVICE_URL = None
    with pytest.raises(ConfigurationError):
        client_from_config(config)
