"""Shared fixtures: in-memory store, scripted Analysis Service, config."""

import itertools
import threading
import time

import pytest

from hand_pipeline.adapters.memory_adapter import MemoryStateStore
from hand_pipeline.config import PipelineConfig
from hand_pipeline.dispatcher import JobDispatcher
from hand_pipeline.models import Hand
from hand_pipeline.segments import PlanInput


class FakeAnalysisClient:
    """Scripted stand-in for AnalysisServiceClient"""

    def __init__(self, submit_delay: float = 0.0):
        self.submitted = []
        self.statuses = {}
        self.submit_error = None
        self.submit_delay = submit_delay
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def submit(self, stream_id, video_locator, segments, platform_hint=None):
        if self.submit_delay:
            time.sleep(self.submit_delay)
        if self.submit_error:
            raise self.submit_error
        with self._lock:
            job_id = f"job-{next(self._ids)}"
            self.submitted.append({
                "job_id": job_id,
                "stream_id": stream_id,
                "video_locator": video_locator,
                "segments": list(segments),
                "platform_hint": platform_hint,
            })
        return job_id

    def get_status(self, job_id):
        status = self.statuses[job_id]
        if isinstance(status, Exception):
            raise status
        return status


def make_hand(hand_id, start, end, number=0, stream_id="unused"):
    return Hand(
        id=hand_id,
        stream_id=stream_id,
        number=number,
        video_timestamp_start=start,
        video_timestamp_end=end,
    )


@pytest.fixture
def config():
    return PipelineConfig(
        ANALYSIS_SERVICE_URL="http://analysis.test",
        STORAGE_TYPE="memory",
        STORAGE_CONFIG={},
        ENABLE_POLLING=False,
        POLL_INTERVAL_MS=10,
        MAX_BACKOFF_MS=50,
    )


@pytest.fixture
def store():
    store = MemoryStateStore()
    store.connect()
    return store


@pytest.fixture
def client():
    return FakeAnalysisClient()


@pytest.fixture
def dispatcher(store, config, client):
    return JobDispatcher(store, config, client)


@pytest.fixture
def dispatched(dispatcher):
    """A freshly dispatched stream; returns the DispatchResult"""
    return dispatcher.dispatch(None, "gs://tournament-vods/day1/table3.mp4", PlanInput.for_duration(4000))
