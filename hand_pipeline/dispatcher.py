"""
Job dispatch.

Turns a video locator plus a plan input into exactly one accepted remote
analysis job. The remote call is made while holding the per-stream lock and
local state is only written after the Analysis Service accepted the work,
so a failed call leaves the stream untouched and a stream created for the
dispatch is never stored without its job.
"""

import logging
import uuid
from typing import Optional, Tuple

from .adapters.base import StateStore
from .analysis_client import AnalysisServiceClient, client_from_config
from .config import PipelineConfig
from .errors import ConflictError, NotFoundError, ValidationError
from .models import AnalysisJob, DispatchResult, PipelineStatus, Stream
from .pipeline_state import Actor, check_transition
from .segments import PlanInput, plan
from .util import derive_stream_name, is_youtube_url, normalize_video_locator

logger = logging.getLogger("hand_pipeline")


class JobDispatcher:
    """Creates remote analysis jobs and records them against their stream"""

    def __init__(self, store: StateStore, config: PipelineConfig,
                 client: Optional[AnalysisServiceClient] = None):
        self.store = store
        self.config = config
        self.client = client

    def _get_client(self) -> AnalysisServiceClient:
        url = self.config.require_analysis_service_url()
        if self.client is None:
            self.client = client_from_config(self.config)
            logger.info(f"Analysis Service client configured for {url}")
        return self.client

    def resolve_stream(self, stream_id: Optional[str], video_locator: Optional[str] = None,
                       name: Optional[str] = None) -> Tuple[Stream, bool]:
        """
        Resolve the stream a dispatch targets, building a new one when no id
        is given. A new stream is not stored here.

        Args:
            stream_id: Existing stream id, or None to create a new stream
            video_locator: Canonical locator (required when creating)
            name: Optional display name for a new stream

        Returns:
            (stream, is_new)

        Raises:
            NotFoundError: if stream_id is given but unknown
            ValidationError: if a new stream has no locator, or the locator
                does not match the one stored on an existing stream
        """
        if stream_id is not None:
            stream = self.store.get_stream(stream_id)
            if not stream:
                raise NotFoundError(f"Stream not found: {stream_id}")
            if video_locator and video_locator != stream.video_locator:
                raise ValidationError(
                    f"Stream {stream_id} is bound to {stream.video_locator}, not {video_locator}"
                )
            return stream, False

        if not video_locator:
            raise ValidationError("Video locator is required to create a stream")

        stream = Stream(
            id=str(uuid.uuid4()),
            name=name or derive_stream_name(video_locator),
            video_locator=video_locator,
            platform="youtube" if is_youtube_url(video_locator) else None
        )
        return stream, True

    def ensure_stream(self, stream_id: Optional[str], video_locator: Optional[str] = None,
                      name: Optional[str] = None) -> Tuple[Stream, bool]:
        """Resolve a stream like resolve_stream, storing it when it is new"""
        stream, created = self.resolve_stream(stream_id, video_locator, name)
        if created:
            stream = self.store.create_stream(stream)
            logger.info(f"Created stream {stream.id} ('{stream.name}')")
        return stream, created

    def dispatch(self, stream_id: Optional[str], video_locator: Optional[str], plan_input: PlanInput,
                 platform_hint: Optional[str] = None, stream_name: Optional[str] = None) -> DispatchResult:
        """
        Plan segments and start one remote analysis job for a stream.

        Args:
            stream_id: Existing stream, or None to create one from the locator
            video_locator: Source video; may be None when retrying an existing stream
            plan_input: Total duration or explicit ranges
            platform_hint: Optional source platform forwarded to the service
            stream_name: Display name used when a stream is created

        Returns:
            DispatchResult with the new job id and planned segments

        Raises:
            ValidationError, ConfigurationError, NotFoundError, ConflictError,
            InvalidTransitionError, RemoteServiceError
        """
        segments = plan(plan_input, self.config.SEGMENT_DURATION_CAP_SEC)
        locator = normalize_video_locator(video_locator) if video_locator else None

        # Fails before anything is written, including stream creation
        client = self._get_client()

        stream, created = self.resolve_stream(stream_id, locator, stream_name)
        locator = locator or stream.video_locator
        if platform_hint is None:
            platform_hint = stream.platform or ("youtube" if is_youtube_url(locator) else None)

        with self.store.stream_lock(stream.id):
            current = stream if created else self.store.get_stream(stream.id)
            if not current:
                raise NotFoundError(f"Stream not found: {stream.id}")

            active = None if created else self.store.get_active_job(stream.id)
            if active:
                raise ConflictError(
                    f"Stream {stream.id} is already analyzing (job {active.id})",
                    stream_id=stream.id, job_id=active.id
                )

            check_transition(current.pipeline_status, PipelineStatus.ANALYZING, Actor.DISPATCHER)

            logger.info(f"Submitting stream {stream.id}: {len(segments)} segments, platform={platform_hint}")
            job_id = client.submit(stream.id, locator, segments, platform_hint)

            job = AnalysisJob(
                id=job_id,
                stream_id=stream.id,
                segments=segments,
                platform=platform_hint
            )
            # A new stream is stored only together with its accepted job
            updated = self.store.record_dispatch(job, new_stream=stream if created else None)

        if created:
            logger.info(f"Created stream {stream.id} ('{stream.name}')")
        logger.info(
            f"DISPATCHED: job {job_id} for stream {stream.id} "
            f"(attempt {updated.analysis_attempts}, {len(segments)} segments)"
        )
        return DispatchResult(job_id=job_id, stream_id=stream.id, segments=segments, created_stream=created)
