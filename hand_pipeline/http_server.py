import hmac
import logging
from threading import Thread
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .analysis_client import parse_status_payload
from .config import PipelineConfig
from .errors import (
    ConfigurationError,
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    PipelineError,
    ReconciliationError,
    RemoteServiceError,
    ValidationError,
)
from .models import Segment
from .orchestrator import PipelineOrchestrator
from .segments import PlanInput

logger = logging.getLogger("hand_pipeline")

# Checked in order; first isinstance match wins
ERROR_STATUS_CODES = [
    (ValidationError, 400),
    (NotFoundError, 404),
    (ConflictError, 409),
    (InvalidTransitionError, 409),
    (ConfigurationError, 503),
    (RemoteServiceError, 502),
    (ReconciliationError, 500),
]


def status_code_for(error: PipelineError) -> int:
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(error, error_type):
            return status_code
    return 500


class RangeModel(BaseModel):
    start: float
    end: float


def _plan_input(total_duration_seconds: Optional[float], ranges: Optional[List[RangeModel]]) -> PlanInput:
    # Both are passed on; the planner rejects a request carrying both
    plan_ranges = None
    if ranges is not None:
        plan_ranges = [Segment(start=r.start, end=r.end) for r in ranges]
    return PlanInput(total_duration_seconds=total_duration_seconds, ranges=plan_ranges)


class AnalyzeRequest(BaseModel):
    video_locator: Optional[str] = None
    stream_id: Optional[str] = None
    stream_name: Optional[str] = None
    platform_hint: Optional[str] = None
    total_duration_seconds: Optional[float] = None
    ranges: Optional[List[RangeModel]] = None

    def plan_input(self) -> PlanInput:
        return _plan_input(self.total_duration_seconds, self.ranges)


class RetryRequest(BaseModel):
    platform_hint: Optional[str] = None
    total_duration_seconds: Optional[float] = None
    ranges: Optional[List[RangeModel]] = None

    def plan_input(self) -> PlanInput:
        return _plan_input(self.total_duration_seconds, self.ranges)


class ResetRequest(BaseModel):
    delete_hands: bool = True


class PipelineHTTPServer:
    def __init__(self, orchestrator: PipelineOrchestrator, config: PipelineConfig):
        self.orchestrator = orchestrator
        self.config = config
        self.app = FastAPI(title="Hand Pipeline API")
        self.setup_error_handlers()
        self.setup_routes()
        self.server_thread = None
        self.running = False

    def setup_error_handlers(self):
        @self.app.exception_handler(PipelineError)
        async def pipeline_error_handler(request: Request, exc: PipelineError):
            status_code = status_code_for(exc)
            body: Dict[str, Any] = {"error": str(exc), "type": type(exc).__name__}
            if isinstance(exc, ConflictError) and exc.job_id:
                body["job_id"] = exc.job_id
            if status_code >= 500:
                logger.error(f"{request.method} {request.url.path} failed: {exc}")
            return JSONResponse(status_code=status_code, content=body)

    def _check_callback_secret(self, provided: Optional[str]) -> None:
        expected = self.config.CALLBACK_SECRET
        if not expected:
            return
        if not provided or not hmac.compare_digest(provided, expected):
            raise HTTPException(status_code=401, detail="Invalid callback secret")

    def setup_routes(self):
        """Setup API routes"""

        @self.app.get("/healthz")
        def health_check():
            """Health check endpoint"""
            try:
                self.orchestrator.store.count_streams_by_status()
                return {"ok": True, "status": "healthy"}
            except Exception as e:
                logger.error(f"Health check failed: {str(e)}")
                raise HTTPException(status_code=503, detail=f"State store unavailable: {str(e)}")

        @self.app.get("/stats")
        def get_stats():
            """Get pipeline statistics"""
            return jsonable_encoder(self.orchestrator.get_stats())

        @self.app.post("/analyze", status_code=202)
        def analyze(request: AnalyzeRequest):
            """Dispatch analysis for a new or existing stream"""
            result = self.orchestrator.analyze(
                request.video_locator,
                request.plan_input(),
                stream_id=request.stream_id,
                platform_hint=request.platform_hint,
                stream_name=request.stream_name
            )
            return jsonable_encoder(result)

        @self.app.post("/callbacks/status")
        def status_callback(payload: Dict[str, Any],
                            x_callback_secret: Optional[str] = Header(default=None)):
            """Receive job status from the Analysis Service"""
            self._check_callback_secret(x_callback_secret)
            try:
                remote = parse_status_payload(payload)
            except RemoteServiceError as e:
                raise ValidationError(str(e))
            job = self.orchestrator.handle_status(remote.job_id, remote)
            return {"job_id": job.id, "status": job.status.value, "progress": job.progress}

        @self.app.post("/jobs/{job_id}/refresh")
        def refresh_job(job_id: str):
            """Poll the Analysis Service once for a job"""
            return jsonable_encoder(self.orchestrator.refresh_job(job_id))

        @self.app.get("/streams/{stream_id}")
        def get_stream(stream_id: str):
            return jsonable_encoder(self.orchestrator.get_stream(stream_id))

        @self.app.get("/streams/{stream_id}/jobs")
        def list_jobs(stream_id: str):
            jobs = self.orchestrator.list_jobs(stream_id)
            return {"stream_id": stream_id, "jobs": jsonable_encoder(jobs)}

        @self.app.post("/streams/{stream_id}/retry", status_code=202)
        def retry_stream(stream_id: str, request: RetryRequest):
            result = self.orchestrator.retry(stream_id, request.plan_input(), platform_hint=request.platform_hint)
            return jsonable_encoder(result)

        @self.app.post("/streams/{stream_id}/reset")
        def reset_stream(stream_id: str, request: Optional[ResetRequest] = None):
            delete_hands = request.delete_hands if request else True
            return jsonable_encoder(self.orchestrator.reset(stream_id, delete_hands=delete_hands))

        @self.app.post("/streams/{stream_id}/publish")
        def publish_stream(stream_id: str):
            return jsonable_encoder(self.orchestrator.publish(stream_id))

        @self.app.post("/streams/{stream_id}/sync-hands")
        def sync_hands(stream_id: str):
            return {"stream_id": stream_id, "hand_count": self.orchestrator.sync_hand_count(stream_id)}

        @self.app.delete("/streams/{stream_id}")
        def delete_stream(stream_id: str):
            self.orchestrator.delete_stream(stream_id)
            return {"deleted": True, "stream_id": stream_id}

    def serve(self):
        """Run the HTTP server in the current thread (blocks)"""
        self.running = True
        logger.info(f"HTTP server listening on {self.config.HTTP_HOST}:{self.config.HTTP_PORT}")
        uvicorn.run(
            self.app,
            host=self.config.HTTP_HOST,
            port=self.config.HTTP_PORT,
            log_level="warning",  # Reduce uvicorn logging
            log_config=None,  # keep the handlers from setup_logging
            access_log=False
        )
        self.running = False

    def start(self):
        """Start the HTTP server in a background thread"""
        if self.running:
            return

        def run_server():
            try:
                self.serve()
            except Exception as e:
                logger.error(f"HTTP server error: {str(e)}")

        self.server_thread = Thread(target=run_server, daemon=True)
        self.server_thread.start()
        self.running = True

    def stop(self):
        """Stop the HTTP server"""
        self.running = False
        logger.info("HTTP server stopped")
