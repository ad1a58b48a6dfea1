"""
Orchestration layer for the poker-video analysis pipeline.

Plans analysis segments, dispatches and tracks remote analysis jobs, keeps
a durable per-stream pipeline state machine and reconciles extracted hands.
"""

from .config import PipelineConfig
from .orchestrator import PipelineOrchestrator
from .service import PipelineService

__all__ = [
    'PipelineConfig',
    'PipelineOrchestrator',
    'PipelineService'
]
