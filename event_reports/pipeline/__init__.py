"""
Pipeline orchestration: per-event step engine and batch runner
"""

from .batch import BatchRunner
from .context import PipelineContext
from .engine import PipelineEngine
from .status import get_latest_status
from .steps import PipelineDeps, Step, default_steps

__all__ = [
    "BatchRunner",
    "PipelineContext",
    "PipelineDeps",
    "PipelineEngine",
    "Step",
    "default_steps",
    "get_latest_status",
]
