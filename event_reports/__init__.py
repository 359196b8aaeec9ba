"""
Event Reports - structured event reports from volatile market and search data
"""

__version__ = "1.0.0"
__author__ = "Event Reports Team"

__all__ = [
    "AppError",
    "BatchRunner",
    "PipelineEngine",
    "Settings",
    "__version__",
    "__author__",
]

def __getattr__(name: str):
    """Lazy import to avoid import-time side effects."""
    if name == "AppError":
        from .exceptions import AppError
        return AppError
    elif name == "BatchRunner":
        from .pipeline.batch import BatchRunner
        return BatchRunner
    elif name == "PipelineEngine":
        from .pipeline.engine import PipelineEngine
        return PipelineEngine
    elif name == "Settings":
        from .config import Settings
        return Settings
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
