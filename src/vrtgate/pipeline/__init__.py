"""Run orchestration for the visual regression gate."""

from .runner import VRTRunner, create_runner
from .types import PipelineError, RunMode, RunReport, RunRequest, summarize

__all__ = [
    "VRTRunner",
    "create_runner",
    "PipelineError",
    "RunMode",
    "RunReport",
    "RunRequest",
    "summarize",
]
