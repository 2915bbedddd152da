"""Error classification and retry handling."""

from .classifier import classify_exception, policy_for, severity_for
from .retry import RetryExecutor
from .types import (
    BatchCancelledError,
    CorruptedImageError,
    ErrorClassification,
    ErrorPolicy,
    ErrorRecord,
    ErrorSeverity,
    Failure,
    MissingAfterError,
    MissingBaselineError,
    NavigationError,
    NetworkError,
    Outcome,
    RenderTimeoutError,
    ResourceExhaustedError,
    SizeMismatchError,
    Success,
    VRTError,
)

__all__ = [
    "RetryExecutor",
    "classify_exception",
    "policy_for",
    "severity_for",
    "ErrorClassification",
    "ErrorPolicy",
    "ErrorSeverity",
    "ErrorRecord",
    "Success",
    "Failure",
    "Outcome",
    "VRTError",
    "RenderTimeoutError",
    "NetworkError",
    "NavigationError",
    "ResourceExhaustedError",
    "MissingBaselineError",
    "MissingAfterError",
    "SizeMismatchError",
    "CorruptedImageError",
    "BatchCancelledError",
]
