"""Type definitions for error classification and retry handling."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Generic, Optional, TypeVar, Union

T = TypeVar("T")


class ErrorClassification(str, Enum):
    """Failure taxonomy shared by every pipeline stage."""

    TIMEOUT = "TIMEOUT"
    NETWORK = "NETWORK"
    NAVIGATION = "NAVIGATION"
    MEMORY = "MEMORY"
    MISSING_BASELINE = "MISSING_BASELINE"
    MISSING_AFTER = "MISSING_AFTER"
    SIZE_MISMATCH = "SIZE_MISMATCH"
    CORRUPTED_IMAGE = "CORRUPTED_IMAGE"
    UNKNOWN = "UNKNOWN"
    MAX_RETRY_EXCEEDED = "MAX_RETRY_EXCEEDED"
    CANCELLED = "CANCELLED"


class ErrorPolicy(str, Enum):
    """What the caller does with a failure of a given classification."""

    RETRY = "retry"
    SKIP = "skip"
    FAIL_BATCH = "fail_batch"
    SURFACE = "surface"


class ErrorSeverity(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class VRTError(Exception):
    """Base exception for classified pipeline failures."""

    classification = ErrorClassification.UNKNOWN

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context


class RenderTimeoutError(VRTError):
    classification = ErrorClassification.TIMEOUT


class NetworkError(VRTError):
    classification = ErrorClassification.NETWORK


class NavigationError(VRTError):
    classification = ErrorClassification.NAVIGATION


class ResourceExhaustedError(VRTError):
    classification = ErrorClassification.MEMORY


class MissingBaselineError(VRTError):
    classification = ErrorClassification.MISSING_BASELINE


class MissingAfterError(VRTError):
    classification = ErrorClassification.MISSING_AFTER


class SizeMismatchError(VRTError):
    classification = ErrorClassification.SIZE_MISMATCH


class CorruptedImageError(VRTError):
    classification = ErrorClassification.CORRUPTED_IMAGE


class BatchCancelledError(VRTError):
    classification = ErrorClassification.CANCELLED


@dataclass
class ErrorRecord:
    """One failed attempt of a wrapped operation."""

    operation: str
    classification: ErrorClassification
    attempt: int
    message: str
    context: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = datetime.utcnow()

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation": self.operation,
            "classification": self.classification.value,
            "attempt": self.attempt,
            "message": self.message,
            "context": dict(self.context),
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class Success(Generic[T]):
    value: T
    attempts: int = 1
    errors: tuple[ErrorRecord, ...] = ()

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Failure:
    """Terminal outcome of an operation that did not succeed."""

    classification: ErrorClassification
    message: str
    attempts: int
    cause: Optional[BaseException] = None
    cause_classification: Optional[ErrorClassification] = None
    errors: tuple[ErrorRecord, ...] = ()

    @property
    def ok(self) -> bool:
        return False


Outcome = Union[Success[T], Failure]
