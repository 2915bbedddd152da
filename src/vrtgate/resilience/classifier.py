"""Exception classification by type and policy lookup."""

import asyncio

from .types import (
    ErrorClassification,
    ErrorPolicy,
    ErrorSeverity,
    VRTError,
)

POLICIES: dict[ErrorClassification, ErrorPolicy] = {
    ErrorClassification.TIMEOUT: ErrorPolicy.RETRY,
    ErrorClassification.NETWORK: ErrorPolicy.RETRY,
    ErrorClassification.UNKNOWN: ErrorPolicy.RETRY,
    ErrorClassification.NAVIGATION: ErrorPolicy.SKIP,
    ErrorClassification.MEMORY: ErrorPolicy.FAIL_BATCH,
    ErrorClassification.MISSING_BASELINE: ErrorPolicy.SURFACE,
    ErrorClassification.MISSING_AFTER: ErrorPolicy.SURFACE,
    ErrorClassification.SIZE_MISMATCH: ErrorPolicy.SURFACE,
    ErrorClassification.CORRUPTED_IMAGE: ErrorPolicy.SURFACE,
    ErrorClassification.MAX_RETRY_EXCEEDED: ErrorPolicy.SURFACE,
    ErrorClassification.CANCELLED: ErrorPolicy.SURFACE,
}


def classify_exception(error: BaseException) -> ErrorClassification:
    """Map an exception to the failure taxonomy.

    Typed ``VRTError`` subclasses carry their own classification. Library
    errors are expected to be translated at the boundary that raised them;
    the handful of builtins below are mapped directly.
    """
    if isinstance(error, VRTError):
        return error.classification
    if isinstance(error, MemoryError):
        return ErrorClassification.MEMORY
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return ErrorClassification.TIMEOUT
    # ConnectionError is an OSError subclass
    if isinstance(error, OSError):
        return ErrorClassification.NETWORK
    return ErrorClassification.UNKNOWN


def policy_for(classification: ErrorClassification) -> ErrorPolicy:
    return POLICIES.get(classification, ErrorPolicy.SURFACE)


def severity_for(classification: ErrorClassification) -> ErrorSeverity:
    if classification in (
        ErrorClassification.MAX_RETRY_EXCEEDED,
        ErrorClassification.MEMORY,
    ):
        return ErrorSeverity.HIGH
    if classification in (ErrorClassification.TIMEOUT, ErrorClassification.NETWORK):
        return ErrorSeverity.MEDIUM
    return ErrorSeverity.LOW
