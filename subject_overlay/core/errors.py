"""
Error taxonomy for the segmentation backends.

Backends should raise BackendError with a structured code. Errors
from third-party code arrive as plain exceptions and are classified
from their message text instead.
"""

from __future__ import annotations

import re
from enum import Enum


class BackendErrorCode(Enum):
    INIT_FAILED = "init_failed"
    INFERENCE_FAILED = "inference_failed"
    TIMESTAMP_ANOMALY = "timestamp_anomaly"
    RESOURCE_EXHAUSTED = "resource_exhausted"


class BackendError(Exception):
    """Failure reported by a segmentation backend."""

    def __init__(self, message: str, code: BackendErrorCode = BackendErrorCode.INFERENCE_FAILED):
        super().__init__(message)
        self.code = code


class EngineFailedError(RuntimeError):
    """
    The heuristic fallback itself failed.

    The fallback has no external dependency, so this is an invariant
    violation and is never recovered from.
    """


# Whole words only: "zoom" must not read as "oom"
TIMESTAMP_PATTERN = re.compile(r"\b(timestamps?|monotonically|out of order)\b")
MEMORY_PATTERN = re.compile(
    r"\b(out of memory|oom|memory|alloc|allocat(e|ed|ion)|heap)\b"
)


def classify_error(error: BaseException) -> BackendErrorCode:
    """
    Map a backend exception to an error code.

    Structured BackendError codes win. Anything else is matched
    against whole-word patterns on the lowercased message, with
    MemoryError always counting as resource exhaustion.
    """
    if isinstance(error, BackendError):
        return error.code
    if isinstance(error, MemoryError):
        return BackendErrorCode.RESOURCE_EXHAUSTED

    message = str(error).lower()
    if TIMESTAMP_PATTERN.search(message):
        return BackendErrorCode.TIMESTAMP_ANOMALY
    if MEMORY_PATTERN.search(message):
        return BackendErrorCode.RESOURCE_EXHAUSTED
    return BackendErrorCode.INFERENCE_FAILED
