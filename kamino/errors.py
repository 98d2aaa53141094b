"""Error types raised by the provisioning core.

Every error carries an ErrorCategory so the HTTP layer (or any other
caller) can translate it into a response without string matching.
"""
from __future__ import annotations

from enum import Enum


class ErrorCategory(str, Enum):
    """Kinds of failure the core distinguishes."""
    VALIDATION = "validation"
    ADMISSION = "admission"
    AUTHORIZATION = "authorization"
    NOT_FOUND = "not_found"
    PLATFORM = "platform"
    TIMEOUT = "timeout"
    EXHAUSTED = "exhausted"


class KaminoError(Exception):
    """Base exception for provisioning errors."""

    category: ErrorCategory = ErrorCategory.PLATFORM

    def __init__(self, message: str, category: ErrorCategory | None = None):
        super().__init__(message)
        self.message = message
        if category is not None:
            self.category = category

    def to_dict(self) -> dict:
        return {"error": self.message, "category": self.category.value}


class PodValidationError(KaminoError):
    """Request rejected before any resource was touched."""
    category = ErrorCategory.VALIDATION


class PodLimitExceededError(KaminoError):
    """User already owns the maximum number of pods."""
    category = ErrorCategory.ADMISSION

    def __init__(self, username: str, limit: int):
        super().__init__(f"Max pod limit reached for {username} ({limit})")
        self.username = username
        self.limit = limit


class PodPermissionError(KaminoError):
    """Caller does not own the pod it is acting on."""
    category = ErrorCategory.AUTHORIZATION


class ObjectNotFoundError(KaminoError):
    """A platform object (or catalog entry) lookup found nothing."""
    category = ErrorCategory.NOT_FOUND

    def __init__(self, kind: str, name: str):
        super().__init__(f"{kind} '{name}' not found")
        self.kind = kind
        self.name = name


class PlatformTaskError(KaminoError):
    """A platform call or the task it started failed."""
    category = ErrorCategory.PLATFORM


class GuestAuthenticationError(PlatformTaskError):
    """Guest operations could not authenticate (tools not ready yet)."""


class GuestTimeoutError(KaminoError):
    """Guest never became ready for a program within the time budget."""
    category = ErrorCategory.TIMEOUT


class ExhaustedRangeError(KaminoError):
    """No free port group number left in the requested range."""
    category = ErrorCategory.EXHAUSTED

    def __init__(self, start: int, end: int):
        super().__init__(f"No free port group in range [{start}, {end})")
        self.start = start
        self.end = end


class BulkOperationError(KaminoError):
    """Some items of a best-effort batch operation failed.

    ``failed`` lists the identifiers (pod or VM names) that failed; the
    remaining items were processed.
    """
    category = ErrorCategory.PLATFORM

    def __init__(self, message: str, failed: list[str]):
        super().__init__(message)
        self.failed = failed

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["failed"] = self.failed
        return data
