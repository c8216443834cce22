"""
Typed failures raised by the stage executors.

The controller persists any ``StageFailure`` verbatim as the entry's
``last_error`` and stops. ``EntryNotFound`` and ``EntryBusyError`` are
raised before any stage runs and are never persisted.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    TRANSIENT = "transient"
    TIMEOUT = "timeout"
    CONTENT_POLICY = "content_policy"
    CONFIGURATION = "configuration"
    REJECTED = "rejected"


RETRYABLE_KINDS = frozenset({ErrorKind.TRANSIENT, ErrorKind.TIMEOUT})


class StageFailure(Exception):
    """Base class for every failure a stage executor can report."""

    kind: ErrorKind = ErrorKind.TRANSIENT

    def __init__(self, message: str, slot: int | None = None):
        super().__init__(message)
        self.message = message
        self.slot = slot  # 1-based image slot, when the failure is tied to one

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS


class TransientProviderError(StageFailure):
    """Network trouble, 5xx, rate limiting or a recoverable bad response."""

    kind = ErrorKind.TRANSIENT

    def __init__(self, message: str, slot: int | None = None, status_code: int | None = None):
        super().__init__(message, slot=slot)
        self.status_code = status_code


class ParseFailure(TransientProviderError):
    """The provider answered, but not in any shape we accept."""


class ProviderTimeout(StageFailure):
    kind = ErrorKind.TIMEOUT

    def __init__(self, message: str, slot: int | None = None, timeout_sec: float | None = None):
        super().__init__(message, slot=slot)
        self.timeout_sec = timeout_sec


class ContentPolicyRejection(StageFailure):
    """The provider refused the request; retrying the same input cannot help."""

    kind = ErrorKind.CONTENT_POLICY


class ConfigurationError(StageFailure):
    """Missing credentials or capability; fatal until an operator fixes config."""

    kind = ErrorKind.CONFIGURATION


class RejectedRequest(StageFailure):
    """A 4xx the provider will answer the same way every time (bad size, prompt too long)."""

    kind = ErrorKind.REJECTED

    def __init__(self, message: str, slot: int | None = None, status_code: int | None = None):
        super().__init__(message, slot=slot)
        self.status_code = status_code


class ImageStageFailure(StageFailure):
    """One image slot failed; slots already persisted stay valid."""

    def __init__(self, completed_slots: list[int], failed_slot: int, cause: StageFailure):
        preserved = ", ".join(str(s) for s in completed_slots) or "none"
        super().__init__(
            f"Image {failed_slot}/4 failed: {cause.message} (slots preserved: {preserved})",
            slot=failed_slot,
        )
        self.completed_slots = list(completed_slots)
        self.failed_slot = failed_slot
        self.cause = cause
        self.kind = cause.kind


class EntryNotFound(LookupError):
    def __init__(self, entry_id: str):
        super().__init__(f"Pipeline entry not found: {entry_id}")
        self.entry_id = entry_id


class EntryBusyError(RuntimeError):
    def __init__(self, entry_id: str):
        super().__init__(f"Pipeline entry is already being advanced: {entry_id}")
        self.entry_id = entry_id


class ClaimLost(EntryBusyError):
    """The claim expired mid-advance and another worker took the entry over."""

    def __init__(self, entry_id: str):
        RuntimeError.__init__(self, f"Lost the claim on pipeline entry: {entry_id}")
        self.entry_id = entry_id
