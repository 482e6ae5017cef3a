"""Custom exceptions for the garment capture pipeline."""

from __future__ import annotations

from enum import Enum
from typing import Optional


class CapturePipelineError(Exception):
    """Base exception for all garment capture pipeline errors."""

    default_user_message = "Something went wrong, please try again"

    def __init__(self, message: str, user_message: Optional[str] = None) -> None:
        super().__init__(message)
        self.user_message = user_message or self.default_user_message


class ConfigurationError(CapturePipelineError):
    """Error raised for invalid configuration options."""


class StorageError(CapturePipelineError):
    """Error raised by the durable blob store adapter."""


class ImageProcessingError(CapturePipelineError):
    """Error raised when a local image operation fails."""


class ValidationFailed(CapturePipelineError):
    """Raised when an image is rejected after acquisition.

    Carries the rejected ``ValidationOutcome`` so callers can surface the
    message and re-prompt acquisition.
    """

    def __init__(self, outcome) -> None:
        super().__init__(outcome.message, user_message=outcome.message)
        self.outcome = outcome


class ProcessingErrorCode(str, Enum):
    """Failure codes for the remote processing call."""

    AUTH_EXPIRED = "auth_expired"
    SERVER_ERROR = "server_error"
    NETWORK_UNAVAILABLE = "network_unavailable"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


_PROCESSING_USER_MESSAGES = {
    ProcessingErrorCode.AUTH_EXPIRED: "Session expired, please sign in again",
    ProcessingErrorCode.SERVER_ERROR: "Server error, please try again",
    ProcessingErrorCode.NETWORK_UNAVAILABLE: "Connection error, check your network",
    ProcessingErrorCode.TIMEOUT: "Processing took too long, please try again",
    ProcessingErrorCode.CANCELLED: "Processing cancelled",
}


class ProcessingError(CapturePipelineError):
    """Error raised by the remote processing client."""

    def __init__(
        self,
        code: ProcessingErrorCode,
        message: str = "",
        retryable: bool = False,
    ) -> None:
        user_message = _PROCESSING_USER_MESSAGES[code]
        super().__init__(message or user_message, user_message=user_message)
        self.code = code
        self.retryable = retryable

    def terminal(self) -> "ProcessingError":
        """Copy of this error with the local retry budget marked as spent."""
        error = ProcessingError(self.code, str(self), retryable=False)
        error.__cause__ = self.__cause__
        return error

    def __repr__(self) -> str:
        return (
            f"ProcessingError(code={self.code.value!r}, message={str(self)!r}, "
            f"retryable={self.retryable})"
        )


class RelayErrorCode(str, Enum):
    """Failure codes for moving a processed asset into durable storage."""

    INVALID_SOURCE = "invalid_source"
    DOWNLOAD_FAILED = "download_failed"
    INVALID_CONTENT_TYPE = "invalid_content_type"
    UPLOAD_FAILED = "upload_failed"
    SIGNING_FAILED = "signing_failed"
    FINALIZE_FAILED = "finalize_failed"


class RelayError(CapturePipelineError):
    """Error raised when the storage relay cannot persist an asset."""

    default_user_message = "Could not save the photo, please try again"

    def __init__(self, code: RelayErrorCode, message: str = "") -> None:
        super().__init__(message or code.value)
        self.code = code
