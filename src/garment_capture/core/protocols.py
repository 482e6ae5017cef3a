"""Protocol definitions for dependency injection and testability."""

from typing import Any, Dict, Optional, Protocol

from .models import AcquisitionResult, ProcessingRequest


class AcquisitionSourceProtocol(Protocol):
    """Protocol for the photo capture/selection surface."""

    async def acquire(self) -> AcquisitionResult:
        """Capture or pick one image; user cancellation is an outcome, not an error."""
        ...

    async def read_bytes(self, locator: str) -> bytes:
        """Read the binary content behind a locator."""
        ...


class ProcessingTransportProtocol(Protocol):
    """Protocol for the remote processing endpoint."""

    async def invoke(
        self, request: ProcessingRequest, access_token: str
    ) -> Dict[str, Any]:
        """Send one request and return the decoded response body.

        Implementations raise ``ProcessingError`` with a structured code.
        """
        ...


class BlobStoreProtocol(Protocol):
    """Protocol for durable blob storage operations."""

    async def upload(self, path: str, data: bytes, content_type: str) -> None:
        """Store an object under a path."""
        ...

    async def create_signed_url(self, path: str, ttl_seconds: int) -> str:
        """Mint a time-limited read URL for a stored object."""
        ...

    async def remove(self, path: str) -> None:
        """Delete a stored object."""
        ...


class TokenProviderProtocol(Protocol):
    """Protocol for the auth collaborator."""

    async def get_access_token(self) -> Optional[str]:
        """Return a short-lived bearer token, or None without a session."""
        ...


class LoggerProtocol(Protocol):
    """Protocol for logging operations."""

    def debug(self, message: str, context: Any = None, **kwargs: Any) -> None:
        """Log debug message."""
        ...

    def info(self, message: str, context: Any = None, **kwargs: Any) -> None:
        """Log info message."""
        ...

    def warning(self, message: str, context: Any = None, **kwargs: Any) -> None:
        """Log warning message."""
        ...

    def error(self, message: str, context: Any = None, **kwargs: Any) -> None:
        """Log error message."""
        ...
