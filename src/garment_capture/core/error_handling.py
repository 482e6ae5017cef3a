# src/garment_capture/core/error_handling.py

import functools
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import FrozenSet

import httpx
from botocore.exceptions import BotoCoreError, ClientError as BotocoreClientError

from .exceptions import (
    CapturePipelineError,
    ProcessingError,
    ProcessingErrorCode,
    StorageError,
)
from .logging_config import get_component_logger

RETRYABLE_CODES: FrozenSet[ProcessingErrorCode] = frozenset(
    {
        ProcessingErrorCode.NETWORK_UNAVAILABLE,
        ProcessingErrorCode.TIMEOUT,
        ProcessingErrorCode.SERVER_ERROR,
    }
)


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded automatic retry for one logical action.

    ``attempt`` counts the attempts already made, so with ``max_retries=1`` a
    failed first attempt is retried once and a failed second attempt is final.
    """

    max_retries: int = 1
    retryable_codes: FrozenSet[ProcessingErrorCode] = field(
        default_factory=lambda: RETRYABLE_CODES
    )
    delay: float = 0.0
    backoff_factor: float = 2.0

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def is_retryable(self, error: ProcessingError) -> bool:
        return error.retryable and error.code in self.retryable_codes

    def should_retry(self, error: ProcessingError, attempt: int) -> bool:
        return self.is_retryable(error) and attempt <= self.max_retries

    def delay_for(self, attempt: int) -> float:
        if self.delay <= 0:
            return 0.0
        return self.delay * (self.backoff_factor ** (attempt - 1))


def classify_transport_error(exc: Exception) -> ProcessingError:
    """
    Map a raw exception from the HTTP layer onto a processing error code.

    Classification uses exception types and status codes only.
    """
    if isinstance(exc, ProcessingError):
        return exc
    if isinstance(exc, httpx.TimeoutException):
        return ProcessingError(ProcessingErrorCode.TIMEOUT, str(exc), retryable=True)
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status in (401, 403):
            return ProcessingError(
                ProcessingErrorCode.AUTH_EXPIRED, f"Rejected with HTTP {status}"
            )
        return ProcessingError(
            ProcessingErrorCode.SERVER_ERROR, f"HTTP {status}", retryable=True
        )
    if isinstance(exc, httpx.TransportError):
        return ProcessingError(
            ProcessingErrorCode.NETWORK_UNAVAILABLE, str(exc), retryable=True
        )
    if isinstance(exc, (ValueError, httpx.DecodingError)):
        return ProcessingError(
            ProcessingErrorCode.SERVER_ERROR, f"Invalid response: {exc}", retryable=True
        )
    return ProcessingError(
        ProcessingErrorCode.SERVER_ERROR, f"Unexpected error: {exc}", retryable=True
    )


def translate_storage_errors(func):
    """
    Decorator for async blob store methods: botocore failures become StorageError.
    """

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        logger = logging.getLogger(func.__module__ + "." + func.__name__)
        try:
            return await func(*args, **kwargs)
        except BotocoreClientError as e:
            error_code = e.response.get("Error", {}).get("Code", "Unknown")
            logger.error(f"Storage operation '{func.__name__}' failed: {error_code}")
            raise StorageError(
                f"Storage operation failed in {func.__name__}: {error_code}"
            ) from e
        except BotoCoreError as e:
            logger.error(f"Storage operation '{func.__name__}' failed: {e}")
            raise StorageError(f"Storage operation failed in {func.__name__}: {e}") from e

    return wrapper


@contextmanager
def best_effort(operation: str, logger=None):
    """
    Run a cleanup step whose failure must never mask the primary outcome.

    Only ``OSError`` and pipeline errors are absorbed, and they are logged.
    """
    log = logger or get_component_logger("cleanup")
    try:
        yield
    except (OSError, CapturePipelineError) as exc:
        log.warning(f"Best-effort {operation} failed: {exc}")
