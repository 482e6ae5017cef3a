"""Core utilities and shared components for the garment capture pipeline."""

from .cancellation import CancellationToken
from .client import PipelinePhase, ProcessingClient, ProcessingRun
from .error_handling import RetryPolicy, classify_transport_error
from .exceptions import (
    CapturePipelineError,
    ConfigurationError,
    ImageProcessingError,
    ProcessingError,
    ProcessingErrorCode,
    RelayError,
    RelayErrorCode,
    StorageError,
    ValidationFailed,
)
from .image_utils import get_file_extension, mime_type_for
from .logging_config import get_logger, setup_logger
from .models import (
    ClothingCategory,
    ImageDescriptor,
    PersistedAsset,
    PipelineConfig,
    ProcessingRequest,
    ProcessingResult,
    StorageRecord,
    ValidationOutcome,
    ValidationStatus,
)
from .pipeline import CaptureOutcome, CapturePipeline
from .relay import StorageRelay

__all__ = [
    "CancellationToken",
    "PipelinePhase",
    "ProcessingClient",
    "ProcessingRun",
    "RetryPolicy",
    "classify_transport_error",
    "CapturePipelineError",
    "ConfigurationError",
    "ImageProcessingError",
    "ProcessingError",
    "ProcessingErrorCode",
    "RelayError",
    "RelayErrorCode",
    "StorageError",
    "ValidationFailed",
    "get_file_extension",
    "mime_type_for",
    "get_logger",
    "setup_logger",
    "ClothingCategory",
    "ImageDescriptor",
    "PersistedAsset",
    "PipelineConfig",
    "ProcessingRequest",
    "ProcessingResult",
    "StorageRecord",
    "ValidationOutcome",
    "ValidationStatus",
    "CaptureOutcome",
    "CapturePipeline",
    "StorageRelay",
]
