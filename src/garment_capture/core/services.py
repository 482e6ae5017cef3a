"""Pure service implementations for the capture pipeline stages."""

import asyncio
import math
import os
import time
from typing import Any, Callable, Optional
from urllib.parse import unquote, urlparse

from PIL import Image
from pydantic import ValidationError

from .exceptions import ProcessingError, ProcessingErrorCode
from .image_utils import compress_to_jpeg, encode_base64, get_file_extension
from .models import (
    ClothingCategory,
    CompressedImage,
    ImageDescriptor,
    PipelineConfig,
    ProcessingResult,
    RawAsset,
    RemoteResponse,
    ValidationOutcome,
    ValidationStatus,
)
from .observability import LogContext
from .protocols import AcquisitionSourceProtocol, LoggerProtocol

PRESELECT_THRESHOLD = 50
AI_BADGE_THRESHOLD = 70

_BYTES_PER_MB = 1024 * 1024


class ImageValidator:
    """Accepts or rejects acquired images by extension and byte size."""

    def __init__(self, config: Optional[PipelineConfig] = None):
        self._config = config or PipelineConfig()
        self._allowed = frozenset(ext.lower() for ext in self._config.allowed_extensions)

    def validate_format(self, extension: str) -> bool:
        return extension.lower() in self._allowed

    def validate_size(self, byte_size: int) -> bool:
        return byte_size <= self._config.max_file_size_bytes

    def too_large(self, byte_size: int) -> ValidationOutcome:
        size_mb = byte_size / _BYTES_PER_MB
        max_mb = self._config.max_file_size_bytes / _BYTES_PER_MB
        return ValidationOutcome(
            status=ValidationStatus.FILE_TOO_LARGE,
            message=f"Image too large ({size_mb:.1f}MB). Maximum: {max_mb:g}MB",
        )

    def invalid_format(self) -> ValidationOutcome:
        accepted = ", ".join(self._config.allowed_extensions)
        return ValidationOutcome(
            status=ValidationStatus.INVALID_FORMAT,
            message=f"Unsupported format. Accepted formats: {accepted}",
        )

    def validate(self, descriptor: ImageDescriptor) -> ValidationOutcome:
        """Check format first, then size."""
        extension = get_file_extension(descriptor.file_name) or get_file_extension(
            descriptor.locator
        )
        if not self.validate_format(extension):
            return self.invalid_format()
        if not self.validate_size(descriptor.byte_size):
            return self.too_large(descriptor.byte_size)
        return ValidationOutcome(status=ValidationStatus.ACCEPTED, descriptor=descriptor)


class ImageCompressorService:
    """Resizes and re-encodes images, passing originals through on failure."""

    def __init__(self, logger: LoggerProtocol):
        self._logger = logger

    def compress(
        self,
        image_bytes: bytes,
        max_edge: int,
        quality: float,
        fallback_mime_type: str = "image/jpeg",
    ) -> CompressedImage:
        try:
            data, width, height = compress_to_jpeg(image_bytes, max_edge, quality)
        except (IOError, SyntaxError, ValueError, Image.DecompressionBombError) as exc:
            self._logger.warning(
                "Compression failed, passing original bytes through",
                error=str(exc),
                byte_size=len(image_bytes),
            )
            return CompressedImage(
                data=image_bytes, mime_type=fallback_mime_type, used_fallback=True
            )

        return CompressedImage(data=data, mime_type="image/jpeg", width=width, height=height)


class PayloadEncoder:
    """Transport encoding for compressed images."""

    def encode(self, data: bytes) -> str:
        return encode_base64(data)


def _local_file_size(locator: str) -> Optional[int]:
    parsed = urlparse(locator)
    if parsed.scheme == "file":
        path = unquote(parsed.path)
    elif len(parsed.scheme) <= 1:
        # bare path or windows drive letter
        path = locator
    else:
        return None
    try:
        return os.path.getsize(path)
    except OSError:
        return None


class AcquisitionService:
    """Runs the acquisition source and validates what it returns."""

    def __init__(
        self,
        source: AcquisitionSourceProtocol,
        validator: ImageValidator,
        logger: LoggerProtocol,
        config: Optional[PipelineConfig] = None,
    ):
        self._source = source
        self._validator = validator
        self._logger = logger
        self._config = config or PipelineConfig()

    async def describe(self, asset: RawAsset) -> ImageDescriptor:
        """Normalize a raw asset, preferring the filesystem for the byte size."""
        file_size = await asyncio.to_thread(_local_file_size, asset.locator)
        if file_size is None:
            file_size = asset.byte_size or 0

        file_name = asset.file_name or f"image_{int(time.time() * 1000)}.jpg"
        extension = get_file_extension(asset.file_name or asset.locator)
        mime_type = asset.mime_type or f"image/{extension or 'jpeg'}"

        return ImageDescriptor(
            locator=asset.locator,
            file_name=file_name,
            byte_size=file_size,
            width=asset.width,
            height=asset.height,
            mime_type=mime_type,
        )

    async def acquire(self) -> ValidationOutcome:
        """One acquisition attempt, classified into a ValidationOutcome."""
        context = LogContext(operation="acquire", component="acquisition_service")
        try:
            result = await self._source.acquire()
        except Exception as exc:  # noqa: BLE001
            self._logger.error("Image picker failed", context, error=str(exc))
            return ValidationOutcome(
                status=ValidationStatus.PICKER_ERROR,
                message="Could not open the selected image",
            )

        if result.cancelled:
            self._logger.debug("Acquisition cancelled by user", context)
            return ValidationOutcome(status=ValidationStatus.CANCELLED)

        if result.asset is None:
            return ValidationOutcome(
                status=ValidationStatus.PICKER_ERROR, message="No image selected"
            )

        descriptor = await self.describe(result.asset)
        outcome = self._validator.validate(descriptor)
        self._logger.info(
            "Image validated",
            context.with_metadata(file_name=descriptor.file_name),
            status=outcome.status.value,
            byte_size=descriptor.byte_size,
        )
        return outcome

    async def acquire_valid(
        self, on_rejected: Optional[Callable[[ValidationOutcome], None]] = None
    ) -> ValidationOutcome:
        """
        Acquire until an image is accepted or a non-recoverable outcome occurs.

        Recoverable rejections are reported through ``on_rejected`` and the
        source is re-invoked, up to ``max_reacquire_attempts`` attempts.
        """
        outcome = ValidationOutcome(status=ValidationStatus.CANCELLED)
        for _ in range(self._config.max_reacquire_attempts):
            outcome = await self.acquire()
            if not outcome.recoverable:
                return outcome
            self._logger.warning("Image rejected, re-prompting", reason=outcome.message)
            if on_rejected is not None:
                on_rejected(outcome)
        return outcome


def parse_category(value: Optional[str]) -> Optional[ClothingCategory]:
    """Known category for a suggestion string, or None."""
    if not value:
        return None
    try:
        return ClothingCategory(value.strip().lower())
    except ValueError:
        return None


def parse_confidence(value: Optional[float]) -> Optional[float]:
    """Confidence clamped to the 0-100 range; missing or NaN becomes None."""
    if value is None or math.isnan(value):
        return None
    return max(0.0, min(100.0, float(value)))


def should_preselect_category(confidence: Optional[float]) -> bool:
    return confidence is not None and confidence >= PRESELECT_THRESHOLD


def should_flag_ai_suggestion(confidence: Optional[float]) -> bool:
    return confidence is not None and confidence >= AI_BADGE_THRESHOLD


class ResultHandler:
    """Maps remote response bodies into ProcessingResult values."""

    def interpret(self, payload: Any) -> ProcessingResult:
        """
        Interpret a decoded response body.

        A missing processed asset is a fallback success, not an error.

        Raises:
            ProcessingError: SERVER_ERROR (retryable) for malformed bodies or
                an explicit ``success: false``
        """
        if not isinstance(payload, dict):
            raise ProcessingError(
                ProcessingErrorCode.SERVER_ERROR, "Missing response body", retryable=True
            )
        try:
            response = RemoteResponse.model_validate(payload)
        except ValidationError as exc:
            raise ProcessingError(
                ProcessingErrorCode.SERVER_ERROR,
                f"Malformed response body: {exc.error_count()} error(s)",
                retryable=True,
            ) from exc

        if not response.success or response.data is None:
            raise ProcessingError(
                ProcessingErrorCode.SERVER_ERROR,
                response.error or "Server reported a failure",
                retryable=True,
            )

        data = response.data
        processed_url = data.processed_asset_url or None
        return ProcessingResult(
            original_asset_url=data.original_asset_url,
            processed_asset_url=processed_url,
            asset_id=data.asset_id,
            used_fallback=processed_url is None,
            suggested_category=parse_category(data.suggested_category),
            category_confidence=parse_confidence(data.category_confidence),
        )
