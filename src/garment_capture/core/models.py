"""Shared data models for the garment capture pipeline."""

import os
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from .exceptions import ConfigurationError

MAX_FILE_SIZE_BYTES = 10 * 1024 * 1024
ALLOWED_EXTENSIONS: Tuple[str, ...] = ("jpg", "jpeg", "png", "heic", "heif", "webp")
ALLOWED_CONTENT_TYPES: Tuple[str, ...] = (
    "image/jpeg",
    "image/png",
    "image/webp",
    "image/heic",
)


class PipelineConfig(BaseModel):
    """Configuration for capture pipeline runs."""

    endpoint_url: str = ""
    request_timeout: float = Field(default=10.0, gt=0)
    max_retries: int = Field(default=1, ge=0)
    retry_delay: float = Field(default=0.0, ge=0)
    max_file_size_bytes: int = Field(default=MAX_FILE_SIZE_BYTES, gt=0)
    allowed_extensions: Tuple[str, ...] = ALLOWED_EXTENSIONS
    preview_max_edge: int = Field(default=2048, gt=0)
    preview_quality: float = Field(default=0.8, gt=0, le=1)
    submission_max_edge: int = Field(default=1500, gt=0)
    submission_quality: float = Field(default=0.85, gt=0, le=1)
    storage_bucket: str = "clothes-photos"
    signed_url_ttl: int = Field(default=900, gt=0)
    allowed_source_hosts: Tuple[str, ...] = ("res.cloudinary.com",)
    allowed_content_types: Tuple[str, ...] = ALLOWED_CONTENT_TYPES
    scratch_dir: Optional[str] = None
    max_reacquire_attempts: int = Field(default=3, ge=1)
    debug: bool = False

    @classmethod
    def from_env(cls, **overrides: Any) -> "PipelineConfig":
        """
        Build a configuration from ``CAPTURE_*`` environment variables.

        List settings (hosts, extensions, content types) are comma separated.
        Keyword overrides win over the environment.

        Raises:
            ConfigurationError: If a variable holds an invalid value
        """
        env_map = {
            "endpoint_url": "CAPTURE_ENDPOINT_URL",
            "request_timeout": "CAPTURE_REQUEST_TIMEOUT",
            "max_retries": "CAPTURE_MAX_RETRIES",
            "retry_delay": "CAPTURE_RETRY_DELAY",
            "max_file_size_bytes": "CAPTURE_MAX_FILE_SIZE_BYTES",
            "allowed_extensions": "CAPTURE_ALLOWED_EXTENSIONS",
            "storage_bucket": "CAPTURE_STORAGE_BUCKET",
            "signed_url_ttl": "CAPTURE_SIGNED_URL_TTL",
            "allowed_source_hosts": "CAPTURE_ALLOWED_SOURCE_HOSTS",
            "allowed_content_types": "CAPTURE_ALLOWED_CONTENT_TYPES",
            "scratch_dir": "CAPTURE_SCRATCH_DIR",
            "debug": "CAPTURE_DEBUG",
        }
        list_fields = {"allowed_extensions", "allowed_source_hosts", "allowed_content_types"}

        values: Dict[str, Any] = {}
        for field_name, env_var in env_map.items():
            raw = os.getenv(env_var)
            if raw is None or raw == "":
                continue
            if field_name in list_fields:
                values[field_name] = tuple(
                    item.strip() for item in raw.split(",") if item.strip()
                )
            else:
                values[field_name] = raw
        values.update(overrides)

        try:
            return cls(**values)
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid pipeline configuration: {exc}") from exc


class RawAsset(BaseModel):
    """Image as reported by an acquisition source, before normalization."""

    locator: str
    file_name: Optional[str] = None
    width: int = 0
    height: int = 0
    mime_type: Optional[str] = None
    byte_size: Optional[int] = None


class AcquisitionResult(BaseModel):
    """Outcome of one capture/selection attempt."""

    cancelled: bool = False
    asset: Optional[RawAsset] = None

    @classmethod
    def user_cancelled(cls) -> "AcquisitionResult":
        return cls(cancelled=True)


class ImageDescriptor(BaseModel):
    """Normalized description of an acquired image."""

    locator: str
    file_name: str
    byte_size: int
    width: int
    height: int
    mime_type: str


class ValidationStatus(str, Enum):
    """Result status of acquisition validation."""

    ACCEPTED = "accepted"
    CANCELLED = "cancelled"
    FILE_TOO_LARGE = "file_too_large"
    INVALID_FORMAT = "invalid_format"
    PICKER_ERROR = "picker_error"


class ValidationOutcome(BaseModel):
    """Accepted descriptor or a typed rejection with a user-facing message."""

    status: ValidationStatus
    message: str = ""
    descriptor: Optional[ImageDescriptor] = None

    @property
    def accepted(self) -> bool:
        return self.status is ValidationStatus.ACCEPTED

    @property
    def recoverable(self) -> bool:
        """Rejections after which acquisition is re-prompted automatically."""
        return self.status in (
            ValidationStatus.FILE_TOO_LARGE,
            ValidationStatus.INVALID_FORMAT,
        )

    @property
    def silent(self) -> bool:
        """Outcomes that must not surface any error to the user."""
        return self.status is ValidationStatus.CANCELLED


class CompressedImage(BaseModel):
    """Output of the compression stage."""

    data: bytes
    mime_type: str = "image/jpeg"
    width: int = 0
    height: int = 0
    used_fallback: bool = False

    @property
    def byte_size(self) -> int:
        return len(self.data)


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ProcessingRequest(_CamelModel):
    """Body sent to the remote processing endpoint."""

    model_config = ConfigDict(frozen=True)

    payload: str
    owner_id: str
    mime_type: str
    idempotency_key: str

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class RemoteAssetData(_CamelModel):
    """``data`` member of a remote processing response."""

    original_asset_url: str
    processed_asset_url: Optional[str] = None
    asset_id: str
    suggested_category: Optional[str] = None
    category_confidence: Optional[float] = None


class RemoteResponse(_CamelModel):
    """Envelope returned by the remote processing endpoint."""

    success: bool
    data: Optional[RemoteAssetData] = None
    error: Optional[str] = None


class ClothingCategory(str, Enum):
    """Garment categories the remote service can suggest."""

    TOP = "top"
    BOTTOM = "bottom"
    DRESS = "dress"
    OUTERWEAR = "outerwear"
    SHOES = "shoes"
    ACCESSORY = "accessory"


class ProcessingResult(BaseModel):
    """Domain result of a successful remote processing call."""

    model_config = ConfigDict(frozen=True)

    original_asset_url: str
    processed_asset_url: Optional[str] = None
    asset_id: str
    used_fallback: bool
    suggested_category: Optional[ClothingCategory] = None
    category_confidence: Optional[float] = Field(default=None, ge=0, le=100)

    @model_validator(mode="after")
    def _check_fallback(self) -> "ProcessingResult":
        if self.used_fallback != (self.processed_asset_url is None):
            raise ValueError(
                "used_fallback must be true exactly when processed_asset_url is missing"
            )
        return self

    @property
    def display_url(self) -> str:
        return self.processed_asset_url or self.original_asset_url


class StorageRecord(BaseModel):
    """Signed access to a stored object."""

    storage_path: str
    signed_url: str
    expires_at: datetime

    def is_valid_at(self, moment: datetime) -> bool:
        return moment <= self.expires_at


class PersistedAsset(BaseModel):
    """Stored copies of a processing result."""

    original_path: str
    processed_path: Optional[str] = None
    display: Optional[StorageRecord] = None

    @property
    def paths(self) -> Tuple[str, ...]:
        if self.processed_path:
            return (self.original_path, self.processed_path)
        return (self.original_path,)
