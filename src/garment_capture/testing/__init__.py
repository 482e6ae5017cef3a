"""Testing utilities and fakes for the garment capture pipeline."""

from .fakes import (
    FakeAcquisitionSource,
    FakeBlobStore,
    FakeClock,
    FakeLogger,
    FakeProcessingTransport,
    FakeTokenProvider,
    StoredBlob,
    create_test_image,
    picked,
    success_body,
)

__all__ = [
    "FakeAcquisitionSource",
    "FakeBlobStore",
    "FakeClock",
    "FakeLogger",
    "FakeProcessingTransport",
    "FakeTokenProvider",
    "StoredBlob",
    "create_test_image",
    "picked",
    "success_body",
]
