"""Factory classes for creating configured service instances."""

from typing import Any, Optional

import aioboto3
import httpx

from .adapters import HttpProcessingTransport, S3BlobStore
from .client import ProcessingClient
from .error_handling import RetryPolicy
from .exceptions import ConfigurationError
from .models import PipelineConfig
from .observability import MetricsCollector, StructuredLogger
from .pipeline import CapturePipeline
from .protocols import (
    AcquisitionSourceProtocol,
    BlobStoreProtocol,
    LoggerProtocol,
    ProcessingTransportProtocol,
    TokenProviderProtocol,
)
from .relay import StorageRelay
from .services import (
    AcquisitionService,
    ImageCompressorService,
    ImageValidator,
    PayloadEncoder,
    ResultHandler,
)


class LoggerFactory:
    """Factory for creating logger instances."""

    @staticmethod
    def create_logger(
        name: str = "garment-capture", level: Optional[str] = None
    ) -> LoggerProtocol:
        """Create a structured logger compatible with LoggerProtocol."""
        return StructuredLogger(name, level=level)


class S3BlobStoreFactory:
    """Factory for creating S3 blob store instances."""

    @staticmethod
    def create_blob_store(bucket: str, **client_kwargs: Any) -> BlobStoreProtocol:
        """Create an S3 blob store with optional client configuration."""
        return S3BlobStore(
            bucket, session=aioboto3.Session(), client_kwargs=client_kwargs
        )


class CapturePipelineFactory:
    """Factory for creating the complete capture pipeline."""

    @staticmethod
    def create_client(
        http_client: httpx.AsyncClient,
        token_provider: TokenProviderProtocol,
        logger: LoggerProtocol,
        config: PipelineConfig,
        metrics_collector: Optional[MetricsCollector] = None,
        transport: Optional[ProcessingTransportProtocol] = None,
    ) -> ProcessingClient:
        """Create a processing client for the configured endpoint."""
        if transport is None:
            if not config.endpoint_url:
                raise ConfigurationError("A processing endpoint URL is required")
            transport = HttpProcessingTransport(config.endpoint_url, http_client)

        validator = ImageValidator(config)
        return ProcessingClient(
            transport=transport,
            token_provider=token_provider,
            logger=logger,
            config=config,
            retry_policy=RetryPolicy(
                max_retries=config.max_retries, delay=config.retry_delay
            ),
            compressor=ImageCompressorService(logger),
            encoder=PayloadEncoder(),
            result_handler=ResultHandler(),
            validator=validator,
            metrics_collector=metrics_collector,
        )

    @staticmethod
    def create_pipeline(
        source: AcquisitionSourceProtocol,
        http_client: httpx.AsyncClient,
        token_provider: TokenProviderProtocol,
        blob_store: Optional[BlobStoreProtocol] = None,
        logger: Optional[LoggerProtocol] = None,
        config: Optional[PipelineConfig] = None,
        metrics_collector: Optional[MetricsCollector] = None,
        transport: Optional[ProcessingTransportProtocol] = None,
    ) -> CapturePipeline:
        """
        Create a fully configured capture pipeline.

        Without a ``blob_store`` the pipeline stops after remote processing
        and nothing is persisted.
        """
        if config is None:
            config = PipelineConfig.from_env()

        if logger is None:
            logger = LoggerFactory.create_logger(
                level="DEBUG" if config.debug else None
            )

        validator = ImageValidator(config)
        compressor = ImageCompressorService(logger)
        client = CapturePipelineFactory.create_client(
            http_client, token_provider, logger, config, metrics_collector, transport
        )

        relay = None
        if blob_store is not None:
            relay = StorageRelay(blob_store, http_client, logger, config)

        return CapturePipeline(
            acquisition=AcquisitionService(source, validator, logger, config),
            source=source,
            validator=validator,
            compressor=compressor,
            client=client,
            logger=logger,
            relay=relay,
            config=config,
        )
