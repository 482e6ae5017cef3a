"""End-to-end capture pipeline: acquire, validate, process and persist."""

import asyncio
import inspect
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

from .cancellation import CancellationToken
from .client import PipelinePhase, ProcessingClient, ProcessingRun
from .exceptions import (
    ImageProcessingError,
    ProcessingError,
    ProcessingErrorCode,
    RelayError,
    RelayErrorCode,
    ValidationFailed,
)
from .models import (
    CompressedImage,
    PersistedAsset,
    PipelineConfig,
    ProcessingResult,
    ValidationOutcome,
)
from .observability import LogContext
from .protocols import AcquisitionSourceProtocol, LoggerProtocol
from .relay import StorageRelay
from .services import AcquisitionService, ImageCompressorService, ImageValidator

FinalizeCallback = Callable[[ProcessingResult, PersistedAsset], Union[Any, Awaitable[Any]]]


@dataclass
class CaptureOutcome:
    """What one pipeline run produced, whichever stage it stopped at."""

    validation: ValidationOutcome
    run: Optional[ProcessingRun] = None
    preview: Optional[CompressedImage] = None
    result: Optional[ProcessingResult] = None
    stored: Optional[PersistedAsset] = None
    cancelled: bool = False

    @property
    def phase(self) -> PipelinePhase:
        if self.cancelled:
            return PipelinePhase.CANCELLED
        return self.run.phase if self.run is not None else PipelinePhase.IDLE

    @property
    def succeeded(self) -> bool:
        return self.result is not None and not self.cancelled

    @property
    def preview_fallback(self) -> bool:
        return self.preview is not None and self.preview.used_fallback


class CapturePipeline:
    """
    Runs one capture from acquisition to durable storage.

    Cancellation from the caller ends the run quietly with ``cancelled=True``;
    every other failure is raised as a ``CapturePipelineError`` subclass.
    """

    def __init__(
        self,
        acquisition: AcquisitionService,
        source: AcquisitionSourceProtocol,
        validator: ImageValidator,
        compressor: ImageCompressorService,
        client: ProcessingClient,
        logger: LoggerProtocol,
        relay: Optional[StorageRelay] = None,
        config: Optional[PipelineConfig] = None,
    ):
        self._acquisition = acquisition
        self._source = source
        self._validator = validator
        self._compressor = compressor
        self._client = client
        self._logger = logger
        self._relay = relay
        self._config = config or PipelineConfig()

    @property
    def client(self) -> ProcessingClient:
        return self._client

    @property
    def relay(self) -> Optional[StorageRelay]:
        return self._relay

    async def run(
        self,
        owner_id: str,
        cancel_token: Optional[CancellationToken] = None,
        finalize: Optional[FinalizeCallback] = None,
        on_rejected: Optional[Callable[[ValidationOutcome], None]] = None,
    ) -> CaptureOutcome:
        """
        Execute the pipeline for one image.

        Args:
            owner_id: Owner of the stored assets
            cancel_token: External cancellation signal
            finalize: Called with the result and stored assets once persisted;
                if it fails, the uploads are removed again
            on_rejected: Feedback hook for recoverable validation rejections

        Returns:
            CaptureOutcome describing how far the run got

        Raises:
            ValidationFailed: Accepted image became oversize after a fallback
            ProcessingError: Terminal remote processing failure
            RelayError: Persisting or finalizing the result failed
        """
        context = LogContext(
            operation="capture", component="capture_pipeline", owner_id=owner_id
        )
        validation = await self._acquisition.acquire_valid(on_rejected)
        if not validation.accepted or validation.descriptor is None:
            if validation.silent:
                return CaptureOutcome(validation=validation, cancelled=True)
            self._logger.info(
                "Capture stopped at acquisition",
                context,
                status=validation.status.value,
            )
            return CaptureOutcome(validation=validation)

        descriptor = validation.descriptor
        run = self._client.new_run(owner_id, cancel_token)
        outcome = CaptureOutcome(validation=validation, run=run)
        context = LogContext(
            correlation_id=run.idempotency_key,
            operation="capture",
            component="capture_pipeline",
            owner_id=owner_id,
        )

        try:
            run.cancel_token.raise_if_cancelled()
            image_bytes = await self._read_image(descriptor.locator)
            run.cancel_token.raise_if_cancelled()

            outcome.preview = await asyncio.to_thread(
                self._compressor.compress,
                image_bytes,
                self._config.preview_max_edge,
                self._config.preview_quality,
                descriptor.mime_type,
            )
            if outcome.preview.used_fallback and not self._validator.validate_size(
                outcome.preview.byte_size
            ):
                run.advance(PipelinePhase.FAILED)
                raise ValidationFailed(
                    self._validator.too_large(outcome.preview.byte_size)
                )

            outcome.result = await self._client.process(
                outcome.preview.data, outcome.preview.mime_type, run
            )

            if self._relay is not None:
                outcome.stored = await self._persist(
                    outcome.result, owner_id, run, finalize, context
                )
        except ProcessingError as error:
            if error.code is not ProcessingErrorCode.CANCELLED:
                raise
            if not run.finished:
                run.advance(PipelinePhase.CANCELLED)
            self._logger.info("Capture cancelled", context)
            outcome.cancelled = True
            return outcome
        except ImageProcessingError:
            run.advance(PipelinePhase.FAILED)
            raise
        finally:
            run.cancel_token.detach()

        self._logger.info(
            "Capture complete",
            context,
            used_fallback=outcome.result.used_fallback,
            stored=outcome.stored is not None,
        )
        return outcome

    async def _persist(
        self,
        result: ProcessingResult,
        owner_id: str,
        run: ProcessingRun,
        finalize: Optional[FinalizeCallback],
        context: LogContext,
    ) -> PersistedAsset:
        stored = await self._relay.persist_result(result, owner_id, run.cancel_token)
        if finalize is None:
            return stored

        try:
            completion = finalize(result, stored)
            if inspect.isawaitable(completion):
                await completion
        except Exception as exc:
            self._logger.error(
                "Finalize failed, removing stored assets",
                context,
                paths=list(stored.paths),
                error=str(exc),
            )
            for path in stored.paths:
                await self._relay.remove(path)
            raise RelayError(RelayErrorCode.FINALIZE_FAILED, str(exc)) from exc
        return stored

    async def _read_image(self, locator: str) -> bytes:
        try:
            return await self._source.read_bytes(locator)
        except OSError as exc:
            raise ImageProcessingError(
                f"Could not read {locator}: {exc}",
                user_message="Could not open the selected image",
            ) from exc
