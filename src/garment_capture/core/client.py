"""Remote processing client: timeout race, cancellation and bounded retry."""

import asyncio
import secrets
import string
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .cancellation import CancellationToken
from .error_handling import RetryPolicy, classify_transport_error
from .exceptions import ProcessingError, ProcessingErrorCode, ValidationFailed
from .models import PipelineConfig, ProcessingRequest, ProcessingResult
from .observability import LogContext, MetricsCollector
from .protocols import LoggerProtocol, ProcessingTransportProtocol, TokenProviderProtocol
from .services import (
    ImageCompressorService,
    ImageValidator,
    PayloadEncoder,
    ResultHandler,
)

_KEY_ALPHABET = string.digits + string.ascii_lowercase


class PipelinePhase(str, Enum):
    """Phases of one processing run."""

    IDLE = "idle"
    COMPRESSING = "compressing"
    ENCODING = "encoding"
    REQUESTING = "requesting"
    RETRYING = "retrying"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_PHASES = frozenset(
    {PipelinePhase.SUCCESS, PipelinePhase.FAILED, PipelinePhase.CANCELLED}
)


def generate_idempotency_key() -> str:
    """``<epoch ms>_<8 base36 chars>``, unique even within one millisecond."""
    timestamp = int(time.time() * 1000)
    suffix = "".join(secrets.choice(_KEY_ALPHABET) for _ in range(8))
    return f"{timestamp}_{suffix}"


@dataclass
class ProcessingRun:
    """State of one logical processing action, shared by all of its retries."""

    owner_id: str
    idempotency_key: str = field(default_factory=generate_idempotency_key)
    cancel_token: CancellationToken = field(default_factory=CancellationToken)
    phase: PipelinePhase = PipelinePhase.IDLE
    phase_history: List[PipelinePhase] = field(
        default_factory=lambda: [PipelinePhase.IDLE]
    )
    attempts: int = 0
    attempt_keys: List[str] = field(default_factory=list)

    def advance(self, phase: PipelinePhase) -> None:
        self.phase = phase
        self.phase_history.append(phase)

    @property
    def finished(self) -> bool:
        return self.phase in TERMINAL_PHASES


class ProcessingClient:
    """
    Orchestrates compression, encoding and the remote call for one image.

    The client holds no per-run state: everything that must survive across
    retries lives on the ``ProcessingRun`` passed to ``process``.
    """

    def __init__(
        self,
        transport: ProcessingTransportProtocol,
        token_provider: TokenProviderProtocol,
        logger: LoggerProtocol,
        config: Optional[PipelineConfig] = None,
        retry_policy: Optional[RetryPolicy] = None,
        compressor: Optional[ImageCompressorService] = None,
        encoder: Optional[PayloadEncoder] = None,
        result_handler: Optional[ResultHandler] = None,
        validator: Optional[ImageValidator] = None,
        metrics_collector: Optional[MetricsCollector] = None,
    ):
        self._config = config or PipelineConfig()
        self._transport = transport
        self._token_provider = token_provider
        self._logger = logger
        self._retry_policy = retry_policy or RetryPolicy(
            max_retries=self._config.max_retries, delay=self._config.retry_delay
        )
        self._compressor = compressor or ImageCompressorService(logger)
        self._encoder = encoder or PayloadEncoder()
        self._result_handler = result_handler or ResultHandler()
        self._validator = validator or ImageValidator(self._config)
        self._metrics_collector = metrics_collector

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry_policy

    def new_run(
        self, owner_id: str, cancel_token: Optional[CancellationToken] = None
    ) -> ProcessingRun:
        """Start a logical action; its idempotency key is fixed from here on."""
        return ProcessingRun(
            owner_id=owner_id, cancel_token=CancellationToken.linked(cancel_token)
        )

    async def process_image(
        self,
        image_bytes: bytes,
        owner_id: str,
        mime_type: str = "image/jpeg",
        cancel_token: Optional[CancellationToken] = None,
    ) -> ProcessingResult:
        run = self.new_run(owner_id, cancel_token)
        try:
            return await self.process(image_bytes, mime_type, run)
        finally:
            run.cancel_token.detach()

    async def process(
        self, image_bytes: bytes, mime_type: str, run: ProcessingRun
    ) -> ProcessingResult:
        """
        Compress, encode and submit one image.

        Raises:
            ProcessingError: Terminal failure (``retryable`` is False)
            ValidationFailed: Compression fell back to an oversize original
        """
        context = LogContext(
            correlation_id=run.idempotency_key,
            operation="process",
            component="processing_client",
            owner_id=run.owner_id,
        )
        token = run.cancel_token

        try:
            token.raise_if_cancelled()
            run.advance(PipelinePhase.COMPRESSING)
            compressed = await asyncio.to_thread(
                self._compressor.compress,
                image_bytes,
                self._config.submission_max_edge,
                self._config.submission_quality,
                mime_type,
            )
            token.raise_if_cancelled()
            if compressed.used_fallback and not self._validator.validate_size(
                compressed.byte_size
            ):
                raise ValidationFailed(self._validator.too_large(compressed.byte_size))

            run.advance(PipelinePhase.ENCODING)
            payload = await asyncio.to_thread(self._encoder.encode, compressed.data)
            token.raise_if_cancelled()

            request = ProcessingRequest(
                payload=payload,
                owner_id=run.owner_id,
                mime_type=compressed.mime_type,
                idempotency_key=run.idempotency_key,
            )
            result = await self._request_with_retries(request, run, context)
        except ProcessingError as error:
            if error.code is ProcessingErrorCode.CANCELLED:
                run.advance(PipelinePhase.CANCELLED)
                self._logger.info("Processing cancelled", context)
            else:
                run.advance(PipelinePhase.FAILED)
            raise
        except ValidationFailed:
            run.advance(PipelinePhase.FAILED)
            raise

        run.advance(PipelinePhase.SUCCESS)
        self._logger.info(
            "Processing succeeded",
            context,
            attempts=run.attempts,
            used_fallback=result.used_fallback,
        )
        return result

    async def _request_with_retries(
        self, request: ProcessingRequest, run: ProcessingRun, context: LogContext
    ) -> ProcessingResult:
        attempt = 0
        while True:
            run.cancel_token.raise_if_cancelled()
            attempt += 1
            run.attempts = attempt
            run.attempt_keys.append(request.idempotency_key)
            run.advance(PipelinePhase.REQUESTING)

            started = time.time()
            try:
                body = await self._invoke_once(request, run)
                result = self._result_handler.interpret(body)
            except ProcessingError as error:
                self._record_attempt(started, attempt, run, error)
                if error.code is ProcessingErrorCode.CANCELLED:
                    raise
                if self._retry_policy.should_retry(error, attempt):
                    self._logger.warning(
                        "Attempt failed, retrying with the same idempotency key",
                        context,
                        attempt=attempt,
                        code=error.code.value,
                    )
                    run.advance(PipelinePhase.RETRYING)
                    if await run.cancel_token.sleep(self._retry_policy.delay_for(attempt)):
                        run.cancel_token.raise_if_cancelled()
                    continue
                self._logger.error(
                    "Processing failed",
                    context,
                    attempt=attempt,
                    code=error.code.value,
                    error=str(error),
                )
                raise error.terminal() from error

            self._record_attempt(started, attempt, run)
            return result

    async def _invoke_once(
        self, request: ProcessingRequest, run: ProcessingRun
    ) -> Dict[str, Any]:
        """
        Race one authorized call against the timeout and the cancellation token.

        The token fetch is part of the raced call. Cancellation wins over
        both a response and a timeout.
        """
        call = asyncio.ensure_future(self._authorized_invoke(request))
        cancelled = asyncio.ensure_future(run.cancel_token.wait())
        try:
            done, _ = await asyncio.wait(
                {call, cancelled},
                timeout=self._config.request_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in (call, cancelled):
                if not task.done():
                    task.cancel()
            await asyncio.gather(call, cancelled, return_exceptions=True)

        run.cancel_token.raise_if_cancelled()

        if call not in done:
            raise ProcessingError(
                ProcessingErrorCode.TIMEOUT,
                f"No response within {self._config.request_timeout:g}s",
                retryable=True,
            )

        exc = call.exception()
        if isinstance(exc, ProcessingError):
            raise exc
        if exc is not None:
            raise classify_transport_error(exc) from exc
        return call.result()

    async def _authorized_invoke(self, request: ProcessingRequest) -> Dict[str, Any]:
        access_token = await self._access_token()
        return await self._transport.invoke(request, access_token)

    async def _access_token(self) -> str:
        try:
            token = await self._token_provider.get_access_token()
        except Exception as exc:  # noqa: BLE001
            raise ProcessingError(
                ProcessingErrorCode.AUTH_EXPIRED, f"Token provider failed: {exc}"
            ) from exc
        if not token:
            raise ProcessingError(ProcessingErrorCode.AUTH_EXPIRED, "No active session")
        return token

    def _record_attempt(
        self,
        started: float,
        attempt: int,
        run: ProcessingRun,
        error: Optional[ProcessingError] = None,
    ) -> None:
        if self._metrics_collector is None:
            return
        self._metrics_collector.record(
            "remote_invoke",
            started,
            success=error is None,
            error_message=None if error is None else error.code.value,
            attempt=attempt,
            idempotency_key=run.idempotency_key,
        )
