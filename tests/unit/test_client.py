"""Unit tests for ProcessingClient and the HTTP transport."""

import asyncio
import base64
import json
import re
import time

import httpx
import pytest

from garment_capture.core.adapters import HttpProcessingTransport
from garment_capture.core.cancellation import CancellationToken
from garment_capture.core.client import (
    PipelinePhase,
    ProcessingClient,
    generate_idempotency_key,
)
from garment_capture.core.error_handling import RetryPolicy
from garment_capture.core.image_utils import read_dimensions
from garment_capture.core.exceptions import (
    ProcessingError,
    ProcessingErrorCode,
    ValidationFailed,
)
from garment_capture.core.models import PipelineConfig, ProcessingRequest, ValidationStatus
from garment_capture.core.observability import MetricsCollector
from garment_capture.testing.fakes import (
    FakeLogger,
    FakeProcessingTransport,
    FakeTokenProvider,
    create_test_image,
    success_body,
)


def _client(transport, config=None, token_provider=None, metrics=None, **kwargs):
    return ProcessingClient(
        transport=transport,
        token_provider=token_provider or FakeTokenProvider(),
        logger=FakeLogger(),
        config=config or PipelineConfig(),
        metrics_collector=metrics,
        **kwargs,
    )


def _network_error():
    return ProcessingError(
        ProcessingErrorCode.NETWORK_UNAVAILABLE, "connection reset", retryable=True
    )


class StalledTokenProvider(FakeTokenProvider):
    """Auth collaborator that never answers."""

    async def get_access_token(self):
        self.calls += 1
        await asyncio.sleep(3600)


def test_idempotency_key_format():
    key = generate_idempotency_key()
    assert re.fullmatch(r"\d{13}_[0-9a-z]{8}", key)
    assert generate_idempotency_key() != key


class TestProcessingClient:
    """Tests for ProcessingClient."""

    @pytest.mark.asyncio
    async def test_first_attempt_success(self):
        """A large JPEG is compressed, submitted once and returns a processed asset."""
        transport = FakeProcessingTransport()
        client = _client(transport)
        run = client.new_run("user-1")

        result = await client.process(create_test_image(1800, 1200), "image/jpeg", run)

        assert result.processed_asset_url is not None
        assert result.used_fallback is False
        assert transport.call_count == 1
        assert run.phase is PipelinePhase.SUCCESS
        assert run.phase_history == [
            PipelinePhase.IDLE,
            PipelinePhase.COMPRESSING,
            PipelinePhase.ENCODING,
            PipelinePhase.REQUESTING,
            PipelinePhase.SUCCESS,
        ]

        request = transport.requests[0]
        assert request.owner_id == "user-1"
        assert request.mime_type == "image/jpeg"
        assert request.idempotency_key == run.idempotency_key
        assert transport.tokens == ["test-token"]

        width, height = read_dimensions(base64.b64decode(request.payload))
        assert max(width, height) <= 1500

    @pytest.mark.asyncio
    async def test_transient_failure_retried_with_same_key(self):
        """Network failure on attempt 1, success on attempt 2, one idempotency key."""
        transport = FakeProcessingTransport([_network_error(), success_body()])
        metrics = MetricsCollector()
        client = _client(transport, metrics=metrics)
        run = client.new_run("user-1")

        result = await client.process(create_test_image(), "image/jpeg", run)

        assert not result.used_fallback
        assert transport.call_count == 2
        assert run.attempts == 2
        assert len(set(transport.idempotency_keys)) == 1
        assert run.attempt_keys == [run.idempotency_key] * 2
        assert PipelinePhase.RETRYING in run.phase_history
        assert metrics.get_summary("remote_invoke")["failed_operations"] == 1

    @pytest.mark.asyncio
    async def test_retries_exhausted_is_terminal(self):
        transport = FakeProcessingTransport([_network_error()])
        client = _client(transport)

        with pytest.raises(ProcessingError) as exc_info:
            await client.process_image(create_test_image(), "user-1")

        assert exc_info.value.code is ProcessingErrorCode.NETWORK_UNAVAILABLE
        assert exc_info.value.retryable is False
        assert transport.call_count == 2

    @pytest.mark.asyncio
    async def test_zero_retries_policy(self):
        transport = FakeProcessingTransport([_network_error(), success_body()])
        client = _client(transport, retry_policy=RetryPolicy(max_retries=0))

        with pytest.raises(ProcessingError):
            await client.process_image(create_test_image(), "user-1")

        assert transport.call_count == 1

    @pytest.mark.asyncio
    async def test_auth_expired_not_retried(self):
        transport = FakeProcessingTransport(
            [ProcessingError(ProcessingErrorCode.AUTH_EXPIRED), success_body()]
        )
        client = _client(transport)
        run = client.new_run("user-1")

        with pytest.raises(ProcessingError) as exc_info:
            await client.process(create_test_image(), "image/jpeg", run)

        assert exc_info.value.code is ProcessingErrorCode.AUTH_EXPIRED
        assert transport.call_count == 1
        assert run.phase is PipelinePhase.FAILED

    @pytest.mark.asyncio
    async def test_missing_session_is_auth_expired(self):
        transport = FakeProcessingTransport()
        client = _client(transport, token_provider=FakeTokenProvider(token=None))

        with pytest.raises(ProcessingError) as exc_info:
            await client.process_image(create_test_image(), "user-1")

        assert exc_info.value.code is ProcessingErrorCode.AUTH_EXPIRED
        assert transport.call_count == 0

    @pytest.mark.asyncio
    async def test_token_provider_failure_is_auth_expired(self):
        provider = FakeTokenProvider()
        provider.should_fail = True
        client = _client(FakeProcessingTransport(), token_provider=provider)

        with pytest.raises(ProcessingError) as exc_info:
            await client.process_image(create_test_image(), "user-1")

        assert exc_info.value.code is ProcessingErrorCode.AUTH_EXPIRED

    @pytest.mark.asyncio
    async def test_token_requested_per_attempt(self):
        provider = FakeTokenProvider()
        transport = FakeProcessingTransport([_network_error(), success_body()])
        client = _client(transport, token_provider=provider)

        await client.process_image(create_test_image(), "user-1")

        assert provider.calls == 2

    @pytest.mark.asyncio
    async def test_timeout_retried_then_terminal(self):
        transport = FakeProcessingTransport([(1.0, success_body())])
        client = _client(transport, config=PipelineConfig(request_timeout=0.05))

        with pytest.raises(ProcessingError) as exc_info:
            await client.process_image(create_test_image(), "user-1")

        assert exc_info.value.code is ProcessingErrorCode.TIMEOUT
        assert exc_info.value.retryable is False
        assert transport.call_count == 2

    @pytest.mark.asyncio
    async def test_malformed_response_retried(self):
        transport = FakeProcessingTransport([{"unexpected": True}, success_body()])
        client = _client(transport)

        result = await client.process_image(create_test_image(), "user-1")

        assert result.asset_id == "asset-1"
        assert transport.call_count == 2

    @pytest.mark.asyncio
    async def test_fallback_result_is_success(self):
        transport = FakeProcessingTransport([success_body(processed_url=None)])
        client = _client(transport)

        result = await client.process_image(create_test_image(), "user-1")

        assert result.used_fallback
        assert result.processed_asset_url is None

    @pytest.mark.asyncio
    async def test_cancellation_during_request(self):
        """Cancellation 2 units into a 10 unit timeout window ends the run at once."""
        transport = FakeProcessingTransport([(5.0, success_body())])
        client = _client(transport, config=PipelineConfig(request_timeout=1.0))
        token = CancellationToken()
        run = client.new_run("user-1", token)
        token.cancel_after(0.2)

        started = time.monotonic()
        with pytest.raises(ProcessingError) as exc_info:
            await client.process(create_test_image(), "image/jpeg", run)
        elapsed = time.monotonic() - started

        assert exc_info.value.code is ProcessingErrorCode.CANCELLED
        assert exc_info.value.retryable is False
        assert run.phase is PipelinePhase.CANCELLED
        assert transport.call_count == 1
        assert elapsed < 1.0

        await asyncio.sleep(0.1)
        assert transport.call_count == 1

    @pytest.mark.asyncio
    async def test_cancellation_while_fetching_token(self):
        """A token provider that never answers does not hold off cancellation."""
        transport = FakeProcessingTransport([success_body()])
        client = _client(
            transport,
            config=PipelineConfig(request_timeout=0.5),
            token_provider=StalledTokenProvider(),
        )
        token = CancellationToken()
        run = client.new_run("user-1", token)
        token.cancel_after(0.2)

        with pytest.raises(ProcessingError) as exc_info:
            await asyncio.wait_for(
                client.process(create_test_image(), "image/jpeg", run), 3
            )

        assert exc_info.value.code is ProcessingErrorCode.CANCELLED
        assert run.phase is PipelinePhase.CANCELLED
        assert transport.call_count == 0

    @pytest.mark.asyncio
    async def test_stalled_token_fetch_times_out(self):
        provider = StalledTokenProvider()
        transport = FakeProcessingTransport([success_body()])
        client = _client(
            transport, config=PipelineConfig(request_timeout=0.1), token_provider=provider
        )

        with pytest.raises(ProcessingError) as exc_info:
            await asyncio.wait_for(client.process_image(create_test_image(), "user-1"), 3)

        assert exc_info.value.code is ProcessingErrorCode.TIMEOUT
        assert exc_info.value.retryable is False
        assert provider.calls == 2
        assert transport.call_count == 0

    @pytest.mark.asyncio
    async def test_cancellation_beats_retry(self):
        token = CancellationToken()

        class CancellingTransport(FakeProcessingTransport):
            async def invoke(self, request, access_token):
                self.requests.append(request)
                token.cancel("user left")
                raise _network_error()

        transport = CancellingTransport()
        client = _client(transport)
        run = client.new_run("user-1", token)

        with pytest.raises(ProcessingError) as exc_info:
            await client.process(create_test_image(), "image/jpeg", run)

        assert exc_info.value.code is ProcessingErrorCode.CANCELLED
        assert transport.call_count == 1

    @pytest.mark.asyncio
    async def test_already_cancelled_makes_no_call(self):
        token = CancellationToken()
        token.cancel()
        transport = FakeProcessingTransport()
        client = _client(transport)
        run = client.new_run("user-1", token)

        with pytest.raises(ProcessingError):
            await client.process(create_test_image(), "image/jpeg", run)

        assert transport.call_count == 0
        assert run.phase is PipelinePhase.CANCELLED

    @pytest.mark.asyncio
    async def test_finished_runs_release_the_callers_token(self):
        app_token = CancellationToken()
        transport = FakeProcessingTransport([success_body()])
        client = _client(transport)

        for _ in range(3):
            await client.process_image(create_test_image(), "user-1", cancel_token=app_token)

        assert app_token._callbacks == []
        assert transport.call_count == 3

    @pytest.mark.asyncio
    async def test_runs_do_not_share_state(self):
        transport = FakeProcessingTransport()
        client = _client(transport)
        first, second = client.new_run("a"), client.new_run("b")

        await asyncio.gather(
            client.process(create_test_image(), "image/jpeg", first),
            client.process(create_test_image(), "image/jpeg", second),
        )

        assert first.idempotency_key != second.idempotency_key
        assert sorted(transport.idempotency_keys) == sorted(
            [first.idempotency_key, second.idempotency_key]
        )

    @pytest.mark.asyncio
    async def test_oversize_fallback_rejected_before_network(self):
        transport = FakeProcessingTransport()
        config = PipelineConfig(max_file_size_bytes=1024)
        client = _client(transport, config=config)

        with pytest.raises(ValidationFailed) as exc_info:
            await client.process_image(b"\x00" * 4096, "user-1", "image/heic")

        assert exc_info.value.outcome.status is ValidationStatus.FILE_TOO_LARGE
        assert transport.call_count == 0

    @pytest.mark.asyncio
    async def test_small_fallback_submitted_with_original_mime_type(self):
        transport = FakeProcessingTransport()
        client = _client(transport)

        await client.process_image(b"heic-bytes", "user-1", "image/heic")

        assert transport.requests[0].mime_type == "image/heic"


class TestHttpProcessingTransport:
    """Tests for HttpProcessingTransport using httpx.MockTransport."""

    def _request(self):
        return ProcessingRequest(
            payload="aGk=",
            owner_id="user-1",
            mime_type="image/jpeg",
            idempotency_key="1700000000000_abcd1234",
        )

    @pytest.mark.asyncio
    async def test_posts_json_with_headers(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["headers"] = request.headers
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json=success_body())

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            transport = HttpProcessingTransport("https://api.example.com/process", http)
            body = await transport.invoke(self._request(), "secret")

        assert body["success"] is True
        assert seen["headers"]["authorization"] == "Bearer secret"
        assert seen["headers"]["idempotency-key"] == "1700000000000_abcd1234"
        assert seen["body"] == {
            "payload": "aGk=",
            "ownerId": "user-1",
            "mimeType": "image/jpeg",
            "idempotencyKey": "1700000000000_abcd1234",
        }

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status,code",
        [
            (401, ProcessingErrorCode.AUTH_EXPIRED),
            (403, ProcessingErrorCode.AUTH_EXPIRED),
            (500, ProcessingErrorCode.SERVER_ERROR),
            (502, ProcessingErrorCode.SERVER_ERROR),
        ],
    )
    async def test_status_codes_classified(self, status, code):
        def handler(request):
            return httpx.Response(status, json={"success": False})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            transport = HttpProcessingTransport("https://api.example.com/process", http)
            with pytest.raises(ProcessingError) as exc_info:
                await transport.invoke(self._request(), "secret")

        assert exc_info.value.code is code

    @pytest.mark.asyncio
    async def test_connect_error_is_network_unavailable(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            transport = HttpProcessingTransport("https://api.example.com/process", http)
            with pytest.raises(ProcessingError) as exc_info:
                await transport.invoke(self._request(), "secret")

        assert exc_info.value.code is ProcessingErrorCode.NETWORK_UNAVAILABLE
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_invalid_json_is_server_error(self):
        def handler(request):
            return httpx.Response(200, content=b"<html>gateway</html>")

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            transport = HttpProcessingTransport("https://api.example.com/process", http)
            with pytest.raises(ProcessingError) as exc_info:
                await transport.invoke(self._request(), "secret")

        assert exc_info.value.code is ProcessingErrorCode.SERVER_ERROR

    @pytest.mark.asyncio
    async def test_client_retries_through_http_transport(self):
        calls = []

        def handler(request):
            calls.append(request.headers["idempotency-key"])
            if len(calls) == 1:
                return httpx.Response(503)
            return httpx.Response(200, json=success_body())

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            client = _client(
                HttpProcessingTransport("https://api.example.com/process", http)
            )
            result = await client.process_image(create_test_image(), "user-1")

        assert result.asset_id == "asset-1"
        assert len(calls) == 2
        assert calls[0] == calls[1]
