"""Relay of processed assets into durable storage."""

import asyncio
import os
import secrets
import tempfile
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional
from urllib.parse import urlparse

import httpx

from .cancellation import CancellationToken
from .error_handling import best_effort
from .exceptions import ProcessingError, RelayError, RelayErrorCode, StorageError
from .models import PersistedAsset, PipelineConfig, ProcessingResult, StorageRecord
from .observability import LogContext
from .protocols import BlobStoreProtocol, LoggerProtocol

DEFAULT_CONTENT_TYPE = "image/jpeg"


def generate_storage_name(now: Optional[float] = None) -> str:
    """``<epoch ms>_<16 hex chars>.jpg``; time plus randomness avoids key collisions."""
    timestamp = int((time.time() if now is None else now) * 1000)
    return f"{timestamp}_{secrets.token_hex(8)}.jpg"


def _remove_file(path: str) -> None:
    Path(path).unlink(missing_ok=True)


class StorageRelay:
    """
    Moves remote results into the durable store and mints signed URLs.

    Only https URLs on the configured host allow-list are ever fetched.
    """

    def __init__(
        self,
        blob_store: BlobStoreProtocol,
        http_client: httpx.AsyncClient,
        logger: LoggerProtocol,
        config: Optional[PipelineConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._blob_store = blob_store
        self._http_client = http_client
        self._logger = logger
        self._config = config or PipelineConfig()
        self._clock = clock
        self._allowed_hosts = frozenset(
            host.lower() for host in self._config.allowed_source_hosts
        )
        self._allowed_types = frozenset(
            media.lower() for media in self._config.allowed_content_types
        )

    def is_allowed_source(self, url: str) -> bool:
        try:
            parsed = urlparse(url)
            host = parsed.hostname
        except ValueError:
            return False
        return parsed.scheme == "https" and host is not None and host in self._allowed_hosts

    async def relay(
        self,
        result_url: str,
        owner_id: str,
        cancel_token: Optional[CancellationToken] = None,
    ) -> str:
        """
        Download ``result_url`` and store it under ``{owner_id}/{generated name}``.

        Returns:
            The storage path of the uploaded object

        Raises:
            RelayError: On a rejected source, download, content type or upload failure
        """
        if not self.is_allowed_source(result_url):
            raise RelayError(RelayErrorCode.INVALID_SOURCE, "Invalid source URL")

        context = LogContext(
            operation="relay", component="storage_relay", owner_id=owner_id
        )
        scratch_path: Optional[str] = None
        try:
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            scratch_path = self._new_scratch_file()
            content_type = await self._download(result_url, scratch_path)
            data = await asyncio.to_thread(Path(scratch_path).read_bytes)

            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            storage_path = f"{owner_id}/{generate_storage_name(self._clock())}"
            try:
                await self._blob_store.upload(storage_path, data, content_type)
            except StorageError as exc:
                raise RelayError(RelayErrorCode.UPLOAD_FAILED, str(exc)) from exc

            self._logger.info(
                "Asset stored",
                context.with_metadata(storage_path=storage_path),
                byte_size=len(data),
                content_type=content_type,
            )
            return storage_path
        except OSError as exc:
            raise RelayError(
                RelayErrorCode.DOWNLOAD_FAILED, f"Scratch file error: {exc}"
            ) from exc
        finally:
            if scratch_path is not None:
                await self._cleanup_scratch(scratch_path)

    async def mint_signed_url(self, storage_path: str) -> StorageRecord:
        """Signed URL valid for exactly the configured TTL from now."""
        ttl = self._config.signed_url_ttl
        minted_at = self._clock()
        try:
            signed_url = await self._blob_store.create_signed_url(storage_path, ttl)
        except StorageError as exc:
            raise RelayError(RelayErrorCode.SIGNING_FAILED, str(exc)) from exc
        return StorageRecord(
            storage_path=storage_path,
            signed_url=signed_url,
            expires_at=datetime.fromtimestamp(minted_at + ttl, tz=timezone.utc),
        )

    async def remove(self, storage_path: str) -> None:
        """Compensating delete; failures are logged and never raised."""
        try:
            await self._blob_store.remove(storage_path)
        except Exception as exc:  # noqa: BLE001
            self._logger.error(
                "Compensating removal failed",
                LogContext(operation="remove", component="storage_relay"),
                storage_path=storage_path,
                error=str(exc),
            )
        else:
            self._logger.info("Removed stored asset", storage_path=storage_path)

    async def persist_result(
        self,
        result: ProcessingResult,
        owner_id: str,
        cancel_token: Optional[CancellationToken] = None,
    ) -> PersistedAsset:
        """
        Store the original (required) and processed (optional) assets.

        A failed processed-asset relay keeps the original only. A signing
        failure keeps the uploads and leaves ``display`` unset, since
        ``mint_signed_url`` can mint again later. Cancellation removes what
        was already uploaded before re-raising.
        """
        original_path = await self.relay(result.original_asset_url, owner_id, cancel_token)
        uploaded = [original_path]
        processed_path: Optional[str] = None

        try:
            if (
                result.processed_asset_url
                and result.processed_asset_url != result.original_asset_url
            ):
                try:
                    processed_path = await self.relay(
                        result.processed_asset_url, owner_id, cancel_token
                    )
                    uploaded.append(processed_path)
                except RelayError as exc:
                    self._logger.warning(
                        "Processed asset relay failed, keeping original only",
                        code=exc.code.value,
                        error=str(exc),
                    )
        except ProcessingError:
            for path in uploaded:
                await self.remove(path)
            raise

        display_path = processed_path or original_path
        display: Optional[StorageRecord] = None
        try:
            display = await self.mint_signed_url(display_path)
        except RelayError as exc:
            self._logger.warning(
                "Display URL signing failed, keeping stored assets",
                storage_path=display_path,
                code=exc.code.value,
                error=str(exc),
            )

        return PersistedAsset(
            original_path=original_path, processed_path=processed_path, display=display
        )

    def _new_scratch_file(self) -> str:
        fd, path = tempfile.mkstemp(
            prefix="upload_", suffix=".jpg", dir=self._config.scratch_dir
        )
        os.close(fd)
        return path

    def _check_content_type(self, header: Optional[str]) -> str:
        """Media type to store with; only a declared type is validated."""
        if not header:
            return DEFAULT_CONTENT_TYPE
        media_type = header.split(";")[0].strip().lower()
        if media_type not in self._allowed_types:
            raise RelayError(
                RelayErrorCode.INVALID_CONTENT_TYPE, f"Invalid image type: {media_type}"
            )
        return media_type

    async def _download(self, url: str, scratch_path: str) -> str:
        try:
            async with self._http_client.stream("GET", url) as response:
                if response.status_code != 200:
                    raise RelayError(
                        RelayErrorCode.DOWNLOAD_FAILED,
                        f"Image download failed with HTTP {response.status_code}",
                    )
                content_type = self._check_content_type(
                    response.headers.get("content-type")
                )
                with open(scratch_path, "wb") as handle:
                    async for chunk in response.aiter_bytes():
                        handle.write(chunk)
        except httpx.HTTPError as exc:
            raise RelayError(RelayErrorCode.DOWNLOAD_FAILED, str(exc)) from exc
        return content_type

    async def _cleanup_scratch(self, scratch_path: str) -> None:
        with best_effort("scratch cleanup", self._logger):
            await asyncio.to_thread(_remove_file, scratch_path)
