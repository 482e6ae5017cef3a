"""Concrete collaborators: HTTP transport, S3 blob store, local source, tokens."""

import asyncio
import os
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

import aioboto3
import httpx
from PIL import Image

from .error_handling import classify_transport_error, translate_storage_errors
from .image_utils import MIME_TYPES, get_file_extension
from .models import AcquisitionResult, ProcessingRequest, RawAsset


class HttpProcessingTransport:
    """Posts processing requests to the remote endpoint over httpx."""

    def __init__(self, endpoint_url: str, http_client: httpx.AsyncClient):
        self._endpoint_url = endpoint_url
        self._http_client = http_client

    async def invoke(
        self, request: ProcessingRequest, access_token: str
    ) -> Dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Idempotency-Key": request.idempotency_key,
        }
        try:
            response = await self._http_client.post(
                self._endpoint_url, json=request.to_wire(), headers=headers
            )
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise classify_transport_error(exc) from exc


class S3BlobStore:
    """
    Durable blob storage on an S3-compatible bucket.

    A client is opened per call so the store can be shared by concurrent runs.
    """

    def __init__(
        self,
        bucket: str,
        session: Optional[aioboto3.Session] = None,
        client_kwargs: Optional[Dict[str, Any]] = None,
        cache_control: str = "max-age=3600",
    ):
        self._bucket = bucket
        self._session = session or aioboto3.Session()
        self._client_kwargs = client_kwargs or {}
        self._cache_control = cache_control

    @property
    def bucket(self) -> str:
        return self._bucket

    @translate_storage_errors
    async def upload(self, path: str, data: bytes, content_type: str) -> None:
        async with self._session.client("s3", **self._client_kwargs) as s3:
            await s3.put_object(
                Bucket=self._bucket,
                Key=path,
                Body=data,
                ContentType=content_type,
                CacheControl=self._cache_control,
            )

    @translate_storage_errors
    async def create_signed_url(self, path: str, ttl_seconds: int) -> str:
        async with self._session.client("s3", **self._client_kwargs) as s3:
            return await s3.generate_presigned_url(
                "get_object",
                Params={"Bucket": self._bucket, "Key": path},
                ExpiresIn=ttl_seconds,
            )

    @translate_storage_errors
    async def remove(self, path: str) -> None:
        async with self._session.client("s3", **self._client_kwargs) as s3:
            await s3.delete_object(Bucket=self._bucket, Key=path)


class LocalFileSource:
    """Acquisition source over local file paths; exhausting them reads as a cancel."""

    def __init__(self, paths: Iterable[str]):
        self._paths = iter(paths)

    async def acquire(self) -> AcquisitionResult:
        path = next(self._paths, None)
        if path is None:
            return AcquisitionResult.user_cancelled()
        asset = await asyncio.to_thread(self._describe, Path(path))
        return AcquisitionResult(asset=asset)

    async def read_bytes(self, locator: str) -> bytes:
        return await asyncio.to_thread(Path(locator).read_bytes)

    @staticmethod
    def _describe(path: Path) -> RawAsset:
        stat = path.stat()
        width = height = 0
        try:
            with Image.open(path) as image:
                width, height = image.size
        except (OSError, SyntaxError):
            # Dimensions stay unknown for formats Pillow cannot read (HEIC without a plugin)
            pass
        return RawAsset(
            locator=str(path),
            file_name=path.name,
            width=width,
            height=height,
            mime_type=MIME_TYPES.get(get_file_extension(path.name)),
            byte_size=stat.st_size,
        )


class StaticTokenProvider:
    """Token provider returning a fixed bearer token."""

    def __init__(self, token: Optional[str]):
        self._token = token

    async def get_access_token(self) -> Optional[str]:
        return self._token


class EnvTokenProvider:
    """Token provider reading the bearer token from an environment variable."""

    def __init__(self, variable: str = "CAPTURE_ACCESS_TOKEN"):
        self._variable = variable

    async def get_access_token(self) -> Optional[str]:
        return os.getenv(self._variable) or None
