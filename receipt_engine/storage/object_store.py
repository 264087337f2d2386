from __future__ import annotations

import asyncio
import logging
import time
from functools import partial
from pathlib import Path
from typing import Protocol

import boto3
from botocore.exceptions import ClientError

from receipt_engine.core.config import Settings
from receipt_engine.core.errors import ObjectNotFound

logger = logging.getLogger(__name__)

_MISSING_CODES = {"NoSuchKey", "404", "NotFound"}


class ObjectStore(Protocol):
    async def download(self, path: str) -> bytes: ...

    async def upload(self, path: str, data: bytes) -> None: ...


class LocalObjectStore:
    def __init__(self, root: Path) -> None:
        self._root = root

    def _target(self, path: str) -> Path:
        target = (self._root / path).resolve()
        if self._root.resolve() not in target.parents:
            raise ObjectNotFound(f"Object path escapes storage root: {path}")
        return target

    async def download(self, path: str) -> bytes:
        target = self._target(path)
        if not target.is_file():
            raise ObjectNotFound(f"Object not found: {path}")
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, target.read_bytes)

    async def upload(self, path: str, data: bytes) -> None:
        target = self._target(path)
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, _write_file, target, data)
        logger.info("object_uploaded", extra={"backend": "local", "key": path, "byte_size": len(data)})


def _write_file(target: Path, data: bytes) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(data)


class S3ObjectStore:
    def __init__(
        self,
        bucket: str,
        *,
        region: str | None = None,
        endpoint_url: str | None = None,
        client=None,
    ) -> None:
        self._bucket = bucket
        if client is None:
            session = boto3.session.Session(region_name=region or "us-east-1")
            client = session.client("s3", endpoint_url=endpoint_url or None)
        self._client = client

    def _get(self, key: str) -> bytes:
        resp = self._client.get_object(Bucket=self._bucket, Key=key)
        return resp["Body"].read()

    def _put(self, key: str, data: bytes) -> None:
        self._client.put_object(Bucket=self._bucket, Key=key, Body=data)

    async def download(self, path: str) -> bytes:
        t0 = time.monotonic()
        loop = asyncio.get_running_loop()
        try:
            data = await loop.run_in_executor(None, partial(self._get, path))
        except ClientError as exc:
            code = (exc.response.get("Error") or {}).get("Code")
            logger.warning("object_download_failed", extra={"backend": "s3", "key": path, "error_code": code})
            if code in _MISSING_CODES:
                raise ObjectNotFound(f"Object not found: {path}") from exc
            raise
        logger.info(
            "object_downloaded",
            extra={
                "backend": "s3",
                "key": path,
                "byte_size": len(data),
                "duration_ms": int((time.monotonic() - t0) * 1000),
            },
        )
        return data

    async def upload(self, path: str, data: bytes) -> None:
        t0 = time.monotonic()
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, partial(self._put, path, data))
        except ClientError as exc:
            code = (exc.response.get("Error") or {}).get("Code")
            logger.warning("object_upload_failed", extra={"backend": "s3", "key": path, "error_code": code})
            raise
        logger.info(
            "object_uploaded",
            extra={
                "backend": "s3",
                "key": path,
                "byte_size": len(data),
                "duration_ms": int((time.monotonic() - t0) * 1000),
            },
        )


def object_store_from_settings(cfg: Settings) -> ObjectStore:
    if cfg.storage_backend == "s3":
        if not cfg.s3_bucket:
            raise ValueError("S3_BUCKET must be set when STORAGE_BACKEND=s3")
        return S3ObjectStore(cfg.s3_bucket, region=cfg.s3_region, endpoint_url=cfg.s3_endpoint_url)
    return LocalObjectStore(cfg.local_storage_path)
