"""Durable object store backends.

The object store is the long-lived cache plane: processed package JSON under
``ctan-cache/<version>/`` and raw TeX Live archives under ``texlive-cache/``,
plus the bundle/WASM objects served verbatim by the packages host.

Writes are atomic per key (last writer wins), so concurrent misses for the
same package never leave a partially written object behind.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import boto3
from botocore.exceptions import ClientError

from ..constants import StoreBackend
from .errors import ValidationError

logger = logging.getLogger(__name__)

_MISSING_CODES = {"404", "NoSuchKey", "NotFound"}


@dataclass(frozen=True)
class StoredObject:
    """A single object read from the store."""

    key: str
    body: bytes
    content_type: Optional[str] = None
    content_encoding: Optional[str] = None

    @property
    def size(self) -> int:
        return len(self.body)


def sanitize_key(key: str) -> str:
    """Reject keys that could escape the store namespace.

    Raises:
        ValidationError: If the key is empty or has ``..``/empty segments.
    """
    cleaned = key.lstrip("/")
    segments = cleaned.split("/")
    if not cleaned or any(segment in ("", ".", "..") for segment in segments):
        raise ValidationError("Invalid object key")
    return cleaned


class ObjectStore:
    """Interface shared by all object store backends."""

    async def get(self, key: str) -> Optional[StoredObject]:  # pragma: no cover - interface
        raise NotImplementedError

    async def put(
        self,
        key: str,
        body: bytes,
        content_type: Optional[str] = None,
        content_encoding: Optional[str] = None,
    ) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def status(self) -> Dict[str, Any]:  # pragma: no cover - interface
        raise NotImplementedError


class MemoryObjectStore(ObjectStore):
    """Process-local store, used for development and tests."""

    def __init__(self) -> None:
        self._objects: Dict[str, StoredObject] = {}

    async def get(self, key: str) -> Optional[StoredObject]:
        return self._objects.get(sanitize_key(key))

    async def put(
        self,
        key: str,
        body: bytes,
        content_type: Optional[str] = None,
        content_encoding: Optional[str] = None,
    ) -> None:
        key = sanitize_key(key)
        self._objects[key] = StoredObject(key, bytes(body), content_type, content_encoding)

    def keys(self):
        return sorted(self._objects)

    def status(self) -> Dict[str, Any]:
        return {"backend": "memory", "objects": len(self._objects)}


class LocalObjectStore(ObjectStore):
    """Filesystem store.

    Object bodies live under ``<root>/objects/<key>`` and their content
    metadata under ``<root>/meta/<key>.json``.
    """

    def __init__(self, root: str):
        self._root = Path(root)
        self._objects = self._root / "objects"
        self._meta = self._root / "meta"

    def _resolve(self, base: Path, key: str, suffix: str = "") -> Path:
        base = base.resolve()
        candidate = base.joinpath(*sanitize_key(key).split("/"))
        if suffix:
            candidate = candidate.with_name(candidate.name + suffix)
        resolved = candidate.resolve(strict=False)
        if base not in resolved.parents:
            raise ValidationError("Invalid object key")
        return resolved

    @staticmethod
    def _atomic_write(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    async def get(self, key: str) -> Optional[StoredObject]:
        path = self._resolve(self._objects, key)
        if not path.is_file():
            return None
        body = path.read_bytes()
        meta: Dict[str, Any] = {}
        meta_path = self._resolve(self._meta, key, ".json")
        if meta_path.is_file():
            try:
                meta = json.loads(meta_path.read_text(encoding="utf-8"))
            except (OSError, ValueError):
                logger.warning("Unreadable metadata for %s; serving without it", key)
        return StoredObject(
            sanitize_key(key),
            body,
            meta.get("content_type"),
            meta.get("content_encoding"),
        )

    async def put(
        self,
        key: str,
        body: bytes,
        content_type: Optional[str] = None,
        content_encoding: Optional[str] = None,
    ) -> None:
        meta = {"content_type": content_type, "content_encoding": content_encoding}
        self._atomic_write(
            self._resolve(self._meta, key, ".json"),
            json.dumps(meta).encode("utf-8"),
        )
        self._atomic_write(self._resolve(self._objects, key), bytes(body))

    def status(self) -> Dict[str, Any]:
        self._root.mkdir(parents=True, exist_ok=True)
        return {
            "backend": "local",
            "storage_path": str(self._root),
            "writable": os.access(self._root, os.W_OK),
        }


class S3ObjectStore(ObjectStore):
    """S3-compatible store (AWS S3, Cloudflare R2, MinIO).

    boto3 is synchronous, so every call runs in a worker thread.
    """

    def __init__(
        self,
        bucket: str,
        endpoint_url: Optional[str] = None,
        region: Optional[str] = None,
        client: Any = None,
    ):
        self._bucket = bucket
        self._endpoint_url = endpoint_url
        if client is None:
            session = boto3.session.Session()
            client_args = {"endpoint_url": endpoint_url, "region_name": region}
            client = session.client("s3", **{k: v for k, v in client_args.items() if v})
        self._client = client

    async def get(self, key: str) -> Optional[StoredObject]:
        key = sanitize_key(key)
        try:
            response = await asyncio.to_thread(
                self._client.get_object, Bucket=self._bucket, Key=key
            )
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code", "") in _MISSING_CODES:
                return None
            raise
        body = await asyncio.to_thread(response["Body"].read)
        return StoredObject(
            key,
            body,
            response.get("ContentType"),
            response.get("ContentEncoding"),
        )

    async def put(
        self,
        key: str,
        body: bytes,
        content_type: Optional[str] = None,
        content_encoding: Optional[str] = None,
    ) -> None:
        kwargs: Dict[str, Any] = {"Bucket": self._bucket, "Key": sanitize_key(key), "Body": bytes(body)}
        if content_type:
            kwargs["ContentType"] = content_type
        if content_encoding:
            kwargs["ContentEncoding"] = content_encoding
        await asyncio.to_thread(self._client.put_object, **kwargs)

    def status(self) -> Dict[str, Any]:
        return {"backend": "s3", "bucket": self._bucket, "endpoint": self._endpoint_url}


def create_object_store(config: Any) -> ObjectStore:
    """Build the store selected by ``config.store_backend``."""
    backend = StoreBackend(config.store_backend)
    if backend is StoreBackend.MEMORY:
        return MemoryObjectStore()
    if backend is StoreBackend.S3:
        return S3ObjectStore(
            config.s3_bucket,
            endpoint_url=config.s3_endpoint_url,
            region=config.s3_region,
        )
    return LocalObjectStore(config.store_path)
