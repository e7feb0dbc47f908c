"""Processed-package pipeline: object-store read-through around metadata
resolution, the archive fallback chain and the TDS decoder."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from ..common.logging_utils import Timer, extra_context
from .cache import CacheKeys
from .errors import NotFoundError
from .fallback import ArchiveFallbackChain, FallbackStage
from .metadata import MetadataResolver
from .request_parser import validate_package_name
from .store import ObjectStore

logger = logging.getLogger(__name__)

JSON_CONTENT_TYPE = "application/json"


@dataclass(frozen=True)
class PackagePayload:
    """Serialised file set plus where it came from.

    ``stage`` is None for object-store hits.
    """

    body: bytes
    cache_hit: bool
    stage: Optional[FallbackStage] = None

    @property
    def source(self) -> Optional[str]:
        return self.stage.value if self.stage else None


class PackageResolver:
    """Resolves a package name to its serialised ExtractedFileSet."""

    def __init__(
        self,
        store: ObjectStore,
        metadata: MetadataResolver,
        chain: ArchiveFallbackChain,
        keys: CacheKeys,
    ):
        self._store = store
        self._metadata = metadata
        self._chain = chain
        self._keys = keys

    async def fetch(self, requested: str) -> PackagePayload:
        """Return the processed payload for ``requested``.

        Validation happens before any cache or network access. A store hit
        skips the pipeline entirely; a miss runs it and writes the result
        back before returning, under the same key.

        Raises:
            ValidationError: Malformed name.
            NotFoundError: Every fallback stage failed.
            ArchiveError: A downloaded archive was corrupt.
        """
        validate_package_name(requested)
        key = self._keys.processed(requested)

        cached = await self._store.get(key)
        if cached is not None:
            logger.info(
                "Cache hit for %s",
                requested,
                extra=extra_context(event="cache_hit", component="resolver", key=key),
            )
            return PackagePayload(body=cached.body, cache_hit=True)

        logger.info("Cache miss for %s, fetching from CTAN...", requested)
        with Timer() as timer:
            resolution = await self._metadata.resolve(requested)
            result = await self._chain.run(resolution)
            body = result.files.to_json()
            await self._store.put(key, body, content_type=JSON_CONTENT_TYPE)

        logger.info(
            "Cached %s from %s (%.1f KB)",
            requested,
            result.stage.value,
            len(body) / 1024,
            extra=extra_context(
                event="cache_store",
                component="resolver",
                key=key,
                stage=result.stage.value,
                duration_ms=timer.duration_ms(),
            ),
        )
        return PackagePayload(body=body, cache_hit=False, stage=result.stage)

    async def info(self, requested: str) -> dict:
        """Registry metadata for the ``/api/ctan-pkg`` endpoint.

        Raises:
            ValidationError: Malformed name.
            NotFoundError: The registry does not know the package.
        """
        validate_package_name(requested)
        metadata = await self._metadata.lookup(requested)
        if metadata is None:
            raise NotFoundError("Package not found")
        return metadata.to_info()
