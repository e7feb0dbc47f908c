"""Raw TeX Live archive passthrough.

Serves ``<name>.tar.xz`` from the version-pinned TeX Live 2023 archive for
clients that decompress and parse archives themselves. Bytes are cached in
the object store unmodified; nothing is decoded here.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from ..common.logging_utils import extra_context
from .cache import CacheKeys
from .errors import NotFoundError, UpstreamError
from .request_parser import validate_package_name
from .store import ObjectStore
from .upstream import UpstreamClient

logger = logging.getLogger(__name__)

XZ_CONTENT_TYPE = "application/x-xz"


@dataclass(frozen=True)
class RawArchive:
    body: bytes
    cache_hit: bool
    content_type: str = XZ_CONTENT_TYPE


class TexLivePassthrough:
    """Cache-only proxy for the TeX Live archive."""

    def __init__(self, store: ObjectStore, upstream: UpstreamClient, archive_base: str, keys: CacheKeys):
        self._store = store
        self._upstream = upstream
        self._archive_base = archive_base.rstrip("/")
        self._keys = keys

    async def fetch(self, name: str) -> RawArchive:
        """Return the raw archive for ``name``.

        Raises:
            ValidationError: Malformed name.
            NotFoundError: The archive has no such package.
            UpstreamError: Any other upstream failure; there is no further
                fallback on this path.
        """
        validate_package_name(name)
        key = self._keys.raw_archive(name)

        cached = await self._store.get(key)
        if cached is not None:
            logger.info("TeX Live cache hit for %s", name, extra=extra_context(event="cache_hit", component="passthrough", key=key))
            return RawArchive(body=cached.body, cache_hit=True)

        url = f"{self._archive_base}/{name}.tar.xz"
        logger.info("Fetching TeX Live archive for %s", name)
        response = await self._upstream.fetch(url, context="texlive")
        if response.status == 404:
            raise NotFoundError("Package not found in TeX Live 2023")
        if not response.ok:
            raise UpstreamError(f"TeX Live fetch failed: {response.status}")

        await self._store.put(key, response.body, content_type=XZ_CONTENT_TYPE)
        logger.info(
            "Cached %s.tar.xz (%.1f KB)",
            name,
            len(response.body) / 1024,
            extra=extra_context(event="cache_store", component="passthrough", key=key),
        )
        return RawArchive(body=response.body, cache_hit=False)
