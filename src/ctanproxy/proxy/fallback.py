"""Ordered archive fallback chain.

Stages, stopping at the first one that yields files:

1. ``INSTALL``  - ``<mirror>/install<install_path>`` (TDS zip)
2. ``TDS``      - ``<mirror><ctan_path>.tds.zip`` when there is no install path
3. ``TDS_ALT``  - ``<mirror><ctan_path>.tds.zip`` after ``INSTALL`` failed
4. ``SOURCE``   - ``<mirror><ctan_path>.zip`` of the canonical package

Upstream failures are logged and absorbed here. Decoder exceptions are not.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterator, List, Optional, Tuple

from ..common.logging_utils import extra_context, safe_url
from ..constants import Constants
from .errors import NotFoundError, UpstreamError
from .metadata import MetadataResolver, PackageMetadata, Resolution
from .tds import ExtractedFileSet, decode_archive
from .upstream import UpstreamClient

logger = logging.getLogger(__name__)


class FallbackStage(Enum):
    """Archive sources, in the order they are tried."""

    INSTALL = "ctan-install"
    TDS = "ctan-tds"
    TDS_ALT = "ctan-tds-alt"
    SOURCE = "ctan-source"


@dataclass(frozen=True)
class ChainResult:
    files: ExtractedFileSet
    stage: FallbackStage
    url: str
    attempts: Tuple[FallbackStage, ...] = ()


Decoder = Callable[[bytes, str], Optional[ExtractedFileSet]]


def tds_candidates(mirror_base: str, metadata: PackageMetadata) -> Iterator[Tuple[FallbackStage, str]]:
    """TDS-family URLs for ``metadata``, in order."""
    if metadata.install_path:
        yield FallbackStage.INSTALL, f"{mirror_base}/install{metadata.install_path}"
        if metadata.ctan_path:
            yield FallbackStage.TDS_ALT, f"{mirror_base}{metadata.ctan_path}.tds.zip"
    elif metadata.ctan_path:
        yield FallbackStage.TDS, f"{mirror_base}{metadata.ctan_path}.tds.zip"


def source_candidate(mirror_base: str, metadata: Optional[PackageMetadata]) -> Optional[str]:
    if metadata and metadata.ctan_path:
        return f"{mirror_base}{metadata.ctan_path}.zip"
    return None


class ArchiveFallbackChain:
    """Tries archive sources until one decodes to a non-empty file set."""

    def __init__(
        self,
        upstream: UpstreamClient,
        metadata: MetadataResolver,
        mirror_base: str = Constants.MIRROR_URL_CTAN,
        tree_root: str = Constants.TREE_ROOT,
        decoder: Optional[Decoder] = None,
    ):
        self._upstream = upstream
        self._metadata = metadata
        self._mirror_base = mirror_base.rstrip("/")
        self._decoder = decoder or (lambda data, name: decode_archive(data, name, tree_root=tree_root))

    async def _download(
        self, stage: FallbackStage, url: str, package: str, attempts: List[FallbackStage]
    ) -> Optional[bytes]:
        logger.info(
            "Trying %s: %s",
            stage.value,
            safe_url(url),
            extra=extra_context(event="fallback_attempt", component="fallback", stage=stage.value, package=package),
        )
        attempts.append(stage)
        try:
            response = await self._upstream.fetch(url, context=stage.value)
        except UpstreamError:
            return None
        if not response.ok:
            logger.info(
                "%s failed with status %s",
                stage.value,
                response.status,
                extra=extra_context(event="fallback_miss", component="fallback", stage=stage.value, status_code=response.status),
            )
            return None
        return response.body

    async def _attempt(
        self, stage: FallbackStage, url: str, package: str, attempts: List[FallbackStage]
    ) -> Optional[ChainResult]:
        data = await self._download(stage, url, package, attempts)
        if data is None:
            return None
        files = self._decoder(data, package)
        if files is None:
            logger.info("%s archive for %s had no installable files", stage.value, package)
            return None
        return ChainResult(files=files, stage=stage, url=url, attempts=tuple(attempts))

    async def run(self, resolution: Resolution) -> ChainResult:
        """Run the chain for a resolved package.

        Raises:
            NotFoundError: When every stage failed.
            ArchiveError: When a downloaded archive is corrupt.
        """
        attempts: List[FallbackStage] = []
        if resolution.parent == resolution.canonical:
            parent_meta = resolution.metadata
        else:
            parent_meta = await self._metadata.lookup(resolution.parent)

        if parent_meta is not None:
            for stage, url in tds_candidates(self._mirror_base, parent_meta):
                result = await self._attempt(stage, url, resolution.parent, attempts)
                if result is not None:
                    return result

        url = source_candidate(self._mirror_base, resolution.metadata)
        if url is not None:
            result = await self._attempt(FallbackStage.SOURCE, url, resolution.canonical, attempts)
            if result is not None:
                return result

        logger.info(
            "No archive source worked for %s",
            resolution.requested,
            extra=extra_context(event="fallback_exhausted", component="fallback", attempts=len(attempts)),
        )
        raise NotFoundError("Package not found")
