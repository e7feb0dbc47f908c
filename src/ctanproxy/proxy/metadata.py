"""CTAN registry lookups.

The registry (``https://ctan.org/json/2.0/pkg/<name>``) tells us where a
package's archives live and which distribution package bundles it. Lookups
never raise: any failure degrades to "no metadata" and the fallback chain
continues with unqualified guesses.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from ..common.logging_utils import extra_context
from .errors import UpstreamError
from .request_parser import parse_package_request
from .upstream import UpstreamClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PackageMetadata:
    """Registry fields relevant to archive selection."""

    name: str
    install_path: Optional[str] = None
    ctan_path: Optional[str] = None
    texlive: Optional[str] = None
    miktex: Optional[str] = None

    @property
    def parent_name(self) -> str:
        """Distribution package to fetch archives for."""
        return self.miktex or self.texlive or self.name

    @property
    def contained_in(self) -> Optional[str]:
        """Distribution package reported by the metadata endpoint."""
        return self.texlive or self.miktex

    @classmethod
    def from_registry(cls, payload: Mapping[str, Any], fallback_name: str) -> "PackageMetadata":
        ctan = payload.get("ctan")
        ctan_path = ctan.get("path") if isinstance(ctan, Mapping) else None

        def _text(value: Any) -> Optional[str]:
            return value if isinstance(value, str) and value else None

        return cls(
            name=_text(payload.get("name")) or fallback_name,
            install_path=_text(payload.get("install")),
            ctan_path=_text(ctan_path),
            texlive=_text(payload.get("texlive")),
            miktex=_text(payload.get("miktex")),
        )

    def to_info(self) -> dict:
        return {
            "name": self.name,
            "contained_in": self.contained_in,
            "ctan_path": self.ctan_path,
        }


@dataclass(frozen=True)
class Resolution:
    """Outcome of resolving a requested name.

    Attributes:
        requested: Name as requested by the client.
        canonical: Name after alias translation.
        parent: Distribution package whose archive should be fetched.
        metadata: Registry metadata for ``canonical``, if the lookup worked.
    """

    requested: str
    canonical: str
    parent: str
    metadata: Optional[PackageMetadata] = None


class MetadataResolver:
    """Maps package names to registry metadata."""

    def __init__(self, upstream: UpstreamClient, registry_url: str, aliases: Mapping[str, str]):
        self._upstream = upstream
        self._registry_url = registry_url.rstrip("/")
        self._aliases = aliases

    def canonical_name(self, name: str) -> str:
        """Translate a name the registry does not index under."""
        return self._aliases.get(name, name)

    def registry_url_for(self, name: str) -> str:
        return f"{self._registry_url}/{name}"

    async def lookup(self, name: str) -> Optional[PackageMetadata]:
        """Query the registry for ``name``.

        Returns:
            Metadata, or None on a non-2xx status, transport failure,
            undecodable body or an ``errors`` payload.
        """
        url = self.registry_url_for(name)
        try:
            response = await self._upstream.fetch(url, context="registry")
        except UpstreamError:
            return None
        if not response.ok:
            logger.info(
                "Registry lookup for %s returned %s",
                name,
                response.status,
                extra=extra_context(event="registry_miss", component="metadata", status_code=response.status),
            )
            return None
        try:
            payload = response.json()
        except ValueError:
            logger.warning("Registry returned invalid JSON for %s", name)
            return None
        if not isinstance(payload, Mapping) or payload.get("errors"):
            logger.info("Registry has no entry for %s", name)
            return None
        return PackageMetadata.from_registry(payload, name)

    async def resolve(self, requested: str) -> Resolution:
        """Resolve a requested name.

        A failed lookup keeps the canonical name as the parent so the
        fallback chain can still try it.
        """
        request = parse_package_request(requested, self._aliases)
        canonical = request.normalized_name
        if request.is_aliased:
            logger.info("Fetching package: %s (via %s)", requested, canonical)
        metadata = await self.lookup(canonical)
        parent = metadata.parent_name if metadata else canonical
        if metadata and parent != canonical:
            logger.info("Registry says %s is part of %s", canonical, parent)
        return Resolution(requested=requested, canonical=canonical, parent=parent, metadata=metadata)
