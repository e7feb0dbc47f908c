"""ctanproxy proxy server package.

This package resolves LaTeX package names against the CTAN registry, fetches
and decodes archives from CTAN mirrors into a TDS layout, and caches the
results in an edge cache and a durable object store.
"""

from .cache import BackgroundTasks, CacheKeys, EdgeCache
from .config import ProxyConfig
from .errors import NotFoundError, ProxyError, UpstreamError, ValidationError
from .fallback import ArchiveFallbackChain, FallbackStage
from .metadata import MetadataResolver, PackageMetadata
from .passthrough import TexLivePassthrough
from .resolver import PackageResolver
from .router import Route, RouteKind, route_request
from .server import PackageProxyServer
from .store import LocalObjectStore, MemoryObjectStore, ObjectStore, S3ObjectStore
from .tds import ExtractedFileSet, decode_archive

__all__ = [
    "ArchiveFallbackChain",
    "BackgroundTasks",
    "CacheKeys",
    "EdgeCache",
    "ExtractedFileSet",
    "FallbackStage",
    "LocalObjectStore",
    "MemoryObjectStore",
    "MetadataResolver",
    "NotFoundError",
    "ObjectStore",
    "PackageMetadata",
    "PackageProxyServer",
    "PackageResolver",
    "ProxyConfig",
    "ProxyError",
    "Route",
    "RouteKind",
    "S3ObjectStore",
    "TexLivePassthrough",
    "UpstreamError",
    "ValidationError",
    "decode_archive",
    "route_request",
]
