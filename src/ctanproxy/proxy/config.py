"""Proxy configuration.

``ProxyConfig`` is built once at startup (from CLI arguments and/or a YAML
file) and handed to the server; it is frozen so nothing can mutate the alias
table or cache versions at runtime.
"""

from __future__ import annotations

import dataclasses
import logging
import os
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional

import yaml

from ..constants import Constants, StoreBackend

logger = logging.getLogger(__name__)


def _frozen_aliases(aliases: Optional[Mapping[str, str]] = None) -> Mapping[str, str]:
    return MappingProxyType(dict(Constants.BOOTSTRAP_ALIASES if aliases is None else aliases))


@dataclass(frozen=True)
class ProxyConfig:
    """Configuration for the proxy server."""

    host: str = "127.0.0.1"
    port: int = 8080
    allow_external: bool = False
    packages_host: str = Constants.PACKAGES_HOST
    ctan_host: str = Constants.CTAN_HOST
    registry_url: str = Constants.REGISTRY_URL_CTAN
    mirror_base: str = Constants.MIRROR_URL_CTAN
    texlive_archive_base: str = Constants.TEXLIVE_ARCHIVE_BASE
    user_agent: str = Constants.USER_AGENT
    timeout: int = Constants.REQUEST_TIMEOUT
    edge_cache_version: str = Constants.EDGE_CACHE_VERSION
    ctan_cache_version: str = Constants.CTAN_CACHE_VERSION
    derive_cache_version: bool = False
    edge_cache_max_bytes: int = Constants.EDGE_CACHE_MAX_BYTES
    tree_root: str = Constants.TREE_ROOT
    bootstrap_aliases: Mapping[str, str] = field(default_factory=_frozen_aliases)
    store_backend: str = StoreBackend.LOCAL.value
    store_path: str = Constants.DEFAULT_STORE_PATH
    s3_bucket: Optional[str] = None
    s3_endpoint_url: Optional[str] = None
    s3_region: Optional[str] = None

    def __post_init__(self) -> None:
        # Re-wrap so a plain dict passed by a caller cannot be mutated later.
        object.__setattr__(self, "bootstrap_aliases", _frozen_aliases(self.bootstrap_aliases))
        object.__setattr__(self, "registry_url", self.registry_url.rstrip("/"))
        object.__setattr__(self, "mirror_base", self.mirror_base.rstrip("/"))
        object.__setattr__(self, "texlive_archive_base", self.texlive_archive_base.rstrip("/"))
        object.__setattr__(self, "tree_root", "/" + self.tree_root.strip("/"))
        valid_backends = {backend.value for backend in StoreBackend}
        if self.store_backend not in valid_backends:
            raise ValueError(
                f"Unknown store backend {self.store_backend!r}; expected one of {sorted(valid_backends)}"
            )
        if self.store_backend == StoreBackend.S3.value and not self.s3_bucket:
            raise ValueError("The s3 store backend requires s3_bucket")

    def replace(self, **changes: Any) -> "ProxyConfig":
        """Return a copy with ``changes`` applied."""
        return dataclasses.replace(self, **changes)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ProxyConfig":
        """Create config from a mapping, ignoring unknown keys.

        Args:
            data: Mapping whose keys mirror the field names. A nested
                ``proxy`` section takes precedence over top-level keys.

        Returns:
            ProxyConfig instance.
        """
        section = data["proxy"] if isinstance(data.get("proxy"), Mapping) else data
        known = {f.name for f in dataclasses.fields(cls)}
        values = {key: value for key, value in section.items() if key in known}
        unknown = sorted(set(section) - known)
        if unknown:
            logger.warning("Ignoring unknown config keys: %s", ", ".join(unknown))
        return cls(**values)

    @classmethod
    def from_file(cls, path: str) -> "ProxyConfig":
        """Load config from a YAML (or JSON, which YAML parses) file.

        Raises:
            FileNotFoundError: If ``path`` does not exist.
            ValueError: If the document is not valid YAML or not a mapping.
        """
        if not os.path.isfile(path):
            raise FileNotFoundError(path)
        with open(path, "r", encoding="utf-8") as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as exc:
                raise ValueError(f"Config file {path} is not valid YAML: {exc}") from exc
        if data is None:
            data = {}
        if not isinstance(data, Mapping):
            raise ValueError(f"Config file {path} must contain a mapping")
        return cls.from_mapping(data)

    @classmethod
    def from_args(cls, args: Any, base: Optional["ProxyConfig"] = None) -> "ProxyConfig":
        """Create config from CLI arguments.

        Arguments left unset keep the value from ``base`` (or the defaults).

        Args:
            args: Parsed CLI arguments namespace.
            base: Optional config loaded from a file.

        Returns:
            ProxyConfig instance.
        """
        config = base or cls()
        overrides: Dict[str, Any] = {}
        for attr, name in (
            ("PROXY_HOST", "host"),
            ("PROXY_PORT", "port"),
            ("STORE_BACKEND", "store_backend"),
            ("STORE_PATH", "store_path"),
            ("S3_BUCKET", "s3_bucket"),
            ("S3_ENDPOINT", "s3_endpoint_url"),
        ):
            value = getattr(args, attr, None)
            if value is not None:
                overrides[name] = value
        if getattr(args, "ALLOW_EXTERNAL", False):
            overrides["allow_external"] = True
        return config.replace(**overrides) if overrides else config
