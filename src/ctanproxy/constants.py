"""Constants used in the project."""

from enum import Enum


class ExitCodes(Enum):
    """Exit codes for the program.

    Args:
        Enum (int): Exit codes for the program.
    """

    SUCCESS = 0
    FILE_ERROR = 1
    USAGE_ERROR = 2


class StoreBackend(Enum):
    """Object store backends supported by the proxy."""

    MEMORY = "memory"
    LOCAL = "local"
    S3 = "s3"


class Constants:  # pylint: disable=too-few-public-methods
    """General constants used in the project.
    Data holder for configuration constants; not intended to provide behavior.
    """

    REGISTRY_URL_CTAN = "https://ctan.org/json/2.0/pkg"
    MIRROR_URL_CTAN = "https://mirrors.ctan.org"
    TEXLIVE_ARCHIVE_BASE = (
        "https://ftp.tu-chemnitz.de/pub/tug/historic/systems/texlive/2023/tlnet-final/archive"
    )
    USER_AGENT = "ctanproxy/1.0"
    REQUEST_TIMEOUT = 30  # Timeout in seconds for all upstream requests

    PACKAGES_HOST = "packages.example.org"
    CTAN_HOST = "ctan-proxy.example.org"
    PACKAGES_HOST_MARKER = "packages"
    CTAN_HOST_MARKER = "ctan"
    SERVICE_NAME = "ctanproxy-api"

    # Bump to invalidate every edge-cached object response.
    EDGE_CACHE_VERSION = "v22"
    # Bump whenever the TDS path mapping changes.
    CTAN_CACHE_VERSION = "v5"
    EDGE_CACHE_PARAM = "_cv"
    EDGE_CACHE_MAX_BYTES = 256 * 1024 * 1024

    CTAN_CACHE_PREFIX = "ctan-cache"
    TEXLIVE_CACHE_PREFIX = "texlive-cache"
    STATIC_ASSET_KEY = "xzwasm.js.br"

    TREE_ROOT = "/texlive/texmf-dist"

    NAME_MIN_LENGTH = 2
    NAME_MAX_LENGTH = 50

    SHORT_CACHE_CONTROL = "public, max-age=300"
    IMMUTABLE_CACHE_CONTROL = "public, max-age=31536000, immutable"

    BOOTSTRAP_ALIASES = {
        "etex": "etex-pkg",
        "tikz": "pgf",
    }

    CORS_HEADERS = {
        "Access-Control-Allow-Origin": "*",
        "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
        "Access-Control-Allow-Headers": "Content-Type",
    }

    LOG_FORMAT = "[%(levelname)s] %(message)s"
    ENV_LOG_LEVEL = "CTANPROXY_LOG_LEVEL"
    DEFAULT_STORE_PATH = ".ctanproxy-store"
