"""Request routing.

Routing is a pure function of the method, hostname and path: the hostname
picks one of three services (object host, CTAN host, path-based default)
and the path picks the handler within it.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from ..constants import Constants


class RouteKind(Enum):
    PREFLIGHT = "preflight"
    HEALTH = "health"
    DESCRIPTOR = "descriptor"
    OBJECT = "object"
    PACKAGE = "package"
    PACKAGE_INFO = "package_info"
    TEXLIVE = "texlive"
    STATIC_ASSET = "static_asset"
    NOT_FOUND = "not_found"


class Service(Enum):
    PACKAGES = "packages"
    CTAN = "ctan"
    DEFAULT = "default"


@dataclass(frozen=True)
class Route:
    """Handler selection for one request.

    Attributes:
        kind: Which handler serves the request.
        service: Which logical service the hostname selected.
        argument: Object key or package name, when the route takes one.
    """

    kind: RouteKind
    service: Service = Service.DEFAULT
    argument: Optional[str] = None


_API_ROUTES = (
    (re.compile(r"^/api/fetch/(.+)$"), RouteKind.PACKAGE),
    (re.compile(r"^/api/texlive/(.+)$"), RouteKind.TEXLIVE),
    (re.compile(r"^/api/ctan-pkg/(.+)$"), RouteKind.PACKAGE_INFO),
)


def select_service(hostname: str, config: Any) -> Service:
    """Pick the logical service for a hostname.

    The packages host wins over the CTAN host when both markers appear.
    """
    hostname = (hostname or "").lower()
    if hostname == config.packages_host or Constants.PACKAGES_HOST_MARKER in hostname:
        return Service.PACKAGES
    if hostname == config.ctan_host or Constants.CTAN_HOST_MARKER in hostname:
        return Service.CTAN
    return Service.DEFAULT


def route_request(method: str, hostname: str, path: str, config: Any) -> Route:
    """Map a request line plus hostname to a Route."""
    service = select_service(hostname, config)
    if method.upper() == "OPTIONS":
        return Route(RouteKind.PREFLIGHT, service)

    if service is Service.PACKAGES:
        key = path[1:] if path.startswith("/") else path
        if key in ("", "health"):
            return Route(RouteKind.HEALTH, service)
        return Route(RouteKind.OBJECT, service, key)

    if service is Service.CTAN:
        name = path[1:] if path.startswith("/") else path
        if name.startswith("fetch/"):
            name = name[len("fetch/"):]
        if name in ("", "health"):
            return Route(RouteKind.HEALTH, service)
        return Route(RouteKind.PACKAGE, service, name)

    if path.startswith("/bundles/"):
        return Route(RouteKind.OBJECT, service, path[len("/bundles/"):])
    if path.startswith("/wasm/"):
        return Route(RouteKind.OBJECT, service, "wasm/" + path[len("/wasm/"):])
    for pattern, kind in _API_ROUTES:
        match = pattern.match(path)
        if match:
            return Route(kind, service, match.group(1))
    if path == "/xzwasm.js":
        return Route(RouteKind.STATIC_ASSET, service)
    if path in ("/", "/health"):
        return Route(RouteKind.DESCRIPTOR, service)
    return Route(RouteKind.NOT_FOUND, service)
