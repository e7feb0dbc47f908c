"""Package proxy server using aiohttp."""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import Any, Dict, Optional, Tuple

from aiohttp import web

from ..common.logging_utils import extra_context
from ..constants import Constants
from .cache import BackgroundTasks, CacheKeys, EdgeCache, cache_control_for
from .config import ProxyConfig
from .errors import InternalError, NotFoundError, ProxyError
from .fallback import ArchiveFallbackChain
from .metadata import MetadataResolver
from .passthrough import TexLivePassthrough
from .resolver import JSON_CONTENT_TYPE, PackageResolver
from .router import Route, RouteKind, Service, route_request
from .store import ObjectStore, StoredObject, create_object_store
from .upstream import UpstreamClient

logger = logging.getLogger(__name__)


def brotli_sibling(key: str) -> Optional[str]:
    """Key of the pre-compressed variant preferred for WASM and bundle data."""
    if key.endswith(".data.gz"):
        return key[: -len(".data.gz")] + ".data.br"
    if key.endswith(".wasm"):
        return key + ".br"
    return None


def object_headers(key: str, obj: StoredObject, brotli: bool) -> Dict[str, str]:
    """Response headers for an object served from the store.

    Keys ending in ``.br`` are sent as opaque octet streams without
    ``Content-Encoding`` so intermediaries do not decompress them; the client
    decodes them itself. A brotli sibling served in place of ``.wasm`` or
    ``.data.gz`` is sent with ``Content-Encoding: br``.
    """
    headers = {"X-Cache": "MISS", "Cache-Control": cache_control_for(key)}
    if key.endswith(".json"):
        content_type = JSON_CONTENT_TYPE
    elif key.endswith(".gz"):
        content_type = "application/gzip"
    elif key.endswith(".br"):
        content_type = "application/octet-stream"
    elif key.endswith(".wasm"):
        content_type = "application/wasm"
    elif key.endswith(".js"):
        content_type = "application/javascript"
    else:
        content_type = obj.content_type or "application/octet-stream"
    headers["Content-Type"] = content_type
    headers["Content-Length"] = str(obj.size)
    if brotli:
        headers["Content-Encoding"] = "br"
    elif obj.content_encoding:
        headers["Content-Encoding"] = obj.content_encoding
    return headers


def _with_cors(response: web.StreamResponse) -> web.StreamResponse:
    for name, value in Constants.CORS_HEADERS.items():
        response.headers.setdefault(name, value)
    return response


@web.middleware
async def error_middleware(request: web.Request, handler) -> web.StreamResponse:
    """Turn every failure into the JSON error envelope and add CORS headers."""
    try:
        response = await handler(request)
    except InternalError as exc:
        logger.error(
            "Internal error serving %s: %s",
            request.path,
            exc,
            extra=extra_context(event="internal_error", component="server"),
        )
        response = web.json_response({"error": "Internal server error"}, status=exc.status)
    except ProxyError as exc:
        response = web.json_response({"error": exc.message}, status=exc.status)
    except web.HTTPException as exc:
        response = web.json_response({"error": exc.reason}, status=exc.status)
    except Exception:  # noqa: BLE001 - outermost boundary, logged
        logger.exception("Unhandled error serving %s", request.path)
        response = web.json_response({"error": "Internal server error"}, status=500)
    return _with_cors(response)


class PackageProxyServer:
    """HTTP front for the package resolution pipeline.

    Serves three logical services picked by hostname: the binary object
    host, the processed CTAN package host, and a path-based default used in
    development.
    """

    def __init__(
        self,
        config: ProxyConfig,
        store: Optional[ObjectStore] = None,
        upstream: Optional[UpstreamClient] = None,
        edge_cache: Optional[EdgeCache] = None,
        background: Optional[BackgroundTasks] = None,
    ):
        """Initialize the proxy server.

        Args:
            config: Server configuration.
            store: Object store; built from ``config`` when omitted.
            upstream: Upstream client; built from ``config`` when omitted.
            edge_cache: Edge cache; built from ``config`` when omitted.
            background: Task set used for edge write-backs.
        """
        self._config = config
        self._app: Optional[web.Application] = None
        self._runner: Optional[web.AppRunner] = None

        self._store = store if store is not None else create_object_store(config)
        self._upstream = upstream or UpstreamClient(user_agent=config.user_agent, timeout=config.timeout)
        self._edge_cache = edge_cache or EdgeCache(max_bytes=config.edge_cache_max_bytes)
        self._background = background or BackgroundTasks()
        self._keys = CacheKeys.from_config(config)

        metadata = MetadataResolver(self._upstream, config.registry_url, config.bootstrap_aliases)
        chain = ArchiveFallbackChain(
            self._upstream,
            metadata,
            mirror_base=config.mirror_base,
            tree_root=config.tree_root,
        )
        self._resolver = PackageResolver(self._store, metadata, chain, self._keys)
        self._passthrough = TexLivePassthrough(
            self._store, self._upstream, config.texlive_archive_base, self._keys
        )
        self._handlers = {
            RouteKind.PREFLIGHT: self._preflight,
            RouteKind.HEALTH: self._health,
            RouteKind.DESCRIPTOR: self._descriptor,
            RouteKind.OBJECT: self._serve_object,
            RouteKind.PACKAGE: self._serve_package,
            RouteKind.PACKAGE_INFO: self._serve_package_info,
            RouteKind.TEXLIVE: self._serve_texlive,
            RouteKind.STATIC_ASSET: self._serve_static_asset,
            RouteKind.NOT_FOUND: self._not_found,
        }

    def _create_app(self) -> web.Application:
        """Create the aiohttp application."""
        app = web.Application(middlewares=[error_middleware])
        app.router.add_route("*", "/{path:.*}", self._dispatch)
        app.on_startup.append(self._on_startup)
        app.on_cleanup.append(self._on_cleanup)
        return app

    async def _on_startup(self, app: web.Application) -> None:
        """Called when the server starts."""
        await self._upstream.start()
        logger.info("Proxy server starting on %s:%s", self._config.host, self._config.port)

    async def _on_cleanup(self, app: web.Application) -> None:
        """Called when the server stops."""
        await self._background.drain()
        await self._upstream.stop()
        logger.info("Proxy server stopped")

    async def _dispatch(self, request: web.Request) -> web.StreamResponse:
        route = route_request(request.method, request.url.host or "", request.path, self._config)
        logger.debug(
            "Request: %s %s -> %s",
            request.method,
            request.path,
            route.kind.value,
            extra=extra_context(event="route", component="server", service=route.service.value),
        )
        return await self._handlers[route.kind](request, route)

    async def _preflight(self, request: web.Request, route: Route) -> web.Response:
        return web.Response(status=200)

    async def _health(self, request: web.Request, route: Route) -> web.Response:
        service = self._config.packages_host if route.service is Service.PACKAGES else self._config.ctan_host
        return web.json_response({"status": "ok", "service": service})

    async def _descriptor(self, request: web.Request, route: Route) -> web.Response:
        return web.json_response({
            "status": "ok",
            "service": Constants.SERVICE_NAME,
            "endpoints": {
                "packages": f"{self._config.packages_host} or /bundles/*",
                "ctan": f"{self._config.ctan_host} or /api/fetch/*",
                "texlive": "/api/texlive/*",
                "ctan_pkg": "/api/ctan-pkg/*",
            },
            "cache": self.cache_stats(),
        })

    async def _not_found(self, request: web.Request, route: Route) -> web.Response:
        raise NotFoundError("Not found")

    async def _load_object(self, key: str) -> Tuple[Optional[StoredObject], bool]:
        sibling = brotli_sibling(key)
        if sibling is not None:
            obj = await self._store.get(sibling)
            if obj is not None:
                return obj, True
        return await self._store.get(key), False

    async def _serve_object(self, request: web.Request, route: Route) -> web.Response:
        """Serve an object-store entry through the edge cache."""
        key = route.argument or ""
        edge_key = self._keys.edge(request.url)
        cached = self._edge_cache.get(edge_key)
        if cached is not None:
            body, headers = cached
            headers["X-Cache"] = "HIT"
            return web.Response(body=body, headers=headers)

        obj, brotli = await self._load_object(key)
        if obj is None:
            raise NotFoundError("Not found")

        headers = object_headers(key, obj, brotli)
        response = web.Response(body=obj.body, headers=headers)
        self._background.spawn(
            self._edge_cache.put(edge_key, obj.body, headers),
            name=f"edge-put:{key}",
        )
        return response

    async def _serve_static_asset(self, request: web.Request, route: Route) -> web.Response:
        obj = await self._store.get(Constants.STATIC_ASSET_KEY)
        if obj is None:
            raise NotFoundError("Not found")
        return web.Response(
            body=obj.body,
            headers={
                "Content-Type": "application/javascript",
                "Content-Encoding": "br",
                "Content-Length": str(obj.size),
                "Cache-Control": Constants.IMMUTABLE_CACHE_CONTROL,
            },
        )

    async def _serve_package(self, request: web.Request, route: Route) -> web.Response:
        payload = await self._resolver.fetch(route.argument or "")
        headers = {
            "Content-Type": JSON_CONTENT_TYPE,
            "Cache-Control": Constants.SHORT_CACHE_CONTROL,
            "X-Cache": "HIT" if payload.cache_hit else "MISS",
        }
        if payload.source:
            headers["X-Source"] = payload.source
        return web.Response(body=payload.body, headers=headers)

    async def _serve_package_info(self, request: web.Request, route: Route) -> web.Response:
        return web.json_response(await self._resolver.info(route.argument or ""))

    async def _serve_texlive(self, request: web.Request, route: Route) -> web.Response:
        archive = await self._passthrough.fetch(route.argument or "")
        return web.Response(
            body=archive.body,
            headers={
                "Content-Type": archive.content_type,
                "Content-Length": str(len(archive.body)),
                "Cache-Control": Constants.IMMUTABLE_CACHE_CONTROL,
                "X-Cache": "HIT" if archive.cache_hit else "MISS",
            },
        )

    def cache_stats(self) -> Dict[str, Any]:
        """Get cache statistics.

        Returns:
            Dict with edge cache and object store stats.
        """
        return {
            "edge_cache": self._edge_cache.stats(),
            "object_store": self._store.status(),
            "pending_writes": self._background.pending,
        }

    async def start(self) -> None:
        """Start the proxy server."""
        self._app = self._create_app()
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()

        site = web.TCPSite(
            self._runner,
            self._config.host,
            self._config.port,
        )
        await site.start()

        logger.info(
            "ctanproxy listening on http://%s:%s",
            self._config.host, self._config.port,
        )
        logger.info("Registry: %s", self._config.registry_url)
        logger.info("Mirror: %s", self._config.mirror_base)
        logger.info("Object store: %s", self._store.status().get("backend"))

    async def stop(self) -> None:
        """Stop the proxy server."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            self._app = None


def run_proxy_server_sync(config: ProxyConfig) -> None:
    """Run the proxy server synchronously.

    Installs signal handlers for SIGTERM and SIGINT for clean shutdown.

    Args:
        config: Server configuration.
    """
    server = PackageProxyServer(config)
    loop = asyncio.new_event_loop()

    async def run():
        await server.start()
        stop_event = asyncio.Event()
        running_loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            running_loop.add_signal_handler(sig, stop_event.set)
        await stop_event.wait()
        logger.info("Shutdown signal received, stopping...")
        await server.stop()

    try:
        loop.run_until_complete(run())
    except KeyboardInterrupt:
        # Fallback for platforms where signal handlers don't work (Windows)
        loop.run_until_complete(server.stop())
    finally:
        loop.close()
        logger.info("Proxy server shutdown complete")
