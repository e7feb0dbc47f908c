"""Tests for the proxy server."""

import asyncio
import json
from contextlib import asynccontextmanager

import pytest

aiohttp = pytest.importorskip("aiohttp")

from aiohttp import test_utils

from helpers import REGISTRY, TEXLIVE, FakeUpstream, bar_upstream, make_zip

from ctanproxy.proxy.cache import EdgeCache
from ctanproxy.proxy.config import ProxyConfig
from ctanproxy.proxy.server import PackageProxyServer, brotli_sibling, object_headers
from ctanproxy.proxy.store import MemoryObjectStore, StoredObject

PACKAGES = {"Host": "packages.example.org"}
CTAN = {"Host": "ctan-proxy.example.org"}


class _Response:
    def __init__(self, status, headers, body):
        self.status = status
        self.headers = headers
        self.body = body

    def json(self):
        return json.loads(self.body)


@asynccontextmanager
async def _serving(server):
    """Run ``server`` on a test port and yield a request function."""
    async with test_utils.TestServer(server._create_app()) as ts:
        async with aiohttp.ClientSession(auto_decompress=False) as session:

            async def request(path, method="GET", headers=None):
                async with session.request(method, f"http://{ts.host}:{ts.port}{path}", headers=headers) as resp:
                    return _Response(resp.status, resp.headers, await resp.read())

            yield request


def _server(upstream=None, store=None, **kwargs):
    config = ProxyConfig(store_backend="memory")
    return PackageProxyServer(
        config,
        store=store if store is not None else MemoryObjectStore(),
        upstream=upstream or FakeUpstream(),
        **kwargs,
    )


class _FailingEdgeCache(EdgeCache):
    async def put(self, key, body, headers):
        raise RuntimeError("edge write failed")


class _BrokenStore(MemoryObjectStore):
    async def get(self, key):
        raise RuntimeError("disk on fire")


class TestObjectHeaders:
    """Tests for object header selection."""

    def test_brotli_sibling(self):
        assert brotli_sibling("bundles/core.data.gz") == "bundles/core.data.br"
        assert brotli_sibling("wasm/busytex.wasm") == "wasm/busytex.wasm.br"
        assert brotli_sibling("bundles/registry.json") is None

    def test_br_key_is_opaque(self):
        headers = object_headers("bundles/core.data.br", StoredObject("k", b"xx"), brotli=False)
        assert headers["Content-Type"] == "application/octet-stream"
        assert "Content-Encoding" not in headers
        assert headers["Content-Length"] == "2"

    def test_brotli_sibling_sets_encoding(self):
        headers = object_headers("wasm/busytex.wasm", StoredObject("k", b"x"), brotli=True)
        assert headers["Content-Type"] == "application/wasm"
        assert headers["Content-Encoding"] == "br"

    def test_json_gets_short_cache(self):
        headers = object_headers("bundles/registry.json", StoredObject("k", b"{}"), brotli=False)
        assert headers["Content-Type"] == "application/json"
        assert headers["Cache-Control"] == "public, max-age=300"

    def test_stored_metadata_used_for_unknown_extensions(self):
        obj = StoredObject("k", b"x", content_type="text/plain", content_encoding="gzip")
        headers = object_headers("bundles/notes.txt", obj, brotli=False)
        assert headers["Content-Type"] == "text/plain"
        assert headers["Content-Encoding"] == "gzip"


class TestProxyServerBasic:
    """Tests for preflight, health and descriptor endpoints."""

    def test_preflight(self):
        async def _run():
            async with _serving(_server()) as request:
                resp = await request("/api/fetch/amsmath", method="OPTIONS")
            assert resp.status == 200
            assert resp.headers["Access-Control-Allow-Origin"] == "*"
            assert resp.headers["Access-Control-Allow-Methods"] == "GET, POST, OPTIONS"

        asyncio.run(_run())

    def test_descriptor(self):
        async def _run():
            async with _serving(_server()) as request:
                resp = await request("/")
            assert resp.status == 200
            data = resp.json()
            assert data["status"] == "ok"
            assert data["service"] == "ctanproxy-api"
            assert "texlive" in data["endpoints"]
            assert data["cache"]["object_store"]["backend"] == "memory"

        asyncio.run(_run())

    def test_host_health(self):
        async def _run():
            async with _serving(_server()) as request:
                packages = await request("/health", headers=PACKAGES)
                ctan = await request("/", headers=CTAN)
            assert packages.json() == {"status": "ok", "service": "packages.example.org"}
            assert ctan.json() == {"status": "ok", "service": "ctan-proxy.example.org"}

        asyncio.run(_run())

    def test_unknown_path(self):
        async def _run():
            async with _serving(_server()) as request:
                resp = await request("/nope")
            assert resp.status == 404
            assert resp.json() == {"error": "Not found"}
            assert resp.headers["Access-Control-Allow-Origin"] == "*"

        asyncio.run(_run())

    def test_upstream_session_lifecycle(self):
        upstream = FakeUpstream()

        async def _run():
            async with _serving(_server(upstream)) as request:
                await request("/")
                assert upstream.started
            assert not upstream.started

        asyncio.run(_run())


class TestObjectServing:
    """Tests for the packages host."""

    def _store(self):
        store = MemoryObjectStore()
        asyncio.run(store.put("bundles/core.data.gz", b"gzip-bytes"))
        asyncio.run(store.put("bundles/core.data.br", b"brotli-bytes"))
        asyncio.run(store.put("bundles/registry.json", b"{}"))
        asyncio.run(store.put("wasm/busytex.wasm", b"wasm-bytes"))
        return store

    def test_prefers_brotli_sibling(self):
        store = self._store()

        async def _run():
            async with _serving(_server(store=store)) as request:
                resp = await request("/bundles/core.data.gz", headers=PACKAGES)
            assert resp.status == 200
            assert resp.body == b"brotli-bytes"
            assert resp.headers["Content-Encoding"] == "br"
            assert resp.headers["X-Cache"] == "MISS"
            assert "immutable" in resp.headers["Cache-Control"]

        asyncio.run(_run())

    def test_plain_object_without_sibling(self):
        store = self._store()

        async def _run():
            async with _serving(_server(store=store)) as request:
                resp = await request("/wasm/busytex.wasm", headers=PACKAGES)
            assert resp.body == b"wasm-bytes"
            assert resp.headers["Content-Type"] == "application/wasm"
            assert "Content-Encoding" not in resp.headers

        asyncio.run(_run())

    def test_default_host_wasm_path(self):
        store = self._store()

        async def _run():
            async with _serving(_server(store=store)) as request:
                resp = await request("/wasm/busytex.wasm")
            assert resp.body == b"wasm-bytes"

        asyncio.run(_run())

    def test_edge_cache_hit(self):
        server = _server(store=self._store())

        async def _run():
            async with _serving(server) as request:
                first = await request("/bundles/registry.json", headers=PACKAGES)
                await server._background.drain()
                second = await request("/bundles/registry.json", headers=PACKAGES)
            assert first.headers["X-Cache"] == "MISS"
            assert second.headers["X-Cache"] == "HIT"
            assert second.body == b"{}"

        asyncio.run(_run())

    def test_edge_write_failure_does_not_affect_response(self):
        server = _server(store=self._store(), edge_cache=_FailingEdgeCache())

        async def _run():
            async with _serving(server) as request:
                resp = await request("/bundles/registry.json", headers=PACKAGES)
                await server._background.drain()
            assert resp.status == 200
            assert resp.body == b"{}"

        asyncio.run(_run())
        assert server._background.failures == 1

    def test_missing_object(self):
        async def _run():
            async with _serving(_server()) as request:
                resp = await request("/bundles/missing.data.gz", headers=PACKAGES)
            assert resp.status == 404
            assert resp.json() == {"error": "Not found"}

        asyncio.run(_run())

    def test_static_asset(self):
        store = MemoryObjectStore()
        asyncio.run(store.put("xzwasm.js.br", b"js-brotli"))

        async def _run():
            async with _serving(_server(store=store)) as request:
                resp = await request("/xzwasm.js")
            assert resp.body == b"js-brotli"
            assert resp.headers["Content-Type"] == "application/javascript"
            assert resp.headers["Content-Encoding"] == "br"

        asyncio.run(_run())


class TestPackageEndpoints:
    """Tests for /api/fetch, /api/ctan-pkg and the CTAN host."""

    def test_fetch_miss_then_hit(self):
        upstream = bar_upstream()

        async def _run():
            async with _serving(_server(upstream)) as request:
                first = await request("/api/fetch/bar")
                calls = len(upstream.calls)
                second = await request("/api/fetch/bar")
            assert first.status == 200
            assert first.headers["X-Cache"] == "MISS"
            assert first.headers["X-Source"] == "ctan-tds"
            assert first.headers["Cache-Control"] == "public, max-age=300"
            assert second.headers["X-Cache"] == "HIT"
            assert "X-Source" not in second.headers
            assert second.body == first.body
            assert len(upstream.calls) == calls
            assert first.json()["totalFiles"] == 1

        asyncio.run(_run())

    def test_ctan_host_fetch(self):
        async def _run():
            async with _serving(_server(bar_upstream())) as request:
                resp = await request("/fetch/bar", headers=CTAN)
            assert resp.status == 200
            assert resp.json()["name"] == "bar"

        asyncio.run(_run())

    @pytest.mark.parametrize(
        "path, message",
        [
            ("/api/fetch/a", "Invalid package name"),
            ("/api/fetch/foo.bar", "Invalid package name characters"),
            ("/api/texlive/a", "Invalid package name"),
            ("/api/ctan-pkg/a", "Invalid package name"),
        ],
    )
    def test_invalid_names_never_reach_upstream(self, path, message):
        upstream = bar_upstream()

        async def _run():
            async with _serving(_server(upstream)) as request:
                resp = await request(path)
            assert resp.status == 400
            assert resp.json() == {"error": message}
            assert resp.headers["Access-Control-Allow-Origin"] == "*"

        asyncio.run(_run())
        assert upstream.calls == []

    def test_not_found(self):
        async def _run():
            async with _serving(_server()) as request:
                resp = await request("/api/fetch/nothere")
            assert resp.status == 404
            assert resp.json() == {"error": "Package not found"}

        asyncio.run(_run())

    def test_corrupt_archive_is_internal_error(self):
        upstream = (
            FakeUpstream()
            .registry("bar", {"name": "bar", "ctan": {"path": "/macros/bar"}})
            .mirror("/macros/bar.tds.zip", b"not a zip")
        )

        async def _run():
            async with _serving(_server(upstream)) as request:
                resp = await request("/api/fetch/bar")
            assert resp.status == 500
            assert resp.json() == {"error": "Internal server error"}

        asyncio.run(_run())

    def test_unexpected_exception_is_internal_error(self):
        async def _run():
            async with _serving(_server(store=_BrokenStore())) as request:
                resp = await request("/api/fetch/bar")
            assert resp.status == 500
            assert resp.json() == {"error": "Internal server error"}
            assert resp.headers["Access-Control-Allow-Origin"] == "*"

        asyncio.run(_run())

    def test_concurrent_fetches(self):
        store = MemoryObjectStore()

        async def _run():
            async with _serving(_server(bar_upstream(), store=store)) as request:
                first, second = await asyncio.gather(
                    request("/api/fetch/bar"), request("/api/fetch/bar")
                )
            assert first.status == second.status == 200
            assert first.body == second.body

        asyncio.run(_run())
        stored = asyncio.run(store.get("ctan-cache/v5/bar.json"))
        assert json.loads(stored.body)["name"] == "bar"

    def test_package_info(self):
        upstream = FakeUpstream().registry(
            "bar", {"name": "bar", "texlive": "collection-bar", "ctan": {"path": "/macros/bar"}}
        )

        async def _run():
            async with _serving(_server(upstream)) as request:
                resp = await request("/api/ctan-pkg/bar")
            assert resp.status == 200
            assert resp.json() == {"name": "bar", "contained_in": "collection-bar", "ctan_path": "/macros/bar"}

        asyncio.run(_run())
        assert upstream.calls == [f"{REGISTRY}/bar"]


class TestTexLiveEndpoint:
    """Tests for /api/texlive."""

    def test_passthrough(self):
        upstream = FakeUpstream({f"{TEXLIVE}/amsmath.tar.xz": (200, b"\xfd7zXZ-data")})

        async def _run():
            async with _serving(_server(upstream)) as request:
                first = await request("/api/texlive/amsmath")
                second = await request("/api/texlive/amsmath")
            assert first.body == b"\xfd7zXZ-data"
            assert first.headers["Content-Type"] == "application/x-xz"
            assert first.headers["X-Cache"] == "MISS"
            assert second.headers["X-Cache"] == "HIT"

        asyncio.run(_run())
        assert len(upstream.calls) == 1

    def test_missing_upstream_package(self):
        async def _run():
            async with _serving(_server()) as request:
                resp = await request("/api/texlive/amsmath")
            assert resp.status == 404
            assert resp.json() == {"error": "Package not found in TeX Live 2023"}

        asyncio.run(_run())

    @pytest.mark.parametrize("status", [500, 503])
    def test_upstream_error_is_bad_gateway(self, status):
        upstream = FakeUpstream({f"{TEXLIVE}/amsmath.tar.xz": (status, b"")})

        async def _run():
            async with _serving(_server(upstream)) as request:
                resp = await request("/api/texlive/amsmath")
            assert resp.status == 502
            assert resp.json() == {"error": f"TeX Live fetch failed: {status}"}

        asyncio.run(_run())

    def test_transport_failure_is_bad_gateway(self):
        upstream = FakeUpstream(failures=[f"{TEXLIVE}/amsmath.tar.xz"])

        async def _run():
            async with _serving(_server(upstream)) as request:
                resp = await request("/api/texlive/amsmath")
            assert resp.status == 502

        asyncio.run(_run())


def test_doc_only_archive_returns_404():
    upstream = (
        FakeUpstream()
        .registry("bar", {"name": "bar", "ctan": {"path": "/macros/bar"}})
        .mirror("/macros/bar.tds.zip", make_zip({"doc/latex/bar/bar.pdf": b"%PDF"}))
    )

    async def _run():
        async with _serving(_server(upstream)) as request:
            resp = await request("/api/fetch/bar")
        assert resp.status == 404

    asyncio.run(_run())
