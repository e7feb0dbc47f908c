"""Tests for the upstream client against a local aiohttp server."""

import asyncio

import pytest

aiohttp = pytest.importorskip("aiohttp")

from aiohttp import test_utils, web

from ctanproxy.proxy.errors import UpstreamError
from ctanproxy.proxy.upstream import UpstreamClient, UpstreamResponse


def _app(seen):
    async def registry(request):
        seen.append(request.headers.get("User-Agent"))
        return web.json_response({"name": "bar"})

    async def moved(request):
        raise web.HTTPFound("/pkg/bar")

    async def missing(request):
        return web.Response(status=404, text="nope")

    app = web.Application()
    app.router.add_get("/pkg/bar", registry)
    app.router.add_get("/redirect", moved)
    app.router.add_get("/missing", missing)
    return app


async def _fetch(client, url, context="mirror"):
    """Fetch once through a started client and stop it afterwards."""
    await client.start()
    try:
        return await client.fetch(url, context=context)
    finally:
        await client.stop()


class TestUpstreamClient:
    """Tests for UpstreamClient.fetch."""

    def test_fetch_sends_user_agent(self):
        seen = []

        async def _run():
            async with test_utils.TestServer(_app(seen)) as ts:
                client = UpstreamClient(user_agent="ctanproxy-test/1.0")
                return await _fetch(client, str(ts.make_url("/pkg/bar")), context="registry")

        response = asyncio.run(_run())

        assert response.ok
        assert response.json() == {"name": "bar"}
        assert seen == ["ctanproxy-test/1.0"]

    def test_follows_redirects(self):
        seen = []

        async def _run():
            async with test_utils.TestServer(_app(seen)) as ts:
                return await _fetch(UpstreamClient(), str(ts.make_url("/redirect")))

        assert asyncio.run(_run()).status == 200
        assert len(seen) == 1

    def test_non_2xx_is_returned(self):
        async def _run():
            async with test_utils.TestServer(_app([])) as ts:
                return await _fetch(UpstreamClient(), str(ts.make_url("/missing")))

        response = asyncio.run(_run())

        assert response.status == 404
        assert not response.ok

    def test_fetch_starts_session_lazily(self):
        async def _run():
            async with test_utils.TestServer(_app([])) as ts:
                client = UpstreamClient()
                try:
                    return await client.fetch(str(ts.make_url("/pkg/bar")), context="registry")
                finally:
                    await client.stop()

        assert asyncio.run(_run()).ok

    def test_transport_failure_raises(self):
        async def _run():
            port = test_utils.unused_port()
            await _fetch(UpstreamClient(timeout=5), f"http://127.0.0.1:{port}/pkg/bar", context="registry")

        with pytest.raises(UpstreamError) as excinfo:
            asyncio.run(_run())
        assert excinfo.value.status == 502
        assert excinfo.value.message.startswith("registry request failed")


def test_upstream_response_json_error():
    with pytest.raises(ValueError):
        UpstreamResponse(status=200, body=b"<html>").json()
