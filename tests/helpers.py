"""Shared fakes for the proxy tests."""

import io
import json
import zipfile
from typing import Dict, Iterable, Optional, Tuple, Union

from ctanproxy.proxy.errors import UpstreamError
from ctanproxy.proxy.upstream import UpstreamResponse

REGISTRY = "https://ctan.org/json/2.0/pkg"
MIRROR = "https://mirrors.ctan.org"
TEXLIVE = "https://ftp.tu-chemnitz.de/pub/tug/historic/systems/texlive/2023/tlnet-final/archive"

Body = Union[bytes, dict, list]


def make_zip(entries: Dict[str, Union[bytes, str]]) -> bytes:
    """Build an in-memory ZIP archive."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive:
        for name, content in entries.items():
            if isinstance(content, str):
                content = content.encode("utf-8")
            archive.writestr(name, content)
    return buffer.getvalue()


class FakeUpstream:
    """Stands in for UpstreamClient; unknown URLs answer 404."""

    def __init__(
        self,
        routes: Optional[Dict[str, Tuple[int, Body]]] = None,
        failures: Iterable[str] = (),
    ):
        self.routes = dict(routes or {})
        self.failures = set(failures)
        self.calls = []
        self.started = False

    def registry(self, name: str, payload: Body, status: int = 200) -> "FakeUpstream":
        self.routes[f"{REGISTRY}/{name}"] = (status, payload)
        return self

    def mirror(self, path: str, body: bytes, status: int = 200) -> "FakeUpstream":
        self.routes[f"{MIRROR}{path}"] = (status, body)
        return self

    async def start(self) -> None:
        self.started = True

    async def stop(self) -> None:
        self.started = False

    async def fetch(self, url: str, *, context: str) -> UpstreamResponse:
        self.calls.append(url)
        if url in self.failures:
            raise UpstreamError(f"{context} request failed: connection reset")
        status, body = self.routes.get(url, (404, b""))
        if isinstance(body, (dict, list)):
            body = json.dumps(body).encode("utf-8")
        return UpstreamResponse(status=status, body=body)


SIMPLE_STY = "\\ProvidesPackage{bar}\n\\RequirePackage[options]{amsmath,graphicx}\n"


def bar_upstream() -> FakeUpstream:
    """Upstream serving a small TDS zip for package ``bar``."""
    archive = make_zip({
        "tex/latex/bar/bar.sty": SIMPLE_STY,
        "doc/latex/bar/bar.pdf": b"%PDF-1.4",
    })
    return (
        FakeUpstream()
        .registry("bar", {"name": "bar", "ctan": {"path": "/macros/latex/contrib/bar"}})
        .mirror("/macros/latex/contrib/bar.tds.zip", archive)
    )
