"""Upstream client for the CTAN registry, CTAN mirrors and the TeX Live archive."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import aiohttp

from ..common.logging_utils import Timer, extra_context, is_debug_enabled, safe_url
from ..constants import Constants
from .errors import UpstreamError

logger = logging.getLogger(__name__)


@dataclass
class UpstreamResponse:
    """Fully read upstream response."""

    status: int
    body: bytes = b""
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def json(self) -> Any:
        """Decode the body as JSON.

        Raises:
            ValueError: If the body is not valid JSON.
        """
        return json.loads(self.body.decode("utf-8"))


class UpstreamClient:
    """Client for fetching from upstream sources.

    Every request carries the fixed identifying User-Agent and follows
    redirects (CTAN's mirror director redirects to a nearby mirror).
    """

    def __init__(
        self,
        user_agent: str = Constants.USER_AGENT,
        timeout: int = Constants.REQUEST_TIMEOUT,
    ):
        """Initialize the upstream client.

        Args:
            user_agent: User-Agent header sent with every request.
            timeout: Total request timeout in seconds.
        """
        self._user_agent = user_agent
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: Optional[aiohttp.ClientSession] = None

    async def start(self) -> None:
        """Start the HTTP session."""
        if self._session is None:
            connector = aiohttp.TCPConnector(limit=100)
            self._session = aiohttp.ClientSession(
                timeout=self._timeout,
                connector=connector,
                headers={"User-Agent": self._user_agent},
            )

    async def stop(self) -> None:
        """Stop the HTTP session."""
        if self._session:
            await self._session.close()
            self._session = None

    async def fetch(self, url: str, *, context: str) -> UpstreamResponse:
        """GET ``url`` and read the whole body.

        Non-2xx statuses are returned, not raised; callers decide whether a
        status means "try the next source".

        Args:
            url: Target URL.
            context: Human-readable source tag for logs (e.g. "registry").

        Returns:
            The status, body and headers.

        Raises:
            UpstreamError: On transport failures and timeouts.
        """
        if self._session is None:
            await self.start()
        assert self._session is not None

        target = safe_url(url)
        with Timer() as timer:
            if is_debug_enabled(logger):
                logger.debug(
                    "HTTP request",
                    extra=extra_context(
                        event="http_request",
                        component="upstream",
                        action="GET",
                        target=target,
                        context=context,
                    ),
                )
            try:
                async with self._session.get(url, allow_redirects=True) as response:
                    body = await response.read()
                    result = UpstreamResponse(
                        status=response.status,
                        body=body,
                        headers={k: v for k, v in response.headers.items()},
                    )
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                logger.info(
                    "%s request failed: %s",
                    context,
                    exc,
                    extra=extra_context(
                        event="http_exception",
                        component="upstream",
                        outcome="transport_error",
                        target=target,
                        duration_ms=timer.duration_ms(),
                    ),
                )
                raise UpstreamError(f"{context} request failed: {exc}") from exc

        logger.debug(
            "HTTP response",
            extra=extra_context(
                event="http_response",
                component="upstream",
                status_code=result.status,
                duration_ms=timer.duration_ms(),
                target=target,
                context=context,
            ),
        )
        return result
