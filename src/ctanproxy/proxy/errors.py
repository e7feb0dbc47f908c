"""Error taxonomy for the proxy.

Each error carries the HTTP status it maps to; the server middleware turns
any ``ProxyError`` into the ``{"error": message}`` envelope.
"""

from __future__ import annotations


class ProxyError(Exception):
    """Base class for errors surfaced to HTTP clients."""

    status = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ProxyError):
    """Malformed package name; never retried."""

    status = 400


class NotFoundError(ProxyError):
    """Every fallback stage exhausted, or nothing usable extracted."""

    status = 404


class UpstreamError(ProxyError):
    """Non-2xx status or transport failure from a registry or mirror."""

    status = 502


class InternalError(ProxyError):
    """Unexpected failure inside the pipeline."""

    status = 500


class ArchiveError(InternalError):
    """An upstream archive could not be decoded."""
