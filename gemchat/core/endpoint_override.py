"""
Gemchat Endpoint Override
=========================

Optional redirection of Gemini API traffic through a proxy base URL.

Instead of patching a process-wide HTTP function, each executor call opens
its own Transport via EndpointOverride.scoped(). The transport rewrites
only requests aimed at the canonical Gemini host, and is deactivated when
the `with` block exits, whatever the exit path. Overlapping calls each hold
a separate transport, so there is no shared routing state to corrupt.

Rewrite rule:
    https://generativelanguage.googleapis.com/v1beta/models?x=1
    + override https://proxy.example.com/gemini
    -> https://proxy.example.com/gemini/v1beta/models?x=1
"""

import logging
import re
from contextlib import contextmanager
from typing import Iterator, Optional
from urllib.parse import urlsplit, urlunsplit

from google.genai import types

from gemchat.core.errors import ConfigurationError

logger = logging.getLogger(__name__)

CANONICAL_HOST = "generativelanguage.googleapis.com"
CANONICAL_BASE_URL = f"https://{CANONICAL_HOST}/"


class Transport:
    """
    Routing capability handed to one executor call.

    Outside its scope (or without an override) every URL routes unchanged.
    """

    def __init__(self, base_url: Optional[str] = None):
        self._base_url = base_url
        self._active = base_url is not None

    @property
    def active(self) -> bool:
        return self._active

    @property
    def base_url(self) -> Optional[str]:
        return self._base_url if self._active else None

    def route(self, url: str) -> str:
        """
        Return the URL a request should actually go to.

        Only URLs whose host is the canonical Gemini host are rewritten,
        and only while the transport is active.
        """
        if not self._active or self._base_url is None:
            return url

        original = urlsplit(url)
        if original.hostname != CANONICAL_HOST:
            return url

        proxy = urlsplit(self._base_url)
        path = re.sub(r"/{2,}", "/", proxy.path.rstrip("/") + (original.path or "/"))
        return urlunsplit((proxy.scheme, proxy.netloc, path, original.query, ""))

    def http_options(self) -> Optional[types.HttpOptions]:
        """HttpOptions for a google-genai client, or None for default routing."""
        if not self._active:
            return None
        return types.HttpOptions(base_url=self.route(CANONICAL_BASE_URL))

    def close(self) -> None:
        self._active = False


class EndpointOverride:
    """
    Validated override base URL that opens scoped transports.

    USAGE:
        override = EndpointOverride("https://proxy.example.com/gemini")

        with override.scoped() as transport:
            client = genai.Client(api_key=key, http_options=transport.http_options())
            ...
        # transport.route(...) is back to default here
    """

    def __init__(self, base_url: Optional[str] = None):
        self.base_url = _validate(base_url)

    @property
    def enabled(self) -> bool:
        return self.base_url is not None

    @contextmanager
    def scoped(self) -> Iterator[Transport]:
        transport = Transport(self.base_url)
        if transport.active:
            logger.debug(f"Endpoint override installed: {self.base_url}")
        try:
            yield transport
        finally:
            transport.close()
            if self.base_url is not None:
                logger.debug("Endpoint override released")


def _validate(base_url: Optional[str]) -> Optional[str]:
    trimmed = (base_url or "").strip()
    if not trimmed:
        return None

    parts = urlsplit(trimmed)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        logger.error(f"Invalid API base URL: {trimmed}")
        raise ConfigurationError(f"Invalid API base URL: {trimmed}")
    return trimmed
