"""Async HTTP transport used by probes.

``HttpClient`` is the narrow interface probes depend on: one GET through a
given proxy connection, returning status/body/headers or raising on any
transport-level failure. ``HttpxClient`` is the default implementation.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Protocol

import httpx

LOGGER = logging.getLogger(__name__)

# Block pages can be large; classification never needs more than this.
MAX_BODY_CHARS = 200_000

BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Safari/537.36"
)


@dataclass(frozen=True)
class ProbeResponse:
    """Raw signal of one completed HTTP exchange.

    Attributes:
        status: HTTP status code.
        body: Response text, possibly truncated.
        headers: Response headers with lowercased names.
    """

    status: int
    body: str = ""
    headers: Mapping[str, str] = field(default_factory=dict)

    def header(self, name: str) -> str:
        """Case-insensitive header lookup; empty string when absent."""
        wanted = name.lower()
        for key, value in self.headers.items():
            if key.lower() == wanted:
                return value
        return ""

    def json(self) -> Any:
        """Parsed JSON body, or None when the body is not JSON."""
        try:
            return json.loads(self.body)
        except (TypeError, ValueError):
            return None


class HttpClient(Protocol):
    """Transport capability consumed by ``HttpProbe``."""

    async def get(
        self,
        url: str,
        headers: Mapping[str, str],
        connection: Optional[str],
        timeout_ms: int,
    ) -> ProbeResponse:
        ...


class HttpxClient:
    """``HttpClient`` backed by ``httpx.AsyncClient``.

    A fresh client is opened per request because httpx binds the proxy to the
    client, and each node is a different proxy. Redirects are not followed:
    a 302 and its ``Location`` are part of the classified signal.
    """

    def __init__(
        self,
        *,
        verify: bool = True,
        max_body_chars: int = MAX_BODY_CHARS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._verify = verify
        self._max_body_chars = max_body_chars
        self._transport = transport

    async def _fetch(
        self,
        url: str,
        headers: Mapping[str, str],
        connection: Optional[str],
        timeout_s: float,
    ) -> ProbeResponse:
        async with httpx.AsyncClient(
            proxy=connection,
            timeout=httpx.Timeout(timeout_s),
            follow_redirects=False,
            verify=self._verify,
            transport=self._transport,
        ) as client:
            response = await client.get(url, headers=dict(headers))
            body = response.text[: self._max_body_chars]
        return ProbeResponse(
            status=response.status_code,
            body=body,
            headers={key.lower(): value for key, value in response.headers.items()},
        )

    async def get(
        self,
        url: str,
        headers: Mapping[str, str],
        connection: Optional[str],
        timeout_ms: int,
    ) -> ProbeResponse:
        timeout_s = max(timeout_ms, 1) / 1000.0
        # httpx timeouts are per phase; bound the whole exchange as well
        return await asyncio.wait_for(
            self._fetch(url, headers, connection, timeout_s), timeout=timeout_s
        )


__all__ = [
    "BROWSER_USER_AGENT",
    "HttpClient",
    "HttpxClient",
    "MAX_BODY_CHARS",
    "ProbeResponse",
]
