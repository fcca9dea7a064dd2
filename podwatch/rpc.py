"""Fail-soft JSON-RPC client for the pod control RPC surface.

Most pods expose their control RPC on localhost only, so the vast majority
of calls made during a cycle are expected to fail.  Every failure mode
(timeout, refused connection, HTTP error, malformed body, JSON-RPC error)
collapses to ``None`` here and is logged at DEBUG level only.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any

import httpx

logger = logging.getLogger(__name__)

METHODS = ("get-pods", "get-pods-with-stats", "get-stats", "get-version")

_HEADERS = {"Content-Type": "application/json", "User-Agent": "podwatch/0.1"}

# Failures that collapse to None. httpx.InvalidURL is not an HTTPError, and
# connect() raises OverflowError for ports above 65535.
_CALL_ERRORS = (httpx.HTTPError, httpx.InvalidURL, TimeoutError, OverflowError, ValueError)


def endpoint_url(target: str) -> str:
    """Return the RPC URL for *target*.

    Full ``http(s)://`` URLs are used as-is; a bare ``host:port`` gets the
    default ``/rpc`` path.
    """
    if target.startswith(("http://", "https://")):
        return target
    return f"http://{target}/rpc"


def rpc_payload(method: str, request_id: int = 1) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "method": method, "params": []}


class RpcClient:
    """Issues single JSON-RPC calls with a hard timeout.

    The client owns an ``httpx.AsyncClient`` unless one is injected (tests
    inject one backed by ``httpx.MockTransport``).  Use as an async context
    manager, or call :meth:`aclose` when done.

    Args:
        http: Optional pre-built async HTTP client.
    """

    def __init__(self, http: httpx.AsyncClient | None = None) -> None:
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(headers=_HEADERS)

    async def __aenter__(self) -> RpcClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    @property
    def http(self) -> httpx.AsyncClient:
        """The underlying HTTP client, shared with enrichers."""
        return self._http

    async def call(self, target: str, method: str, timeout: float) -> Any | None:
        """Call *method* on *target* and return its ``result``.

        Args:
            target: ``host:port`` or a full RPC URL.
            method: JSON-RPC method name (see ``METHODS``).
            timeout: Hard timeout in seconds for the whole call, including
                a body that trickles in.

        Returns:
            The parsed ``result`` member, or ``None`` on any failure or
            when the result is empty.
        """
        url = endpoint_url(target)
        try:
            resp = await asyncio.wait_for(
                self._http.post(url, json=rpc_payload(method), timeout=timeout),
                timeout,
            )
        except _CALL_ERRORS as exc:
            logger.debug("%s %s failed: %s", url, method, exc.__class__.__name__)
            return None

        if resp.status_code >= 400:
            logger.debug("%s %s returned HTTP %d", url, method, resp.status_code)
            return None

        try:
            body = resp.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.debug("%s %s returned a non-JSON body", url, method)
            return None

        if not isinstance(body, dict):
            logger.debug("%s %s returned a non-object body", url, method)
            return None
        if body.get("error"):
            logger.debug("%s %s error: %s", url, method, body["error"])
            return None

        result = body.get("result")
        if not result:
            return None
        return result

    async def time_to_first_byte(self, target: str, timeout: float) -> float | None:
        """Measure milliseconds until the first byte of a ``get-version`` reply.

        Excludes most of the server's processing of the body, so it tracks
        network round-trip more closely than a full request.

        Returns:
            Latency in milliseconds, or ``None`` if the call failed.
        """
        url = endpoint_url(target)
        try:
            return await asyncio.wait_for(self._first_byte_ms(url, timeout), timeout)
        except _CALL_ERRORS as exc:
            logger.debug("TTFB to %s failed: %s", url, exc.__class__.__name__)
            return None

    async def _first_byte_ms(self, url: str, timeout: float) -> float | None:
        start = time.perf_counter()
        async with self._http.stream(
            "POST", url, json=rpc_payload("get-version"), timeout=timeout
        ) as resp:
            if resp.status_code >= 400:
                return None
            async for chunk in resp.aiter_raw():
                if chunk:
                    return (time.perf_counter() - start) * 1000
        return None
