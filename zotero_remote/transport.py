"""Transport - Sends one RequestDescriptor and captures the response.

Redirects are never followed so 3xx responses (and their Location header)
reach the caller. HTTP error statuses are ordinary responses; only network
level failures raise TransportError. Nothing is retried.
"""

from __future__ import annotations

import sys
import time
from typing import Any

import httpx

from zotero_remote.models import RequestDescriptor, ResponseHandle


class TransportError(Exception):
    """Raised when a request fails (connection error, timeout, etc.)."""


class Transport:
    """Sends requests over a single httpx.Client.

    Usage:
        with Transport(timeout=30.0, verbose=1) as transport:
            response = transport.send(descriptor)
    """

    def __init__(
        self,
        timeout: float = 30.0,
        verbose: int = 0,
        verify: bool = True,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Initialize the transport.

        Args:
            timeout: Timeout in seconds for every request.
            verbose: 1 echoes method and URL to stderr, 2 also echoes the body.
            verify: Verify TLS certificates.
            transport: Optional httpx transport (e.g. httpx.MockTransport).
        """
        self.verbose = verbose
        self._client = httpx.Client(
            timeout=timeout,
            verify=verify,
            follow_redirects=False,
            transport=transport,
        )

    def __enter__(self) -> "Transport":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    def send(self, request: RequestDescriptor) -> ResponseHandle:
        """Execute one request.

        Raises:
            TransportError: If the request could not be completed.
        """
        if self.verbose >= 1:
            print(f"\n{request.method} {request.url}", file=sys.stderr)

        content: bytes | None = None
        if isinstance(request.body, str):
            content = request.body.encode("utf-8")
        elif isinstance(request.body, bytes):
            content = request.body

        try:
            start_time = time.perf_counter()

            http_response = self._client.request(
                method=request.method,
                url=request.url,
                params=list(request.query) if request.query else None,
                headers=request.headers or None,
                content=content,
            )

            elapsed_ms = (time.perf_counter() - start_time) * 1000

        except httpx.TimeoutException as e:
            raise TransportError(f"{request.method} {request.url} timed out: {e}") from e
        except httpx.ConnectError as e:
            raise TransportError(f"{request.method} {request.url} connection error: {e}") from e
        except httpx.RequestError as e:
            raise TransportError(f"{request.method} {request.url} request error: {e}") from e
        except UnicodeEncodeError as e:
            # Header values, query params and paths must be ASCII on the wire
            raise TransportError(
                f"{request.method} {request.url} encoding error: non-ASCII character "
                f"{e.object[e.start:e.end]!r} at position {e.start}"
            ) from e

        response = self._convert_response(request, http_response, elapsed_ms)

        if self.verbose >= 2:
            print(f"\n{response.body}\n", file=sys.stderr)

        return response

    def _convert_response(
        self,
        request: RequestDescriptor,
        response: httpx.Response,
        elapsed_ms: float,
    ) -> ResponseHandle:
        """Convert an httpx Response to a ResponseHandle."""
        # Headers - lowercase keys, list values
        headers: dict[str, list[str]] = {}
        for key, value in response.headers.multi_items():
            headers.setdefault(key.lower(), []).append(value)

        return ResponseHandle(
            method=request.method,
            url=str(response.request.url),
            status_code=response.status_code,
            headers=headers,
            body=response.text,
            elapsed_ms=elapsed_ms,
        )
