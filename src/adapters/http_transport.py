"""httpx transport adapter.

Sends the pre-serialized requests built by the core. The body is handed over
as bytes so httpx never re-encodes the payload.
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from core.models import OutgoingRequest
from core.ports import TransportError, TransportResponse

LOGGER = logging.getLogger(__name__)


class HttpxTransport:
    """TransportPort implementation backed by a shared httpx.AsyncClient."""

    def __init__(
        self,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)

    async def send(self, request: OutgoingRequest) -> TransportResponse:
        """Send one request; network-level failures become TransportError."""

        content = request.body.encode("utf-8") if request.body is not None else None
        LOGGER.debug("%s %s", request.method, request.url)
        try:
            response = await self._client.request(
                request.method,
                request.url,
                headers=request.headers,
                params=list(request.params) or None,
                content=content,
            )
        except httpx.TransportError as exc:
            raise TransportError(f"{type(exc).__name__}: {exc}") from exc

        return TransportResponse(
            status_code=response.status_code,
            body=response.text,
            reason=response.reason_phrase,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "HttpxTransport":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()
