"""Outbound HTTP transport for delivery attempts.

The dispatcher talks to receivers through the HttpTransport protocol so
tests can substitute a scripted fake. HttpxTransport is the production
implementation.
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

import httpx

USER_AGENT = "Courier-Webhooks/1.0"


@dataclass(frozen=True)
class TransportResponse:
    """What the dispatcher needs from a receiver's response."""

    status_code: int
    body: str = ""


class TransportError(Exception):
    """Request never produced a response (timeout, DNS, connection reset)."""

    def __init__(self, message: str, *, timed_out: bool = False) -> None:
        self.timed_out = timed_out
        super().__init__(message)


@runtime_checkable
class HttpTransport(Protocol):
    """POSTs a signed body to a receiver."""

    @abstractmethod
    async def post(
        self,
        url: str,
        content: bytes,
        headers: dict[str, str],
        timeout: float,
    ) -> TransportResponse:
        """Send one request.

        Raises:
            TransportError: If no HTTP response was received.
        """
        ...

    async def aclose(self) -> None:
        """Release connections."""
        ...


class HttpxTransport:
    """HttpTransport backed by a shared httpx.AsyncClient.

    Redirects are not followed; a 3xx counts as a retryable response.
    """

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._client = client or httpx.AsyncClient(
            follow_redirects=False,
            headers={"User-Agent": USER_AGENT},
        )
        self._owns_client = client is None

    async def post(
        self,
        url: str,
        content: bytes,
        headers: dict[str, str],
        timeout: float,
    ) -> TransportResponse:
        try:
            response = await self._client.post(
                url,
                content=content,
                headers=headers,
                timeout=timeout,
            )
        except httpx.TimeoutException as e:
            raise TransportError(f"Request timeout after {timeout:g}s", timed_out=True) from e
        except httpx.RequestError as e:
            raise TransportError(f"{type(e).__name__}: {e}") from e

        return TransportResponse(status_code=response.status_code, body=response.text or "")

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


__all__ = [
    "USER_AGENT",
    "HttpTransport",
    "HttpxTransport",
    "TransportError",
    "TransportResponse",
]
