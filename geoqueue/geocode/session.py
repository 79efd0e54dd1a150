"""Factories for httpx-backed geocoding sessions."""
from __future__ import annotations

import contextlib
from typing import AsyncIterator, Dict, Optional

import httpx


class GeocodeSession:
    """Thin wrapper over ``httpx.AsyncClient`` so tests can swap the transport."""

    def __init__(self, client: Optional[httpx.AsyncClient]) -> None:
        self._client = client

    async def fetch(self, url: str, *, headers: Optional[Dict[str, str]] = None, timeout: float = 10.0) -> httpx.Response:
        """Issue a single GET and return the raw response."""
        if self._client is None:
            raise RuntimeError("No geocode session available")
        return await self._client.get(url, headers=headers, timeout=timeout)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()


@contextlib.asynccontextmanager
async def create_geocode_session(
    *,
    timeout: float,
    max_connections: int,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> AsyncIterator[GeocodeSession]:
    """Yield a configured `GeocodeSession` for the duration of the context."""
    limits = httpx.Limits(max_connections=max_connections, max_keepalive_connections=max_connections)
    async with httpx.AsyncClient(limits=limits, timeout=timeout, transport=transport) as client:
        yield GeocodeSession(client)
