from __future__ import annotations

from typing import Optional

import httpx

from .config import settings


# Pool shared by every upstream call
UPSTREAM_POOL = httpx.Limits(max_connections=100, max_keepalive_connections=20, keepalive_expiry=30.0)

_HTTPX_CLIENT: Optional[httpx.AsyncClient] = None


def get_httpx_client() -> httpx.AsyncClient:
    """Process-wide client shared by the user, catalog and chat calls."""
    global _HTTPX_CLIENT
    if _HTTPX_CLIENT is None:
        _HTTPX_CLIENT = httpx.AsyncClient(
            http2=settings.http2,
            limits=UPSTREAM_POOL,
            headers=settings.headers,
        )
    return _HTTPX_CLIENT


async def close_httpx_client() -> None:
    global _HTTPX_CLIENT
    if _HTTPX_CLIENT is not None:
        client, _HTTPX_CLIENT = _HTTPX_CLIENT, None
        await client.aclose()
