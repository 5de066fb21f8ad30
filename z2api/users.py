from __future__ import annotations

import asyncio
import sys
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

import httpx

from .config import Settings, settings as default_settings
from .errors import UpstreamError
from .http_client import get_httpx_client


@dataclass(frozen=True)
class UserInfo:
    id: str
    name: str
    token: str


class UserService:
    """Resolves the upstream user (id + bearer token) behind every request.

    With a configured token the lookup is cached per token for
    ``settings.user_cache_ttl`` seconds. Anonymous mode asks the upstream for
    a fresh guest token each time.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client_factory: Callable[[], Any] = get_httpx_client,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings or default_settings
        self._client_factory = client_factory
        self._clock = clock
        self._cache: Dict[str, Tuple[float, UserInfo]] = {}
        self._lock = asyncio.Lock()

    async def get_user(self) -> UserInfo:
        token = "" if self.settings.anonymous else self.settings.token
        if token:
            async with self._lock:
                cached = self._cache.get(token)
                if cached is not None and self._clock() - cached[0] < self.settings.user_cache_ttl:
                    return cached[1]

        data = await self._fetch(token)
        user_id = data.get("id") if isinstance(data.get("id"), str) else ""
        name = data.get("name") if isinstance(data.get("name"), str) else ""
        if self.settings.anonymous:
            token = data.get("token") if isinstance(data.get("token"), str) else ""
        info = UserInfo(id=user_id, name=name, token=token)

        if token and user_id:
            async with self._lock:
                self._cache[token] = (self._clock(), info)
        if self.settings.debug:
            print(f"[z2api] user info [live]: name={name}, id={user_id}", file=sys.stderr)
        return info

    async def _fetch(self, token: str) -> Dict[str, Any]:
        url = f"{self.settings.base_url}/api/v1/auths/"
        headers = {**self.settings.headers, "Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        client = self._client_factory()
        try:
            resp = await client.get(url, headers=headers, timeout=httpx.Timeout(10.0))
        except httpx.HTTPError as e:
            raise UpstreamError(f"failed to fetch user info: {e}") from e
        if resp.status_code != 200:
            raise UpstreamError(f"fetch user info failed: {resp.text}", resp.status_code)
        try:
            data = resp.json()
        except ValueError as e:
            raise UpstreamError(f"failed to decode user info: {e}") from e
        if not isinstance(data, dict):
            raise UpstreamError("unexpected user info payload")
        return data

    def clear(self) -> None:
        self._cache.clear()
