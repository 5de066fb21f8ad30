from __future__ import annotations

import asyncio
import sys
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import httpx

from .config import Settings, settings as default_settings
from .errors import UpstreamError
from .http_client import get_httpx_client
from .users import UserService


@dataclass
class CatalogModel:
    display_id: str
    internal_id: str
    name: str
    created: int
    capabilities: Dict[str, Any] = field(default_factory=dict)
    meta: Dict[str, Any] = field(default_factory=dict)
    info: Dict[str, Any] = field(default_factory=dict)

    def to_openai(self) -> Dict[str, Any]:
        return {
            "id": self.display_id,
            "object": "model",
            "name": self.name,
            "created": self.created,
            "owned_by": "z.ai",
            "meta": self.meta,
            "info": {"meta": self.meta},
            "orignal": {"name": self.name, "id": self.internal_id, "info": self.info},
            "access_control": None,
        }


def format_model_name(name: str) -> str:
    """``glm-4-air`` → ``GLM-4-Air``: upper-case series, title-case words, keep digits."""
    if not name:
        return ""
    parts = name.split("-")
    if len(parts) == 1:
        return parts[0].upper()
    formatted = [parts[0].upper()]
    for p in parts[1:]:
        if p and not p.isdigit() and any(c.isalpha() for c in p):
            formatted.append(p[:1].upper() + p[1:])
        else:
            formatted.append(p)
    return "-".join(formatted)


def _is_series_name(value: str) -> bool:
    return (value.startswith("GLM") or value.startswith("Z")) and "." in value


def display_name(source_id: str, model_name: str) -> str:
    if _is_series_name(source_id):
        return source_id
    if _is_series_name(model_name):
        return model_name
    if not model_name or not model_name[0].isascii() or not model_name[0].isalpha():
        model_name = format_model_name(source_id)
        upper = model_name.upper()
        if not upper.startswith("GLM") and not upper.startswith("Z"):
            model_name = "GLM-" + model_name
    return model_name


class ModelCatalog:
    """Upstream model list, fetched once and cached until ``clear()``."""

    def __init__(
        self,
        users: UserService,
        settings: Optional[Settings] = None,
        client_factory: Callable[[], Any] = get_httpx_client,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.users = users
        self.settings = settings or default_settings
        self._client_factory = client_factory
        self._clock = clock
        self._models: Optional[List[CatalogModel]] = None
        self._lock = asyncio.Lock()

    @property
    def cached(self) -> List[CatalogModel]:
        return list(self._models or [])

    async def get_models(self) -> List[CatalogModel]:
        async with self._lock:
            if self._models is not None:
                return list(self._models)
            models = await self._fetch()
            self._models = models
        if self.settings.debug:
            print(f"[z2api] fetched {len(models)} models from upstream", file=sys.stderr)
        return list(models)

    async def _fetch(self) -> List[CatalogModel]:
        user = await self.users.get_user()
        token = user.token if self.settings.anonymous else self.settings.token
        url = f"{self.settings.base_url}/api/models"
        headers = {
            **self.settings.headers,
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }
        client = self._client_factory()
        try:
            res = await client.get(url, headers=headers, timeout=httpx.Timeout(10.0))
        except httpx.HTTPError as e:
            raise UpstreamError(f"failed to fetch models: {e}") from e
        if res.status_code != 200:
            raise UpstreamError(f"fetch models failed: {res.text}", res.status_code)
        try:
            data = res.json()
        except ValueError as e:
            raise UpstreamError(f"failed to decode models: {e}") from e
        items = data.get("data") if isinstance(data, dict) else None
        if not isinstance(items, list):
            raise UpstreamError("invalid models response format")
        return [m for m in (self._build(it) for it in items) if m is not None]

    def _build(self, item: Any) -> Optional[CatalogModel]:
        if not isinstance(item, dict):
            return None
        info = item.get("info") if isinstance(item.get("info"), dict) else {}
        if info.get("is_active") is False:
            return None
        source_id = item.get("id") if isinstance(item.get("id"), str) else ""
        model_name = item.get("name") if isinstance(item.get("name"), str) else ""
        meta = info.get("meta") if isinstance(info.get("meta"), dict) else {}
        capabilities = meta.get("capabilities") if isinstance(meta.get("capabilities"), dict) else {}
        prompts = []
        for p in meta.get("suggestion_prompts") or []:
            if isinstance(p, dict) and isinstance(p.get("prompt"), str):
                prompts.append({"content": p["prompt"]})
        name = display_name(source_id, model_name)
        created_at = info.get("created_at")
        created = int(created_at) if isinstance(created_at, (int, float)) else int(self._clock())
        return CatalogModel(
            display_id=self.settings.display_id_for(source_id) or name.lower(),
            internal_id=source_id,
            name=name,
            created=created,
            capabilities=capabilities,
            meta={
                "capabilities": capabilities,
                "description": meta.get("description") if isinstance(meta.get("description"), str) else "",
                "hidden": meta.get("hidden") is True,
                "suggestion_prompts": prompts,
            },
            info=info,
        )

    def clear(self) -> None:
        self._models = None
        if self.settings.debug:
            print("[z2api] models cache cleared", file=sys.stderr)

    def to_openai_list(self, models: List[CatalogModel]) -> Dict[str, Any]:
        return {"object": "list", "data": [m.to_openai() for m in models]}


def resolve_internal_id(models: List[CatalogModel], model_id: str) -> str:
    """Map a display id back to the upstream id; unknown ids pass through."""
    for m in models:
        if m.display_id == model_id and m.internal_id:
            return m.internal_id
    return model_id


def find_model(models: List[CatalogModel], model_id: str) -> Optional[CatalogModel]:
    for m in models:
        if m.display_id == model_id or m.internal_id == model_id:
            return m
    return None


def capabilities_for(models: List[CatalogModel], model_id: str) -> Dict[str, Any]:
    entry = find_model(models, model_id)
    return dict(entry.capabilities) if entry is not None else {}
