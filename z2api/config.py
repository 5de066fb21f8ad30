import json
import os
import sys
from typing import Dict, Optional


THINK_MODES = ("reasoning", "think", "strip", "details")

# HMAC key the upstream web client signs with
DEFAULT_SIGNATURE_SECRET = "key-@@@@)))()((9))-xxxx&&&%%%%%"


def _env_bool(name: str, default: str = "0") -> bool:
    return os.environ.get(name, default).lower() in ("1", "true", "yes")


class Settings:
    def __init__(self) -> None:
        self.upstream_protocol: str = os.environ.get("UPSTREAM_PROTOCOL", "https:")
        self.upstream_host: str = os.environ.get("UPSTREAM_HOST", "chat.z.ai")
        # Empty token means anonymous mode: a guest token is fetched per request
        self.token: str = os.environ.get("TOKEN", "").strip()
        self.anonymous: bool = self.token == ""
        self.default_model: str = os.environ.get("MODEL", "glm-4.6")
        # MODEL_MAP expects a JSON object string mapping upstream model ids → display ids
        model_map_raw = os.environ.get("MODEL_MAP", "{}")
        try:
            self.model_map: Dict[str, str] = json.loads(model_map_raw)
        except Exception:
            self.model_map = {}
        if not isinstance(self.model_map, dict):
            self.model_map = {}
        self.debug: bool = _env_bool("DEBUG")
        # Also dump upstream payloads and outgoing deltas
        self.debug_msg: bool = _env_bool("DEBUG_MSG")
        self.think_mode: str = os.environ.get("THINK_TAGS_MODE", "reasoning").strip().lower()
        try:
            self.port: int = int(os.environ.get("PORT", "8080"))
        except Exception:
            self.port = 0
        self.http2: bool = _env_bool("PROXY_HTTP2")
        self.signature_secret: str = os.environ.get("SIGNATURE_SECRET", DEFAULT_SIGNATURE_SECRET)
        try:
            self.user_cache_ttl: float = float(os.environ.get("USER_CACHE_TTL", "1800"))
        except Exception:
            self.user_cache_ttl = 1800.0
        self.frontend_version: str = os.environ.get("FE_VERSION", "prod-fe-1.0.117")
        self.headers: Dict[str, str] = self._default_headers()
        self._validate()

    @property
    def base_url(self) -> str:
        return f"{self.upstream_protocol}//{self.upstream_host}"

    def _default_headers(self) -> Dict[str, str]:
        # The upstream only serves clients that look like its own web frontend
        return {
            "Accept": "*/*",
            "Accept-Language": "en-US",
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "Pragma": "no-cache",
            "Sec-Ch-Ua": '"Microsoft Edge";v="141", "Not?A_Brand";v="8"',
            "Sec-Ch-Ua-Mobile": "?0",
            "Sec-Ch-Ua-Platform": "Linux",
            "Sec-Fetch-Dest": "empty",
            "Sec-Fetch-Mode": "cors",
            "Sec-Fetch-Site": "same-origin",
            "User-Agent": (
                "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) "
                "Chrome/141.0.0.0 Safari/537.36 Edg/141.0.0.0"
            ),
            "X-FE-Version": self.frontend_version,
            "Origin": self.base_url,
            "Referer": f"{self.base_url}/",
        }

    def _validate(self) -> None:
        if self.think_mode not in THINK_MODES:
            print(
                f"[z2api] Warning: invalid THINK_TAGS_MODE '{self.think_mode}', using 'reasoning'",
                file=sys.stderr,
            )
            self.think_mode = "reasoning"
        if self.port < 1 or self.port > 65535:
            print(f"[z2api] Warning: invalid PORT {self.port}, using 8080", file=sys.stderr)
            self.port = 8080

    def display_id_for(self, source_id: str) -> Optional[str]:
        value = self.model_map.get(source_id)
        return value if isinstance(value, str) and value else None


settings = Settings()
