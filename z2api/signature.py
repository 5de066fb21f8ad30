from __future__ import annotations

import base64
import hashlib
import hmac
import re
from dataclasses import dataclass
from typing import Dict, Optional

from .config import settings


REQUIRED_PARAMS = ("timestamp", "requestId", "user_id")

# Level-1 keys rotate every five minutes
SIGNATURE_WINDOW_MS = 5 * 60 * 1000

# ASCII digits with an optional minus sign; the raw string is signed as-is
_TIMESTAMP_RE = re.compile(r"-?[0-9]+")


class SignatureError(ValueError):
    ...


@dataclass(frozen=True)
class SignatureResult:
    signature: str
    timestamp: int


def _hmac_sha256_hex(key: bytes, message: bytes) -> str:
    return hmac.new(key, message, hashlib.sha256).hexdigest()


def window_key(timestamp_ms: int, secret: Optional[str] = None) -> str:
    """Level-1 signature: HMAC of the five-minute window number."""
    secret = settings.signature_secret if secret is None else secret
    window_id = timestamp_ms // SIGNATURE_WINDOW_MS
    return _hmac_sha256_hex(secret.encode("utf-8"), str(window_id).encode("utf-8"))


def generate_signature(
    params: Dict[str, str], content: str, secret: Optional[str] = None
) -> SignatureResult:
    """Compute the upstream's two-level HMAC-SHA256 request signature.

    ``params`` must carry ``timestamp`` (milliseconds), ``requestId`` and
    ``user_id``; ``content`` is the text of the latest user message. The
    level-1 key is derived from the five-minute window the timestamp falls in,
    the level-2 plaintext is ``k1,v1,k2,v2,...|base64(content)|timestamp``.
    """
    for key in REQUIRED_PARAMS:
        if key not in params or params[key] is None:
            raise SignatureError(f"missing required parameter: {key}")
    raw_time = str(params["timestamp"])
    if not _TIMESTAMP_RE.fullmatch(raw_time):
        raise SignatureError(f"invalid timestamp: {raw_time!r}")
    request_time = int(raw_time)

    level1 = window_key(request_time, secret)

    params_str = ",".join(f"{k},{params[k]}" for k in sorted(params))
    content_b64 = base64.b64encode((content or "").encode("utf-8")).decode("ascii")
    plaintext2 = f"{params_str}|{content_b64}|{request_time}"
    signature = _hmac_sha256_hex(level1.encode("utf-8"), plaintext2.encode("utf-8"))
    return SignatureResult(signature=signature, timestamp=request_time)
