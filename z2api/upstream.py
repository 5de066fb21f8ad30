from __future__ import annotations

import base64
import binascii
import json
import sys
import time
import uuid
from typing import Any, Callable, Dict, Optional

import httpx

from .config import Settings, settings as default_settings
from .errors import ImageUploadError, UpstreamError
from .http_client import get_httpx_client
from .signature import SignatureError, generate_signature
from .users import UserService


def _error_message(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return resp.text or f"upstream returned status {resp.status_code}"
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict) and isinstance(err.get("message"), str):
            return err["message"]
        for key in ("message", "detail"):
            if isinstance(data.get(key), str):
                return data[key]
    return json.dumps(data, ensure_ascii=False)


class UpstreamClient:
    """Signed chat-completion and file-upload calls against the upstream web API."""

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

    def _referer(self, chat_id: str) -> str:
        return f"{self.settings.base_url}/c/{chat_id}"

    async def open_chat(
        self, payload: Dict[str, Any], chat_id: str, prompt: str = ""
    ) -> httpx.Response:
        """POST the chat body and return the open streaming response.

        The caller owns the response and must ``aclose()`` it. ``prompt`` is
        the latest user text; it is what the signature covers.
        """
        user = await self.users.get_user()
        timestamp = int(self._clock() * 1000)
        request_id = str(uuid.uuid4())

        params: Dict[str, str] = {"timestamp": str(timestamp), "requestId": request_id}
        headers = {
            **self.settings.headers,
            "Authorization": f"Bearer {user.token}",
            "Content-Type": "application/json",
            "Referer": self._referer(chat_id),
        }
        body = dict(payload)

        if user.id:
            params["user_id"] = user.id
            try:
                sig = generate_signature(
                    {"requestId": request_id, "timestamp": str(timestamp), "user_id": user.id},
                    prompt,
                    self.settings.signature_secret,
                )
            except SignatureError as e:
                raise UpstreamError(f"failed to generate signature: {e}", 500) from e
            headers["X-Signature"] = sig.signature
            params["signature_timestamp"] = str(sig.timestamp)
            body["signature_prompt"] = prompt

        url = f"{self.settings.base_url}/api/chat/completions"
        if self.settings.debug_msg:
            try:
                print(
                    "[z2api] upstream payload:",
                    json.dumps({k: v for k, v in body.items() if k != "messages"}, ensure_ascii=False),
                    file=sys.stderr,
                )
            except (TypeError, ValueError):
                ...

        client = self._client_factory()
        req = client.build_request("POST", url, params=params, headers=headers, json=body, timeout=None)
        try:
            resp = await client.send(req, stream=True)
        except httpx.HTTPError as e:
            raise UpstreamError(f"failed to send request: {e}") from e

        if resp.status_code >= 400 or resp.status_code < 200:
            try:
                await resp.aread()
                message = _error_message(resp)
            finally:
                await resp.aclose()
            if self.settings.debug:
                print(f"[z2api] upstream error {resp.status_code}: {message}", file=sys.stderr)
            raise UpstreamError(message, resp.status_code)
        return resp

    async def upload_image(self, data_url: str, chat_id: str) -> str:
        """Upload an inline ``data:`` image and return its hosted ref ``{id}_{filename}``.

        Returns an empty string when nothing needs uploading (anonymous mode or
        an already hosted URL).
        """
        if self.settings.anonymous or not data_url.startswith("data:"):
            return ""
        header, sep, encoded = data_url.partition(",")
        if not sep:
            raise ImageUploadError("invalid data URL format")
        try:
            image_data = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ImageUploadError(f"failed to decode base64: {e}") from e
        media_type = header[5:].split(";", 1)[0] or "application/octet-stream"
        filename = str(uuid.uuid4())

        try:
            user = await self.users.get_user()
        except UpstreamError as e:
            raise ImageUploadError(f"failed to get user info: {e.message}") from e

        headers = {
            **self.settings.headers,
            "Authorization": f"Bearer {user.token}",
            "Referer": self._referer(chat_id),
        }
        client = self._client_factory()
        try:
            resp = await client.post(
                f"{self.settings.base_url}/api/v1/files/",
                headers=headers,
                files={"file": (filename, image_data, media_type)},
                timeout=httpx.Timeout(30.0),
            )
        except httpx.HTTPError as e:
            raise ImageUploadError(f"failed to send upload request: {e}") from e
        if resp.status_code != 200:
            raise ImageUploadError(f"upload failed with status {resp.status_code}: {resp.text}")
        try:
            data = resp.json()
        except ValueError as e:
            raise ImageUploadError(f"failed to parse upload response: {e}") from e
        if not isinstance(data, dict) or not data.get("id"):
            raise ImageUploadError("upload response missing file id")
        return f"{data['id']}_{data.get('filename') or filename}"
