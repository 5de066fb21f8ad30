import json

import httpx
import pytest

from z2api.config import Settings
from z2api.errors import ImageUploadError, UpstreamError
from z2api.signature import generate_signature
from z2api.upstream import UpstreamClient
from z2api.users import UserInfo


NOW = 1_700_000_000.0


class _Users:
    def __init__(self, info: UserInfo):
        self.info = info

    async def get_user(self) -> UserInfo:
        return self.info


def _settings(token: str = "tok") -> Settings:
    s = Settings()
    s.upstream_protocol = "https:"
    s.upstream_host = "chat.example"
    s.token = token
    s.anonymous = token == ""
    s.signature_secret = "s3cret"
    s.debug_msg = False
    return s


def _client(handler, settings, user):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return UpstreamClient(_Users(user), settings, client_factory=lambda: http, clock=lambda: NOW)


@pytest.mark.asyncio
async def test_open_chat_signs_authenticated_requests():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["request"] = request
        return httpx.Response(200, text='data: {"data": {"phase": "answer", "delta_content": "hi"}}\n\n')

    settings = _settings()
    client = _client(handler, settings, UserInfo(id="user-1", name="Ada", token="tok"))
    resp = await client.open_chat({"model": "m", "messages": []}, "chat-9", "what is 2+2?")
    lines = [line async for line in resp.aiter_lines()]
    await resp.aclose()
    assert lines[0].startswith("data: ")

    req = seen["request"]
    assert req.url.path == "/api/chat/completions"
    params = req.url.params
    assert params["timestamp"] == "1700000000000"
    assert params["user_id"] == "user-1"
    assert params["signature_timestamp"] == "1700000000000"
    expected = generate_signature(
        {"requestId": params["requestId"], "timestamp": "1700000000000", "user_id": "user-1"},
        "what is 2+2?",
        "s3cret",
    )
    assert req.headers["X-Signature"] == expected.signature
    assert req.headers["Authorization"] == "Bearer tok"
    assert req.headers["Referer"] == "https://chat.example/c/chat-9"
    body = json.loads(req.content)
    assert body["signature_prompt"] == "what is 2+2?"
    assert body["model"] == "m"


@pytest.mark.asyncio
async def test_open_chat_without_user_id_is_unsigned():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["request"] = request
        return httpx.Response(200, text="")

    client = _client(handler, _settings(""), UserInfo(id="", name="", token="guest"))
    resp = await client.open_chat({"messages": []}, "c", "hi")
    await resp.aclose()
    req = seen["request"]
    assert "user_id" not in req.url.params
    assert "X-Signature" not in req.headers
    assert "signature_prompt" not in json.loads(req.content)


@pytest.mark.asyncio
async def test_open_chat_error_status_raises():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": {"message": "bad token"}})

    client = _client(handler, _settings(), UserInfo(id="u", name="", token="tok"))
    with pytest.raises(UpstreamError) as exc:
        await client.open_chat({"messages": []}, "c", "hi")
    assert exc.value.http_status == 401
    assert exc.value.message == "bad token"


@pytest.mark.asyncio
async def test_open_chat_transport_error_is_bad_gateway():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = _client(handler, _settings(), UserInfo(id="u", name="", token="tok"))
    with pytest.raises(UpstreamError) as exc:
        await client.open_chat({"messages": []}, "c", "hi")
    assert exc.value.http_status == 502


@pytest.mark.asyncio
async def test_upload_image_returns_hosted_ref():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["request"] = request
        return httpx.Response(200, json={"id": "f1", "filename": "cat.png"})

    client = _client(handler, _settings(), UserInfo(id="u", name="", token="tok"))
    ref = await client.upload_image("data:image/png;base64,iVBORw0KGgo=", "chat-1")
    assert ref == "f1_cat.png"
    req = seen["request"]
    assert req.url.path == "/api/v1/files/"
    assert req.headers["Content-Type"].startswith("multipart/form-data")
    assert req.headers["Referer"] == "https://chat.example/c/chat-1"


@pytest.mark.asyncio
async def test_upload_image_skipped_when_not_needed():
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    anon = _client(handler, _settings(""), UserInfo(id="", name="", token="guest"))
    assert await anon.upload_image("data:image/png;base64,AA==", "c") == ""
    auth = _client(handler, _settings(), UserInfo(id="u", name="", token="tok"))
    assert await auth.upload_image("https://example.com/cat.png", "c") == ""


@pytest.mark.asyncio
async def test_upload_image_failures():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="disk full")

    client = _client(handler, _settings(), UserInfo(id="u", name="", token="tok"))
    with pytest.raises(ImageUploadError):
        await client.upload_image("data:image/png;base64,AA==", "c")
    with pytest.raises(ImageUploadError):
        await client.upload_image("data:image/png;base64,@@@", "c")
    with pytest.raises(ImageUploadError):
        await client.upload_image("data:image/png;base64", "c")
