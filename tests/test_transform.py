import pytest

from z2api.config import Settings
from z2api.errors import ImageUploadError, RequestFormatError
from z2api.schema_registry import CatalogModel
from z2api.schemas.canonical import (
    CanonicalMessage,
    ImageBlock,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
)
from z2api.transform import (
    IMAGE_MISSING_TEXT,
    RequestNormalizer,
    extract_text,
    last_user_text,
    to_upstream_payload,
)


CATALOG = [
    CatalogModel(display_id="glm-4.6", internal_id="GLM-4-6-API-V1", name="GLM-4.6", created=0,
                 capabilities={"think": True}),
    CatalogModel(display_id="glm-4-air", internal_id="glm-4-air-250414", name="GLM-4-Air", created=0,
                 capabilities={"think": False}),
]


@pytest.fixture
def anon_settings():
    s = Settings()
    s.token = ""
    s.anonymous = True
    s.default_model = "glm-4.6"
    return s


@pytest.fixture
def auth_settings():
    s = Settings()
    s.token = "tok"
    s.anonymous = False
    s.default_model = "glm-4.6"
    return s


async def _normalize(body, settings, models=CATALOG, upload_image=None):
    n = RequestNormalizer(models, upload_image=upload_image, settings=settings)
    return await n.normalize(body, "chat-1", "msg-1")


@pytest.mark.asyncio
async def test_plain_string_content_is_untouched(anon_settings):
    text = "  hi\n\nthere > not a quote "
    req = await _normalize({"model": "glm-4.6", "messages": [{"role": "user", "content": text}]}, anon_settings)
    assert req.messages == (CanonicalMessage(role="user", content=text),)
    assert extract_text(req.messages) == text


@pytest.mark.asyncio
async def test_model_defaults_and_resolves_display_id(anon_settings):
    req = await _normalize({"messages": [{"role": "user", "content": "x"}]}, anon_settings)
    assert req.model == "GLM-4-6-API-V1"
    req = await _normalize({"model": "some-other", "messages": []}, anon_settings)
    assert req.model == "some-other"


@pytest.mark.asyncio
async def test_anthropic_system_becomes_leading_message(anon_settings):
    body = {
        "system": [{"type": "text", "text": "\nYou are terse."}, {"type": "text", "text": "\n\nAnswer in English."}],
        "messages": [{"role": "user", "content": [{"type": "text", "text": "a"}, {"type": "text", "text": "b"}]}],
    }
    req = await _normalize(body, anon_settings)
    assert req.messages[0] == CanonicalMessage(role="system", content="You are terse.\n\nAnswer in English.")
    assert req.messages[1] == CanonicalMessage(role="user", content="ab")


@pytest.mark.asyncio
async def test_hosted_image_kept_and_data_url_uploaded(auth_settings):
    calls = []

    async def upload(url, chat_id):
        calls.append((url, chat_id))
        return "file-1_cat.png"

    body = {
        "messages": [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": "compare"},
                    {"type": "image_url", "image_url": {"url": "https://example.com/dog.png"}},
                    {"type": "image", "source": {"type": "base64", "media_type": "image/png", "data": "AAAA"}},
                ],
            }
        ]
    }
    req = await _normalize(body, auth_settings, upload_image=upload)
    assert req.messages[0].content == (
        TextBlock("compare"),
        ImageBlock("https://example.com/dog.png"),
        ImageBlock("file-1_cat.png"),
    )
    assert calls == [("data:image/png;base64,AAAA", "chat-1")]


@pytest.mark.asyncio
async def test_anonymous_mode_skips_upload(anon_settings):
    async def upload(url, chat_id):
        raise AssertionError("should not upload")

    body = {"messages": [{"role": "user", "content": [{"type": "image_url", "image_url": "data:image/png;base64,AA"}]}]}
    req = await _normalize(body, anon_settings, upload_image=upload)
    assert req.messages[0].content == (ImageBlock("data:image/png;base64,AA"),)


@pytest.mark.asyncio
async def test_image_failures_degrade_to_text(auth_settings):
    async def upload(url, chat_id):
        raise ImageUploadError("upload failed with status 413")

    body = {"messages": [{"role": "user", "content": [{"type": "image_url", "image_url": {"url": "data:image/png;base64,AA"}}]}]}
    req = await _normalize(body, auth_settings, upload_image=upload)
    assert req.messages[0].content == "system: image upload error - upload failed with status 413"

    body = {"messages": [{"role": "user", "content": [{"type": "image", "source": {"type": "base64"}}]}]}
    req = await _normalize(body, auth_settings, upload_image=upload)
    assert req.messages[0].content == IMAGE_MISSING_TEXT


@pytest.mark.asyncio
async def test_anthropic_tool_use_and_result(anon_settings):
    body = {
        "messages": [
            {"role": "user", "content": "weather in Paris?"},
            {
                "role": "assistant",
                "content": [
                    {"type": "text", "text": "Checking."},
                    {"type": "tool_use", "id": "toolu_1", "name": "get_weather", "input": {"city": "Paris"}},
                ],
            },
            {
                "role": "user",
                "content": [
                    {"type": "tool_result", "tool_use_id": "toolu_1", "content": [{"type": "text", "text": "20C"}]}
                ],
            },
        ]
    }
    req = await _normalize(body, anon_settings)
    assert [m.role for m in req.messages] == ["user", "assistant", "tool"]
    assert req.messages[1].content == (
        TextBlock("Checking."),
        ToolUseBlock(id="toolu_1", name="get_weather", arguments_json='{"city": "Paris"}'),
    )
    assert req.messages[2].content == (ToolResultBlock(tool_use_id="toolu_1", text="20C"),)


@pytest.mark.asyncio
async def test_openai_tool_calls_and_tool_role(anon_settings):
    body = {
        "messages": [
            {
                "role": "assistant",
                "content": None,
                "tool_calls": [
                    {"id": "call_1", "type": "function", "function": {"name": "f", "arguments": '{"x":1}'}}
                ],
            },
            {"role": "tool", "tool_call_id": "call_1", "content": "ok"},
        ]
    }
    req = await _normalize(body, anon_settings)
    assert req.messages[0].content == (ToolUseBlock(id="call_1", name="f", arguments_json='{"x":1}'),)
    assert req.messages[1] == CanonicalMessage(role="tool", content=(ToolResultBlock("call_1", "ok"),))


def test_tool_use_outside_assistant_is_rejected():
    with pytest.raises(ValueError):
        CanonicalMessage(role="user", content=(ToolUseBlock("1", "f", "{}"),))


@pytest.mark.asyncio
async def test_thinking_flag_precedence(anon_settings):
    msgs = [{"role": "user", "content": "x"}]
    req = await _normalize(
        {"messages": msgs, "features": {"enable_thinking": True}, "thinking": {"type": "disabled"}}, anon_settings
    )
    assert req.thinking_enabled is False
    req = await _normalize({"messages": msgs, "features": {"enable_thinking": False}, "enable_thinking": True},
                           anon_settings)
    assert req.thinking_enabled is True
    req = await _normalize({"messages": msgs}, anon_settings)
    assert req.thinking_enabled is False


@pytest.mark.asyncio
async def test_thinking_dropped_for_models_without_support(anon_settings):
    req = await _normalize(
        {"model": "glm-4-air", "messages": [{"role": "user", "content": "x"}], "enable_thinking": True},
        anon_settings,
    )
    assert req.thinking_enabled is None
    assert "features" not in to_upstream_payload(req)


@pytest.mark.asyncio
async def test_malformed_optional_fields_are_ignored(anon_settings):
    body = {
        "model": 42,
        "messages": [{"role": "user", "content": "x"}],
        "temperature": "hot",
        "max_tokens": -5,
        "top_p": 0.5,
        "tools": "nope",
        "thinking": "yes",
    }
    req = await _normalize(body, anon_settings)
    assert req.model == "GLM-4-6-API-V1"
    assert req.params == {"top_p": 0.5}
    assert req.tools == ()
    assert req.thinking_enabled is False


@pytest.mark.asyncio
@pytest.mark.parametrize("body", [[], {"messages": "hello"}, {"messages": [1, 2]}])
async def test_bad_message_list_raises(body, anon_settings):
    with pytest.raises(RequestFormatError):
        await _normalize(body, anon_settings)


@pytest.mark.asyncio
async def test_upstream_payload_shape(anon_settings):
    body = {
        "model": "glm-4.6",
        "messages": [{"role": "user", "content": "hi"}],
        "temperature": 0.2,
        "enable_thinking": True,
        "tools": [
            {"name": "get_weather", "description": "Get weather", "input_schema": {"type": "object"}},
            {"type": "function", "function": {"name": "get_weather", "parameters": {}}},
            {"type": "function", "function": {"name": "search", "parameters": {"type": "object"}}},
        ],
    }
    payload = to_upstream_payload(await _normalize(body, anon_settings))
    assert payload["model"] == "GLM-4-6-API-V1"
    assert payload["stream"] is True
    assert payload["chat_id"] == "chat-1"
    assert payload["id"] == "msg-1"
    assert payload["temperature"] == 0.2
    assert payload["features"] == {"enable_thinking": True}
    assert payload["messages"] == [{"role": "user", "content": "hi"}]
    assert [t["function"]["name"] for t in payload["tools"]] == ["get_weather", "search"]
    assert payload["tools"][0]["function"]["parameters"] == {"type": "object"}


@pytest.mark.asyncio
async def test_normalizing_upstream_payload_is_idempotent(anon_settings):
    body = {
        "system": "Be brief.",
        "messages": [
            {"role": "user", "content": [{"type": "text", "text": "look"},
                                         {"type": "image_url", "image_url": {"url": "https://x/cat.png"}}]},
            {"role": "assistant", "content": [{"type": "text", "text": "Calling."},
                                              {"type": "tool_use", "id": "t1", "name": "f", "input": {}}]},
            {"role": "user", "content": [{"type": "tool_result", "tool_use_id": "t1", "content": "done"}]},
        ],
    }
    first = await _normalize(body, anon_settings)
    second = await _normalize(to_upstream_payload(first), anon_settings)
    assert second.messages == first.messages


@pytest.mark.asyncio
async def test_tool_call_only_assistant_turn_is_idempotent(anon_settings):
    body = {
        "messages": [
            {"role": "user", "content": "go"},
            {"role": "assistant", "content": None,
             "tool_calls": [{"id": "c1", "type": "function", "function": {"name": "f", "arguments": "{}"}}]},
            {"role": "tool", "tool_call_id": "c1", "content": "ok"},
        ],
    }
    first = await _normalize(body, anon_settings)
    assert first.messages[1].content == (ToolUseBlock("c1", "f", "{}"),)

    payload = to_upstream_payload(first)
    assert payload["messages"][1]["content"] == ""
    second = await _normalize(payload, anon_settings)
    assert second.messages == first.messages


def test_last_user_text_picks_latest_user_message():
    messages = (
        CanonicalMessage(role="user", content="first"),
        CanonicalMessage(role="assistant", content="reply"),
        CanonicalMessage(role="user", content=(ImageBlock("u"), TextBlock("second"))),
    )
    assert last_user_text(messages) == "second"
    assert last_user_text(()) == ""
