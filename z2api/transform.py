from __future__ import annotations

import json
import sys
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from pydantic import ValidationError

from .config import Settings, settings as default_settings
from .errors import ImageUploadError, RequestFormatError
from .schema_registry import CatalogModel, capabilities_for, resolve_internal_id
from .schemas.canonical import (
    CanonicalMessage,
    CanonicalRequest,
    ContentBlock,
    ImageBlock,
    TextBlock,
    ToolResultBlock,
    ToolSpec,
    ToolUseBlock,
)
from .schemas.inbound import InboundMessage, InboundRequest


UploadImage = Callable[[str, str], Awaitable[str]]

IMAGE_MISSING_TEXT = "system: image error - Unsupported format or missing URL"

_ROLE_ALIASES = {"developer": "system"}
_ROLES = ("system", "user", "assistant", "tool")


def json_dumps_safe(data: Any) -> str:
    try:
        return json.dumps(data, ensure_ascii=False)
    except (TypeError, ValueError):
        return "{}"


def _to_text(content: Any) -> str:
    """Collapse a string or a list of text parts into a plain string."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    parts: List[str] = []
    if isinstance(content, list):
        for block in content:
            if isinstance(block, dict) and block.get("type") == "text" and isinstance(block.get("text"), str):
                parts.append(block["text"])
    return "".join(parts)


def parse_request(body: Any) -> InboundRequest:
    if not isinstance(body, dict):
        raise RequestFormatError("request body must be a JSON object")
    try:
        return InboundRequest.model_validate(body)
    except ValidationError as e:
        raise RequestFormatError(f"invalid messages: {e.errors()[0].get('msg', e)}") from e


def system_message(system: Any) -> Optional[CanonicalMessage]:
    """Anthropic ``system`` (string or text blocks) → leading system message."""
    if isinstance(system, str):
        content = system.lstrip("\n")
    elif isinstance(system, list):
        items = [
            b["text"].lstrip("\n")
            for b in system
            if isinstance(b, dict) and b.get("type") == "text" and isinstance(b.get("text"), str)
        ]
        content = "\n\n".join(items)
    else:
        return None
    if not content:
        return None
    return CanonicalMessage(role="system", content=content)


def _image_url(item: Dict[str, Any]) -> str:
    # OpenAI: {"type": "image_url", "image_url": {"url": ...}} (or a bare string)
    image_url = item.get("image_url")
    if isinstance(image_url, dict) and isinstance(image_url.get("url"), str):
        return image_url["url"]
    if isinstance(image_url, str):
        return image_url
    # Anthropic: {"type": "image", "source": {"type": "base64"|"url", ...}}
    src = item.get("source")
    if isinstance(src, dict):
        stype = str(src.get("type") or "").lower()
        if stype == "base64" and isinstance(src.get("data"), str) and src["data"]:
            media_type = src.get("media_type") if isinstance(src.get("media_type"), str) else ""
            return f"data:{media_type or 'image/jpeg'};base64,{src['data']}"
        if stype in ("url", "external") and isinstance(src.get("url"), str):
            return src["url"]
    return ""


class _ContentBuilder:
    """Append-only block list that merges consecutive text parts."""

    def __init__(self) -> None:
        self.blocks: List[ContentBlock] = []

    def add_text(self, text: str) -> None:
        if self.blocks and isinstance(self.blocks[-1], TextBlock):
            self.blocks[-1] = TextBlock(self.blocks[-1].text + text)
        else:
            self.blocks.append(TextBlock(text))

    def add(self, block: ContentBlock) -> None:
        self.blocks.append(block)

    def value(self) -> Any:
        if not self.blocks:
            return ""
        if len(self.blocks) == 1 and isinstance(self.blocks[0], TextBlock):
            return self.blocks[0].text
        return tuple(self.blocks)


class RequestNormalizer:
    def __init__(
        self,
        models: Sequence[CatalogModel] = (),
        upload_image: Optional[UploadImage] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.models = list(models)
        self.upload_image = upload_image
        self.settings = settings or default_settings

    async def normalize(
        self, body: Any, chat_id: str, message_id: str
    ) -> CanonicalRequest:
        req = body if isinstance(body, InboundRequest) else parse_request(body)

        model = req.model if isinstance(req.model, str) and req.model else self.settings.default_model
        model = resolve_internal_id(self.models, model)

        messages: List[CanonicalMessage] = []
        sys_msg = system_message(req.system)
        if sys_msg is not None:
            messages.append(sys_msg)
        for message in req.messages or []:
            messages.extend(await self._convert_message(message, chat_id))

        return CanonicalRequest(
            model=model,
            messages=tuple(messages),
            chat_id=chat_id,
            message_id=message_id,
            tools=normalize_tools(req.tools),
            thinking_enabled=self._thinking(req, model),
            params=req.sampling_params(),
        )

    async def _convert_message(self, message: InboundMessage, chat_id: str) -> List[CanonicalMessage]:
        role = message.role if isinstance(message.role, str) else "user"
        role = _ROLE_ALIASES.get(role, role)
        if role not in _ROLES:
            role = "user"
        content = message.content

        if role == "tool":
            tool_use_id = message.tool_call_id if isinstance(message.tool_call_id, str) else ""
            return [CanonicalMessage(role="tool", content=(ToolResultBlock(tool_use_id, _to_text(content)),))]

        builder = _ContentBuilder()
        tool_messages: List[CanonicalMessage] = []

        if isinstance(content, str) and content:
            builder.add_text(content)
        elif isinstance(content, list):
            for item in content:
                if not isinstance(item, dict):
                    continue
                itype = item.get("type")
                if itype == "text":
                    if isinstance(item.get("text"), str):
                        builder.add_text(item["text"])
                elif itype in ("image_url", "image"):
                    builder.add(await self._image_block(item, chat_id))
                elif itype == "tool_use" and role == "assistant":
                    builder.add(
                        ToolUseBlock(
                            id=str(item.get("id") or ""),
                            name=str(item.get("name") or ""),
                            arguments_json=json_dumps_safe(item.get("input") if item.get("input") is not None else {}),
                        )
                    )
                elif itype == "tool_result":
                    tool_use_id = item.get("tool_use_id")
                    tool_messages.append(
                        CanonicalMessage(
                            role="tool",
                            content=(ToolResultBlock(str(tool_use_id or ""), _to_text(item.get("content"))),),
                        )
                    )

        if role == "assistant" and isinstance(message.tool_calls, list):
            for call in message.tool_calls:
                fn = call.get("function") if isinstance(call, dict) else None
                if not isinstance(fn, dict):
                    continue
                args = fn.get("arguments")
                builder.add(
                    ToolUseBlock(
                        id=str(call.get("id") or ""),
                        name=str(fn.get("name") or ""),
                        arguments_json=args if isinstance(args, str) else json_dumps_safe(args or {}),
                    )
                )

        out: List[CanonicalMessage] = []
        # A user turn made only of tool results is replaced by the tool messages
        if builder.blocks or not tool_messages:
            out.append(CanonicalMessage(role=role, content=builder.value()))
        out.extend(tool_messages)
        return out

    async def _image_block(self, item: Dict[str, Any], chat_id: str) -> ContentBlock:
        url = _image_url(item)
        if not url:
            return TextBlock(IMAGE_MISSING_TEXT)
        if url.startswith("data:") and not self.settings.anonymous and self.upload_image is not None:
            try:
                hosted = await self.upload_image(url, chat_id)
            except ImageUploadError as e:
                if self.settings.debug:
                    print(f"[z2api] image upload failed: {e}", file=sys.stderr)
                return TextBlock(f"system: image upload error - {e}")
            if hosted:
                url = hosted
        return ImageBlock(url)

    def _thinking(self, req: InboundRequest, model: str) -> Optional[bool]:
        enabled = False
        if isinstance(req.features, dict) and isinstance(req.features.get("enable_thinking"), bool):
            enabled = req.features["enable_thinking"]
        if isinstance(req.enable_thinking, bool):
            enabled = req.enable_thinking
        if isinstance(req.thinking, dict) and isinstance(req.thinking.get("type"), str):
            enabled = req.thinking["type"].lower() == "enabled"
        if capabilities_for(self.models, model).get("think") is False:
            return None
        return enabled


def normalize_tools(tools: Any) -> Tuple[ToolSpec, ...]:
    if not isinstance(tools, list):
        return ()
    specs: List[ToolSpec] = []
    seen = set()
    for t in tools:
        if not isinstance(t, dict):
            continue
        fn = t.get("function") if isinstance(t.get("function"), dict) else t
        name = fn.get("name")
        if not isinstance(name, str) or not name or name in seen:
            continue
        seen.add(name)
        params = fn.get("parameters", fn.get("input_schema"))
        description = fn.get("description")
        specs.append(
            ToolSpec(
                name=name,
                description=description if isinstance(description, str) else None,
                parameters=params if isinstance(params, dict) else {},
            )
        )
    return tuple(specs)


def _block_to_upstream(block: ContentBlock) -> Dict[str, Any]:
    if isinstance(block, ImageBlock):
        return {"type": "image_url", "image_url": {"url": block.url}}
    return {"type": "text", "text": block.text}


def message_to_upstream(message: CanonicalMessage) -> Dict[str, Any]:
    if isinstance(message.content, str):
        return {"role": message.role, "content": message.content}
    if message.role == "tool":
        result = message.content[0]
        return {"role": "tool", "tool_call_id": result.tool_use_id, "content": result.text}
    parts = [_block_to_upstream(b) for b in message.content if isinstance(b, (TextBlock, ImageBlock))]
    calls = [
        {"id": b.id, "type": "function", "function": {"name": b.name, "arguments": b.arguments_json}}
        for b in message.content
        if isinstance(b, ToolUseBlock)
    ]
    out: Dict[str, Any] = {"role": message.role}
    if calls:
        # Text-only assistant content collapses back to a string
        texts = [p["text"] for p in parts if p["type"] == "text"]
        out["content"] = "".join(texts) if len(texts) == len(parts) else parts
        out["tool_calls"] = calls
    else:
        out["content"] = parts
    return out


def to_upstream_payload(request: CanonicalRequest) -> Dict[str, Any]:
    """Canonical request → upstream chat body."""
    payload: Dict[str, Any] = {
        "model": request.model,
        "messages": [message_to_upstream(m) for m in request.messages],
        "stream": True,
        "chat_id": request.chat_id,
        "id": request.message_id,
    }
    payload.update(request.params)
    if request.thinking_enabled is not None:
        payload["features"] = {"enable_thinking": request.thinking_enabled}
    if request.tools:
        payload["tools"] = [
            {
                "type": "function",
                "function": {
                    "name": t.name,
                    "description": t.description or "",
                    "parameters": t.parameters,
                },
            }
            for t in request.tools
        ]
    return payload


def last_user_text(messages: Iterable[CanonicalMessage]) -> str:
    """Text of the most recent user message: string content or its first text block."""
    text = ""
    for m in messages:
        if m.role != "user":
            continue
        if isinstance(m.content, str):
            text = m.content
        else:
            text = next((b.text for b in m.content if isinstance(b, TextBlock)), "")
    return text


def extract_text(messages: Iterable[CanonicalMessage]) -> str:
    return "".join(m.text for m in messages)
