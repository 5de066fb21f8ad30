from __future__ import annotations

import json
import time
import uuid
from typing import Any, Dict, List, Optional

from .phase import AnswerText, NormalizedDelta, ReasoningText, StreamSession
from .schemas.anthropic import ErrorResponse, MessageResponse, Usage
from .toolcall import ToolInvocation


DONE = b"data: [DONE]\n\n"


def sse_data(obj: Dict[str, Any]) -> bytes:
    return f"data: {json.dumps(obj, ensure_ascii=False)}\n\n".encode()


def sse(event: str, data: Dict[str, Any]) -> bytes:
    return f"event: {event}\n".encode() + f"data: {json.dumps(data, ensure_ascii=False)}\n\n".encode()


def new_completion_id() -> str:
    return f"chatcmpl-{uuid.uuid4()}"


def new_message_id() -> str:
    return f"msg_{uuid.uuid4().hex}"


# ----- OpenAI -----


def openai_tool_call(call: ToolInvocation) -> Dict[str, Any]:
    return {
        "id": call.id,
        "type": "function",
        "function": {"name": call.name, "arguments": call.arguments_json},
    }


def openai_delta(delta: NormalizedDelta) -> Optional[Dict[str, Any]]:
    if isinstance(delta, ReasoningText):
        return {"reasoning_content": delta.text}
    if isinstance(delta, AnswerText):
        return {"content": delta.text}
    if isinstance(delta, ToolInvocation):
        return {"tool_calls": [{"index": 0, **openai_tool_call(delta)}]}
    return None


def openai_chunk(
    completion_id: str,
    model: str,
    delta: Dict[str, Any],
    finish_reason: Optional[str] = None,
) -> Dict[str, Any]:
    return {
        "id": completion_id,
        "object": "chat.completion.chunk",
        "created": int(time.time()),
        "model": model,
        "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
    }


def openai_usage(prompt_tokens: int, completion_tokens: int) -> Dict[str, int]:
    return {
        "prompt_tokens": prompt_tokens,
        "completion_tokens": completion_tokens,
        "total_tokens": prompt_tokens + completion_tokens,
    }


def openai_usage_chunk(completion_id: str, model: str, usage: Dict[str, int]) -> Dict[str, Any]:
    return {
        "id": completion_id,
        "object": "chat.completion.chunk",
        "created": int(time.time()),
        "model": model,
        "choices": [],
        "usage": usage,
    }


def openai_completion(
    completion_id: str,
    model: str,
    session: StreamSession,
    usage: Optional[Dict[str, int]] = None,
) -> Dict[str, Any]:
    message: Dict[str, Any] = {"role": "assistant", "content": session.answer_text}
    if session.reasoning_text:
        message["reasoning_content"] = session.reasoning_text
    finish_reason = "stop"
    call = session.tool_invocation
    if call is not None:
        message["tool_calls"] = [openai_tool_call(call)]
        finish_reason = "tool_calls"
    out: Dict[str, Any] = {
        "id": completion_id,
        "object": "chat.completion",
        "created": int(time.time()),
        "model": model,
        "choices": [{"index": 0, "message": message, "finish_reason": finish_reason}],
    }
    if usage is not None:
        out["usage"] = usage
    return out


def openai_error(message: str, type_: str = "invalid_request_error", code: Optional[int] = None) -> Dict[str, Any]:
    return {"error": {"message": message, "type": type_, "code": code}}


# ----- Anthropic -----


_ANTHROPIC_ERROR_TYPES = {
    400: "invalid_request_error",
    401: "authentication_error",
    403: "permission_error",
    404: "not_found_error",
    413: "request_too_large",
    429: "rate_limit_error",
    529: "overloaded_error",
}


def anthropic_error_for_status(status: int, message: str) -> Dict[str, Any]:
    error_type = _ANTHROPIC_ERROR_TYPES.get(status, "api_error")
    return ErrorResponse(error={"type": error_type, "message": message}).model_dump()


class AnthropicStreamWriter:
    """Turns normalized deltas into Anthropic ``/v1/messages`` SSE events.

    Consecutive deltas of the same kind share one content block; a change of
    kind closes the open block and starts the next one at a new index.
    """

    def __init__(self, message_id: str, model: str, input_tokens: int = 0) -> None:
        self.message_id = message_id
        self.model = model
        self.input_tokens = input_tokens
        self.index = -1
        self.open_kind: Optional[str] = None
        self.emitted_tool_use = False

    def start(self) -> bytes:
        message = MessageResponse(
            id=self.message_id,
            model=self.model,
            usage=Usage(input_tokens=self.input_tokens, output_tokens=0),
        ).model_dump()
        return sse("message_start", {"type": "message_start", "message": message})

    def _close(self) -> List[bytes]:
        if self.open_kind is None:
            return []
        self.open_kind = None
        return [sse("content_block_stop", {"type": "content_block_stop", "index": self.index})]

    def _open(self, kind: str, block: Dict[str, Any]) -> List[bytes]:
        out = self._close()
        self.index += 1
        self.open_kind = kind
        out.append(
            sse(
                "content_block_start",
                {"type": "content_block_start", "index": self.index, "content_block": block},
            )
        )
        return out

    def _delta(self, delta: Dict[str, Any]) -> bytes:
        return sse("content_block_delta", {"type": "content_block_delta", "index": self.index, "delta": delta})

    def feed(self, delta: NormalizedDelta) -> List[bytes]:
        out: List[bytes] = []
        if isinstance(delta, ReasoningText):
            if self.open_kind != "thinking":
                out.extend(self._open("thinking", {"type": "thinking", "thinking": ""}))
            out.append(self._delta({"type": "thinking_delta", "thinking": delta.text}))
        elif isinstance(delta, AnswerText):
            if self.open_kind != "text":
                out.extend(self._open("text", {"type": "text", "text": ""}))
            out.append(self._delta({"type": "text_delta", "text": delta.text}))
        elif isinstance(delta, ToolInvocation):
            out.extend(
                self._open("tool_use", {"type": "tool_use", "id": delta.id, "name": delta.name, "input": {}})
            )
            out.append(self._delta({"type": "input_json_delta", "partial_json": delta.arguments_json}))
            out.extend(self._close())
            self.emitted_tool_use = True
        return out

    def finish(self, output_tokens: int) -> List[bytes]:
        out = self._close()
        stop_reason = "tool_use" if self.emitted_tool_use else "end_turn"
        out.append(
            sse(
                "message_delta",
                {
                    "type": "message_delta",
                    "delta": {"stop_reason": stop_reason, "stop_sequence": None},
                    "usage": {"input_tokens": self.input_tokens, "output_tokens": output_tokens},
                },
            )
        )
        out.append(sse("message_stop", {"type": "message_stop"}))
        return out

    def error(self, message: str) -> List[bytes]:
        out = self._close()
        out.append(sse("error", {"type": "error", "error": {"type": "api_error", "message": message}}))
        out.append(sse("message_stop", {"type": "message_stop"}))
        return out


def anthropic_message(
    message_id: str,
    model: str,
    session: StreamSession,
    input_tokens: int,
    output_tokens: int,
) -> Dict[str, Any]:
    content: List[Dict[str, Any]] = []
    if session.reasoning_text:
        content.append({"type": "thinking", "thinking": session.reasoning_text})
    if session.answer_text:
        content.append({"type": "text", "text": session.answer_text})
    call = session.tool_invocation
    if call is not None:
        content.append({"type": "tool_use", "id": call.id, "name": call.name, "input": call.arguments})
    return MessageResponse(
        id=message_id,
        model=model,
        content=content,
        stop_reason="tool_use" if call is not None else "end_turn",
        usage=Usage(input_tokens=input_tokens, output_tokens=output_tokens),
    ).model_dump()
